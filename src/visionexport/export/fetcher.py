"""Resolve and filter the candidate observations and photos of a taxon."""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from loguru import logger

from visionexport.store.datastore import DataStore, records
from visionexport.taxonomy.index import TaxonomyIndex
from visionexport.taxonomy.taxon import Taxon

# Taxa with more observations than this only use community-identified
# observations, and at most SCALE_GUARD_LIMIT of them
SCALE_GUARD_OBSERVATIONS = 100000
SCALE_GUARD_LIMIT = 200000

# Failing this metric marks an observation captive, failing any other
# metric excludes it
WILD_METRIC = "wild"

MAX_POSITIONAL_ACCURACY = 1000

QUERY_STRING = re.compile(r"\?.*$")


@dataclass
class Observation:
    id: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    positional_accuracy: Optional[float] = None
    observed_on: Optional[Any] = None
    taxon_id: Optional[int] = None
    community_taxon_id: Optional[int] = None
    is_captive: bool = False
    fails_non_wild_metric: bool = False
    flagged: bool = False
    community: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any], community: bool) -> "Observation":
        return cls(
            id=int(record["id"]),
            latitude=record.get("latitude"),
            longitude=record.get("longitude"),
            positional_accuracy=record.get("positional_accuracy"),
            observed_on=record.get("observed_on"),
            taxon_id=record.get("taxon_id"),
            community_taxon_id=record.get("community_taxon_id"),
            community=community,
        )

    @property
    def has_spatial_quality(self) -> bool:
        """Coordinates are set, not both zero, and accurate to 1km."""
        if self.latitude is None or self.longitude is None:
            return False
        if not self.latitude or not self.longitude:
            return False
        if (
            self.positional_accuracy is not None
            and self.positional_accuracy > MAX_POSITIONAL_ACCURACY
        ):
            return False
        return True


@dataclass
class ObservationPhoto:
    photo_id: int
    observation_id: int
    position: int
    observation_photo_count: int
    medium_url: str
    community: bool = False

    @property
    def photo_url(self) -> str:
        return QUERY_STRING.sub("", self.medium_url)


class ObservationPhotoFetcher:
    """Query the observations and photos that may represent a taxon."""

    def __init__(self, store: DataStore, index: TaxonomyIndex):
        self.store = store
        self.index = index

    def taxon_ids(self, taxon: Taxon) -> List[int]:
        """IDs of the taxon plus all its descendants."""
        return self.store.descendant_taxon_ids(taxon.id, self.index.ancestry(taxon.id))

    def valid_observations(
        self,
        taxon: Taxon,
        community: bool,
        taxon_ids: Optional[List[int]] = None,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> Dict[int, Observation]:
        """Return the usable observations of a taxon and its descendants,
        keyed by ID.

        Observations with unresolved flags, or failing any quality metric
        other than `wild`, are left out. Observations failing `wild` are
        kept and marked captive.
        """
        limit = None
        if taxon.observations_count > SCALE_GUARD_OBSERVATIONS:
            if not community:
                return {}
            limit = SCALE_GUARD_LIMIT
        if taxon_ids is None:
            taxon_ids = self.taxon_ids(taxon)
        df = self.store.observations(
            taxon_ids, community=community, exclude_ids=exclude_ids, limit=limit
        )
        observations = {
            int(r["id"]): Observation.from_record(r, community) for r in records(df)
        }
        self.assign_observation_metrics(observations)
        self.assign_flags(observations)
        valid = {
            observation_id: observation
            for observation_id, observation in observations.items()
            if not observation.flagged and not observation.fails_non_wild_metric
        }
        logger.debug(
            f"Taxon {taxon.id} ({'community' if community else 'uncurated'}): "
            f"{len(valid)} of {len(observations)} observations usable"
        )
        return valid

    def assign_observation_metrics(self, observations: Dict[int, Observation]) -> None:
        """Sum the votes of every quality metric (+1 agree, -1 disagree) and
        mark the observations with a negative score."""
        if not observations:
            return
        df = self.store.quality_metrics(observations.keys())
        if df.empty:
            return
        df["score"] = np.where(df["agree"].fillna(False).astype(bool), 1, -1)
        scores = df.groupby(["observation_id", "metric"])["score"].sum().reset_index()
        failing = scores[scores["score"] < 0]
        for observation_id, metric in zip(failing["observation_id"], failing["metric"]):
            observation = observations.get(int(observation_id))
            if observation is None:
                continue
            if metric == WILD_METRIC:
                observation.is_captive = True
            else:
                observation.fails_non_wild_metric = True

    def assign_flags(self, observations: Dict[int, Observation]) -> None:
        for observation_id in self.store.unresolved_flagged_ids(
            "Observation", observations.keys()
        ):
            observations[observation_id].flagged = True

    def photos_for_observations(
        self, observations: Dict[int, Observation]
    ) -> List[ObservationPhoto]:
        """Return the usable photos of the given observations.

        Photos with unresolved flags are dropped. The remaining photos of an
        observation are numbered from 0 in their original order and carry
        the number of photos of that observation. Photos without a medium
        URL are dropped last.
        """
        if not observations:
            return []
        community = {o.id: o.community for o in observations.values()}
        df = self.store.observation_photos(observations.keys())
        if df.empty:
            return []
        flagged = self.store.unresolved_flagged_ids("Photo", df["photo_id"])
        df = df[~df["photo_id"].isin(flagged)]
        if df.empty:
            return []
        df = df.sort_values(["observation_id", "position", "photo_id"]).reset_index(
            drop=True
        )
        grouped = df.groupby("observation_id")
        df["observation_photo_count"] = grouped["photo_id"].transform("count")
        df["position"] = grouped.cumcount()

        photos = self.store.photos(df["photo_id"]).rename(columns={"id": "photo_id"})
        df = df.merge(photos, on="photo_id", how="inner")
        df = df[df["medium_url"].notna() & (df["medium_url"].astype(str) != "")]

        return [
            ObservationPhoto(
                photo_id=int(row.photo_id),
                observation_id=int(row.observation_id),
                position=int(row.position),
                observation_photo_count=int(row.observation_photo_count),
                medium_url=str(row.medium_url),
                community=community[int(row.observation_id)],
            )
            for row in df.itertuples(index=False)
        ]


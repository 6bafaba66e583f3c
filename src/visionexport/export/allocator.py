"""Balance the photos of a taxon over the train, val and test splits."""

import random
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from visionexport.export.fetcher import (
    Observation,
    ObservationPhoto,
    ObservationPhotoFetcher,
)
from visionexport.parameters import ExportParameters
from visionexport.taxonomy.index import TaxonomyIndex
from visionexport.taxonomy.taxon import Taxon, TaxonStatus

SPLITS = ["train", "val", "test"]

# Observations of a tier are distributed in random chunks of this size,
# stopping as soon as the taxon holds the maximum amount of data
OBSERVATION_CHUNK_SIZE = 500


def taxon_random(seed: int, taxon_id: int) -> random.Random:
    """Random generator owned by a single taxon lookup."""
    return random.Random(f"{seed}:{taxon_id}")


@dataclass
class TaxonWorkingSet:
    """Photos and observations picked so far for one taxon."""

    taxon_id: int
    splits: Dict[str, List[ObservationPhoto]] = field(
        default_factory=lambda: {split: [] for split in SPLITS}
    )
    split_observations: Dict[str, Counter] = field(
        default_factory=lambda: {split: Counter() for split in SPLITS}
    )
    photos_used: Set[int] = field(default_factory=set)
    spatial: List[Observation] = field(default_factory=list)
    spatial_used: Set[int] = field(default_factory=set)
    candidates: List[ObservationPhoto] = field(default_factory=list)

    def size(self, split: str) -> int:
        return len(self.splits[split])

    def counts(self) -> Dict[str, int]:
        return {split: self.size(split) for split in SPLITS}

    def observation_count(self, split: str, observation_id: int) -> int:
        return self.split_observations[split][observation_id]

    def in_any_split(self, observation_id: int) -> bool:
        return any(self.observation_count(split, observation_id) for split in SPLITS)

    def used_observation_ids(self) -> List[int]:
        ids = set()
        for split in SPLITS:
            ids.update(self.split_observations[split])
        return sorted(ids)

    def add_photo(self, photo: ObservationPhoto, split: str) -> None:
        self.splits[split].append(photo)
        self.split_observations[split][photo.observation_id] += 1
        self.photos_used.add(photo.photo_id)

    def add_spatial(self, observation: Observation) -> None:
        self.spatial.append(observation)
        self.spatial_used.add(observation.id)


@dataclass
class Allocation:
    """Outcome of the lookup of a taxon, before it is committed."""

    taxon_id: int
    working_set: TaxonWorkingSet
    exportable: bool

    @property
    def counts(self) -> Dict[str, int]:
        return self.working_set.counts()


class ClassIndex:
    """Dense class indices shared by the whole run.

    Leaf classes are numbered in the order taxa are populated, iconic
    classes in the order their iconic taxon is first seen.
    """

    def __init__(self):
        self.leaf_classes: Dict[int, int] = {}
        self.iconic_classes: Dict[int, int] = {}
        self._lock = threading.Lock()

    def peek(self, taxon: Taxon) -> Tuple[int, int]:
        """Classes `assign` would give the taxon, without assigning them."""
        with self._lock:
            leaf_class = self.leaf_classes.get(taxon.id, len(self.leaf_classes))
            iconic_class = self.iconic_classes.get(
                taxon.iconic_taxon_id, len(self.iconic_classes)
            )
            return leaf_class, iconic_class

    def assign(self, taxon: Taxon) -> Tuple[int, int]:
        with self._lock:
            if taxon.id not in self.leaf_classes:
                self.leaf_classes[taxon.id] = len(self.leaf_classes)
            if taxon.iconic_taxon_id not in self.iconic_classes:
                self.iconic_classes[taxon.iconic_taxon_id] = len(self.iconic_classes)
            return self.leaf_classes[taxon.id], self.iconic_classes[taxon.iconic_taxon_id]

    def leaf_class(self, taxon_id: int) -> Optional[int]:
        return self.leaf_classes.get(taxon_id)

    def iconic_class(self, iconic_taxon_id: int) -> Optional[int]:
        return self.iconic_classes.get(iconic_taxon_id)


class SetAllocator:
    """Pick the photos of a taxon for each split, within the per-class quotas.

    A lookup first uses observations whose community identification falls
    within the taxon. If the maximum amount of data is not reached, extra
    photos of already used observations are added to train, and then
    observations only identified by their uploader are used, for train only.

    `allocate` only reads from the data store and never touches shared
    state, so lookups of different taxa can run in parallel. `commit`
    applies the outcome: class indices, output rows and status.
    """

    def __init__(
        self,
        fetcher: ObservationPhotoFetcher,
        index: TaxonomyIndex,
        parameters: ExportParameters,
        class_index: Optional[ClassIndex] = None,
        writer=None,
    ):
        self.fetcher = fetcher
        self.index = index
        self.parameters = parameters
        self.class_index = class_index if class_index is not None else ClassIndex()
        self.writer = writer

    # ------------------------------------------------------------------
    # Quotas

    def has_maximum_photos(self, working_set: TaxonWorkingSet) -> bool:
        p = self.parameters
        return (
            working_set.size("test") >= p.test_max
            and working_set.size("val") >= p.val_max
            and working_set.size("train") >= p.train_max
        )

    def has_maximum_spatial(self, working_set: TaxonWorkingSet) -> bool:
        return len(working_set.spatial) >= self.parameters.spatial_max

    def has_maximum_data(self, working_set: TaxonWorkingSet) -> bool:
        return self.has_maximum_photos(working_set) and self.has_maximum_spatial(
            working_set
        )

    def has_minimum_photos(self, working_set: TaxonWorkingSet) -> bool:
        p = self.parameters
        return (
            working_set.size("test") >= p.test_min
            and working_set.size("val") >= p.val_min
            and working_set.size("train") >= p.train_min
        )

    # ------------------------------------------------------------------
    # Lookup

    def allocate(self, taxon: Taxon) -> Allocation:
        """Look up and distribute the data of a taxon and its descendants."""
        rng = taxon_random(self.parameters.seed, taxon.id)
        working_set = TaxonWorkingSet(taxon_id=taxon.id)
        taxon_ids = self.fetcher.taxon_ids(taxon)

        self.process_tier(taxon, working_set, True, taxon_ids, rng)
        if not self.has_maximum_data(working_set):
            self.distribute_multiple_photos(working_set, rng)
        if not self.has_maximum_data(working_set):
            self.process_tier(
                taxon,
                working_set,
                False,
                taxon_ids,
                rng,
                exclude_ids=working_set.used_observation_ids(),
            )
        if not self.has_maximum_data(working_set):
            self.distribute_multiple_photos(working_set, rng)

        allocation = Allocation(
            taxon_id=taxon.id,
            working_set=working_set,
            exportable=self.has_minimum_photos(working_set),
        )
        logger.debug(f"Taxon {taxon.id} allocation: {allocation.counts}")
        return allocation

    def process_tier(
        self,
        taxon: Taxon,
        working_set: TaxonWorkingSet,
        community: bool,
        taxon_ids: List[int],
        rng: random.Random,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> None:
        observations = self.fetcher.valid_observations(
            taxon, community, taxon_ids=taxon_ids, exclude_ids=exclude_ids
        )
        working_set.candidates = []
        observation_ids = list(observations)
        rng.shuffle(observation_ids)
        for start in range(0, len(observation_ids), OBSERVATION_CHUNK_SIZE):
            if self.has_maximum_data(working_set):
                break
            chunk = {
                observation_id: observations[observation_id]
                for observation_id in observation_ids[start : start + OBSERVATION_CHUNK_SIZE]
            }
            self.distribute_spatial(working_set, list(chunk.values()), rng)
            if self.has_maximum_photos(working_set):
                continue
            photos = self.fetcher.photos_for_observations(chunk)
            self.distribute_photos(working_set, photos, community, rng)

    def distribute_spatial(
        self,
        working_set: TaxonWorkingSet,
        observations: List[Observation],
        rng: random.Random,
    ) -> None:
        if self.has_maximum_spatial(working_set):
            return
        rng.shuffle(observations)
        for observation in observations:
            if len(working_set.spatial) >= self.parameters.spatial_max:
                break
            if not observation.has_spatial_quality:
                continue
            if observation.id in working_set.spatial_used:
                continue
            working_set.add_spatial(observation)

    def primary_split(self, working_set: TaxonWorkingSet) -> Optional[str]:
        """Split the next community photo goes to: evaluation splits reach
        their minimum first, then train fills up, then the evaluation splits
        take what is left."""
        p = self.parameters
        if working_set.size("test") < p.test_min:
            return "test"
        if working_set.size("val") < p.val_min:
            return "val"
        if working_set.size("train") < p.train_max:
            return "train"
        if working_set.size("test") < p.test_max:
            return "test"
        if working_set.size("val") < p.val_max:
            return "val"
        return None

    def distribute_photos(
        self,
        working_set: TaxonWorkingSet,
        photos: List[ObservationPhoto],
        community: bool,
        rng: random.Random,
    ) -> None:
        if self.has_maximum_photos(working_set):
            return
        working_set.candidates.extend(photos)
        if community:
            # Observations with fewer photos first, leaving multi-photo
            # observations for train enrichment
            jitter = {photo.photo_id: rng.uniform(0.1, 1) for photo in photos}
            photos = sorted(
                photos,
                key=lambda p: (p.observation_photo_count, p.position, jitter[p.photo_id]),
            )
        else:
            photos = list(photos)
            rng.shuffle(photos)

        for photo in photos:
            if photo.photo_id in working_set.photos_used:
                continue
            if working_set.in_any_split(photo.observation_id):
                continue
            if not community:
                if working_set.size("train") < self.parameters.train_max:
                    working_set.add_photo(photo, "train")
                continue
            split = self.primary_split(working_set)
            if split is not None:
                working_set.add_photo(photo, split)

    def distribute_multiple_photos(
        self, working_set: TaxonWorkingSet, rng: random.Random
    ) -> None:
        """Add more photos of observations already in train (or not used at
        all) to train, up to `train_photos_per_observation` each."""
        per_observation = self.parameters.train_photos_per_observation
        if per_observation < 2:
            return
        candidates = list(working_set.candidates)
        rng.shuffle(candidates)
        for photo in candidates:
            if working_set.size("train") >= self.parameters.train_max:
                break
            if photo.photo_id in working_set.photos_used:
                continue
            if working_set.observation_count("test", photo.observation_id):
                continue
            if working_set.observation_count("val", photo.observation_id):
                continue
            if working_set.observation_count("train", photo.observation_id) >= per_observation:
                continue
            working_set.add_photo(photo, "train")

    # ------------------------------------------------------------------
    # Commit

    def commit(self, taxon: Taxon, allocation: Allocation) -> TaxonStatus:
        """Record the outcome of a lookup: counts, class indices and rows of
        an exportable taxon, and its final status.

        Commits run one at a time. The rows of an exportable taxon are built
        and its status set before its class indices are taken, so a taxon
        failing to commit never uses up an index.
        """
        taxon.counts = allocation.counts
        if not allocation.exportable:
            self.index.set_status(taxon, TaxonStatus.INCOMPLETE)
            return TaxonStatus.INCOMPLETE

        leaf_class, iconic_class = self.class_index.peek(taxon)
        rows = []
        if self.writer is not None:
            working_set = allocation.working_set
            for split in ["train", "test", "val"]:
                photos = working_set.splits[split]
                rows.append(
                    (split, self.writer.photo_rows(taxon, photos, leaf_class, iconic_class))
                )
            spatial = working_set.spatial
            rows.append(
                ("spatial", self.writer.spatial_rows(taxon, spatial, leaf_class, iconic_class))
            )
        self.index.set_status(taxon, TaxonStatus.POPULATED)
        self.class_index.assign(taxon)
        for sink, sink_rows in rows:
            self.writer.write_rows(sink, sink_rows)
        return TaxonStatus.POPULATED

    def lookup(self, taxon: Taxon) -> TaxonStatus:
        """Allocate and immediately commit a single taxon."""
        return self.commit(taxon, self.allocate(taxon))

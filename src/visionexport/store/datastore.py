"""Read-only access to the relational tables the export is built from.

All queries go through DuckDB. The tables can live in the DuckDB database
itself, be exposed as views over parquet files, or be views over an attached
Postgres database.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import duckdb
import pandas as pd
from loguru import logger

from visionexport import (
    EXCLUDED_RANKS,
    IUCN_EXTINCT,
    MIN_OBSERVATIONS_COUNT,
    MIN_RANK_LEVEL,
)

TABLES = [
    "taxa",
    "observations",
    "observation_photos",
    "photos",
    "quality_metrics",
    "flags",
    "conservation_statuses",
]

TAXON_COLUMNS = [
    "t.id",
    "t.ancestry",
    "t.rank",
    "t.rank_level",
    "t.name",
    "t.observations_count",
    "t.iconic_taxon_id",
]


def _sql_quote(value: object) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _id_list(ids: Iterable) -> List[int]:
    return [int(i) for i in ids]


def records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a query result to a list of dicts, with missing values as None."""
    if df.empty:
        return []
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


class DataStore:
    """Query the taxa, observation, photo, quality and flag tables.

    A DuckDB connection is not thread-safe, so every query runs on its own
    cursor (a duplicate connection to the same database).
    """

    def __init__(self, connection: duckdb.DuckDBPyConnection):
        self.connection = connection

    @classmethod
    def from_postgres(cls, dsn: str) -> "DataStore":
        """Attach a Postgres database read-only and expose its tables as views."""
        con = duckdb.connect()
        con.sql("INSTALL postgres")
        con.load_extension("postgres")
        con.execute(f"ATTACH {_sql_quote(dsn)} AS remote (TYPE postgres, READ_ONLY)")
        for table in TABLES:
            con.execute(f"CREATE VIEW {table} AS SELECT * FROM remote.public.{table}")
        logger.info("Attached Postgres source database")
        return cls(con)

    @classmethod
    def from_parquet(cls, directory: Union[str, Path]) -> "DataStore":
        """Expose `<table>.parquet` files of a directory as views."""
        directory = Path(directory)
        con = duckdb.connect()
        for table in TABLES:
            path = directory / f"{table}.parquet"
            if not path.is_file():
                raise FileNotFoundError(f"Missing table file: {path}")
            con.execute(
                f"CREATE VIEW {table} AS SELECT * FROM read_parquet({_sql_quote(path)})"
            )
        logger.info(f"Using parquet tables from {directory}")
        return cls(con)

    @classmethod
    def from_source(
        cls,
        postgres_dsn: Optional[str] = None,
        parquet_dir: Optional[Union[str, Path]] = None,
    ) -> "DataStore":
        """Open a Postgres database or a parquet directory, whichever is given."""
        if (postgres_dsn is None) == (parquet_dir is None):
            raise ValueError("Exactly one of `postgres_dsn` and `parquet_dir` is required")
        if postgres_dsn is not None:
            return cls.from_postgres(postgres_dsn)
        return cls.from_parquet(parquet_dir)

    def query(self, sql: str, parameters: Optional[list] = None) -> pd.DataFrame:
        with self.connection.cursor() as cursor:
            return cursor.execute(sql, parameters or []).df()

    # ------------------------------------------------------------------
    # Taxa

    def max_taxon_id(self) -> int:
        df = self.query("SELECT max(id) AS max FROM taxa")
        value = df["max"].iloc[0]
        return 0 if pd.isna(value) else int(value)

    def _eligible_taxa_query(self) -> str:
        excluded_ranks = ", ".join(_sql_quote(rank) for rank in EXCLUDED_RANKS)
        return f"""
            SELECT {", ".join(TAXON_COLUMNS)}
            FROM taxa t
            WHERE t.observations_count >= {MIN_OBSERVATIONS_COUNT}
            AND t.rank_level >= {MIN_RANK_LEVEL}
            AND t.is_active = true
            AND t.rank NOT IN ({excluded_ranks})
        """

    def taxa_in_range(self, start_id: int, end_id: int) -> pd.DataFrame:
        """Return eligible taxa with `start_id < id <= end_id`."""
        sql = self._eligible_taxa_query() + " AND t.id > ? AND t.id <= ? ORDER BY t.id"
        return self.query(sql, [int(start_id), int(end_id)])

    def taxa_by_ids(self, ids: Iterable) -> pd.DataFrame:
        """Return taxa with the given IDs, without any eligibility filter."""
        ids = _id_list(ids)
        if not ids:
            return pd.DataFrame(columns=[c.split(".")[1] for c in TAXON_COLUMNS])
        sql = f"""
            SELECT {", ".join(TAXON_COLUMNS)}
            FROM taxa t
            WHERE t.id IN (SELECT UNNEST(?))
            ORDER BY t.id
        """
        return self.query(sql, [ids])

    def descendant_taxon_ids(self, taxon_id: int, ancestry: str) -> List[int]:
        """Return IDs of the active taxon and all its active descendants."""
        sql = """
            SELECT t.id
            FROM taxa t
            WHERE t.is_active = true
            AND (t.id = ? OR t.ancestry = ? OR t.ancestry LIKE ?)
            ORDER BY t.id
        """
        df = self.query(sql, [int(taxon_id), ancestry, f"{ancestry}/%"])
        return _id_list(df["id"])

    def globally_extinct_taxon_ids(self) -> List[int]:
        sql = f"""
            SELECT DISTINCT taxon_id
            FROM conservation_statuses
            WHERE iucn = {IUCN_EXTINCT}
            AND place_id IS NULL
            ORDER BY taxon_id
        """
        return _id_list(self.query(sql)["taxon_id"])

    # ------------------------------------------------------------------
    # Observations and photos

    def observations(
        self,
        taxon_ids: Iterable,
        community: bool,
        exclude_ids: Optional[Iterable] = None,
        limit: Optional[int] = None,
    ) -> pd.DataFrame:
        """Return observations with photos identified as one of `taxon_ids`.

        Parameters
        ----------
        taxon_ids : Iterable
            IDs of the taxon and its descendants.
        community : bool
            If True, match on the community taxon. Otherwise match on the
            uploader's taxon, ignoring observations the community already
            placed in one of `taxon_ids`.
        exclude_ids : Iterable, optional
            Observation IDs that must not be returned.
        limit : int, optional
            Maximum number of observations to return.

        Returns
        -------
        pd.DataFrame
            One row per observation, private coordinates taking precedence.
        """
        taxon_ids = _id_list(taxon_ids)
        columns = [
            "id",
            "latitude",
            "longitude",
            "positional_accuracy",
            "observed_on",
            "taxon_id",
            "community_taxon_id",
        ]
        if not taxon_ids:
            return pd.DataFrame(columns=columns)
        parameters: list = [taxon_ids]
        if community:
            tier = "o.community_taxon_id IN (SELECT UNNEST(?))"
        else:
            tier = (
                "o.taxon_id IN (SELECT UNNEST(?)) "
                "AND (o.community_taxon_id IS NULL "
                "OR o.community_taxon_id NOT IN (SELECT UNNEST(?)))"
            )
            parameters.append(taxon_ids)
        exclude = ""
        exclude_ids = _id_list(exclude_ids or [])
        if exclude_ids:
            exclude = "AND o.id NOT IN (SELECT UNNEST(?))"
            parameters.append(exclude_ids)
        sql = f"""
            SELECT
                o.id,
                CASE WHEN o.private_latitude IS NULL THEN o.latitude ELSE o.private_latitude END AS latitude,
                CASE WHEN o.private_longitude IS NULL THEN o.longitude ELSE o.private_longitude END AS longitude,
                o.positional_accuracy,
                o.observed_on,
                o.taxon_id,
                o.community_taxon_id
            FROM observations o
            WHERE o.observation_photos_count > 0
            AND {tier}
            {exclude}
            ORDER BY o.id
        """
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return self.query(sql, parameters)

    def quality_metrics(self, observation_ids: Iterable) -> pd.DataFrame:
        observation_ids = _id_list(observation_ids)
        if not observation_ids:
            return pd.DataFrame(columns=["observation_id", "metric", "agree"])
        sql = """
            SELECT observation_id, metric, agree
            FROM quality_metrics
            WHERE observation_id IN (SELECT UNNEST(?))
        """
        return self.query(sql, [observation_ids])

    def unresolved_flagged_ids(self, flaggable_type: str, ids: Iterable) -> List[int]:
        """Return which of `ids` have unresolved flags of the given type."""
        ids = _id_list(ids)
        if not ids:
            return []
        sql = """
            SELECT DISTINCT flaggable_id
            FROM flags
            WHERE flaggable_type = ?
            AND resolved = false
            AND flaggable_id IN (SELECT UNNEST(?))
        """
        return _id_list(self.query(sql, [flaggable_type, ids])["flaggable_id"])

    def observation_photos(self, observation_ids: Iterable) -> pd.DataFrame:
        observation_ids = _id_list(observation_ids)
        if not observation_ids:
            return pd.DataFrame(columns=["photo_id", "observation_id", "position"])
        sql = """
            SELECT photo_id, observation_id, COALESCE(position, photo_id) AS position
            FROM observation_photos
            WHERE observation_id IN (SELECT UNNEST(?))
            ORDER BY observation_id, position, photo_id
        """
        return self.query(sql, [observation_ids])

    def photos(self, photo_ids: Iterable) -> pd.DataFrame:
        photo_ids = _id_list(photo_ids)
        if not photo_ids:
            return pd.DataFrame(columns=["id", "medium_url"])
        sql = """
            SELECT id, medium_url
            FROM photos
            WHERE id IN (SELECT UNNEST(?))
        """
        return self.query(sql, [photo_ids])

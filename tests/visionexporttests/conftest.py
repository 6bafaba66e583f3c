import datetime
from typing import Dict, List, Optional

import duckdb
import pytest

from visionexport.parameters import ExportParameters
from visionexport.store.datastore import DataStore

SCHEMA = [
    """
    CREATE TABLE taxa (
        id INTEGER,
        ancestry VARCHAR,
        rank VARCHAR,
        rank_level DOUBLE,
        name VARCHAR,
        observations_count INTEGER,
        iconic_taxon_id INTEGER,
        is_active BOOLEAN
    )
    """,
    """
    CREATE TABLE observations (
        id INTEGER,
        latitude DOUBLE,
        longitude DOUBLE,
        private_latitude DOUBLE,
        private_longitude DOUBLE,
        positional_accuracy INTEGER,
        observed_on DATE,
        taxon_id INTEGER,
        community_taxon_id INTEGER,
        observation_photos_count INTEGER
    )
    """,
    "CREATE TABLE observation_photos (photo_id INTEGER, observation_id INTEGER, position INTEGER)",
    "CREATE TABLE photos (id INTEGER, medium_url VARCHAR)",
    "CREATE TABLE quality_metrics (observation_id INTEGER, metric VARCHAR, agree BOOLEAN)",
    "CREATE TABLE flags (flaggable_type VARCHAR, flaggable_id INTEGER, resolved BOOLEAN)",
    "CREATE TABLE conservation_statuses (taxon_id INTEGER, iucn INTEGER, place_id INTEGER)",
]

PHOTO_URL = "https://static.example.org/photos/{}/medium.jpg?1600000000"


class ExportDatabase:
    """In-memory copy of the source tables, filled in by the tests."""

    def __init__(self):
        self.connection = duckdb.connect()
        for statement in SCHEMA:
            self.connection.execute(statement)
        self.last_observation_id = 0
        self.last_photo_id = 0
        self.photo_ids: Dict[int, List[int]] = {}

    def add_taxon(
        self,
        taxon_id: int,
        ancestry: Optional[str] = None,
        name: Optional[str] = None,
        rank: str = "species",
        rank_level: float = 10,
        observations_count: int = 100,
        iconic_taxon_id: Optional[int] = None,
        is_active: bool = True,
    ) -> None:
        self.connection.execute(
            "INSERT INTO taxa VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                taxon_id,
                ancestry,
                rank,
                rank_level,
                name or f"Taxon {taxon_id}",
                observations_count,
                iconic_taxon_id,
                is_active,
            ],
        )

    def add_observation(
        self,
        taxon_id: Optional[int] = None,
        community_taxon_id: Optional[int] = None,
        photos: int = 1,
        positions: Optional[List[Optional[int]]] = None,
        latitude: Optional[float] = 50.123456,
        longitude: Optional[float] = 4.654321,
        private_latitude: Optional[float] = None,
        private_longitude: Optional[float] = None,
        positional_accuracy: Optional[int] = 10,
        observed_on: Optional[datetime.date] = datetime.date(2021, 6, 15),
    ) -> int:
        self.last_observation_id += 1
        observation_id = self.last_observation_id
        if positions is None:
            positions = list(range(photos))
        self.photo_ids[observation_id] = []
        for position in positions:
            self.last_photo_id += 1
            photo_id = self.last_photo_id
            self.photo_ids[observation_id].append(photo_id)
            self.connection.execute(
                "INSERT INTO observation_photos VALUES (?, ?, ?)",
                [photo_id, observation_id, position],
            )
            self.connection.execute(
                "INSERT INTO photos VALUES (?, ?)", [photo_id, PHOTO_URL.format(photo_id)]
            )
        self.connection.execute(
            "INSERT INTO observations VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                observation_id,
                latitude,
                longitude,
                private_latitude,
                private_longitude,
                positional_accuracy,
                observed_on,
                taxon_id,
                community_taxon_id,
                len(positions),
            ],
        )
        return observation_id

    def add_observations(
        self, taxon_id: int, count: int, community: bool = True, **kwargs
    ) -> List[int]:
        return [
            self.add_observation(
                taxon_id=taxon_id,
                community_taxon_id=taxon_id if community else None,
                **kwargs,
            )
            for _ in range(count)
        ]

    def add_quality_metric(self, observation_id: int, metric: str, agree: bool) -> None:
        self.connection.execute(
            "INSERT INTO quality_metrics VALUES (?, ?, ?)", [observation_id, metric, agree]
        )

    def add_flag(self, flaggable_type: str, flaggable_id: int, resolved: bool = False) -> None:
        self.connection.execute(
            "INSERT INTO flags VALUES (?, ?, ?)", [flaggable_type, flaggable_id, resolved]
        )

    def add_conservation_status(
        self, taxon_id: int, iucn: int = 70, place_id: Optional[int] = None
    ) -> None:
        self.connection.execute(
            "INSERT INTO conservation_statuses VALUES (?, ?, ?)", [taxon_id, iucn, place_id]
        )

    def remove_photo_url(self, photo_id: int) -> None:
        self.connection.execute("UPDATE photos SET medium_url = NULL WHERE id = ?", [photo_id])


@pytest.fixture
def database():
    db = ExportDatabase()
    yield db
    db.connection.close()


@pytest.fixture
def store(database):
    return DataStore(database.connection)


@pytest.fixture
def small_tree(database):
    """Life > {Aves > {3, 4, 7}, Insecta > {6}}"""
    database.add_taxon(1, None, "Life", rank="stateofmatter", rank_level=100)
    database.add_taxon(2, "1", "Aves", rank="class", rank_level=50, iconic_taxon_id=2)
    database.add_taxon(3, "1/2", "Parus major", iconic_taxon_id=2)
    database.add_taxon(4, "1/2", "Parus minor", iconic_taxon_id=2)
    database.add_taxon(5, "1", "Insecta", rank="class", rank_level=50)
    database.add_taxon(6, "1/5", "Apis mellifera, Linnaeus")
    database.add_taxon(7, "1/2", "Raphus cucullatus", iconic_taxon_id=2)
    return database


@pytest.fixture
def make_parameters(tmp_path):
    """Parameters with small quotas, so a handful of observations fill a class."""

    def _make(**overrides) -> ExportParameters:
        values = dict(
            output_dir=tmp_path,
            export_name="export",
            train_min=2,
            train_max=4,
            val_min=1,
            val_max=2,
            test_min=1,
            test_max=2,
            spatial_max=3,
            train_photos_per_observation=2,
            taxa_concurrency=3,
            show_progress=False,
        )
        values.update(overrides)
        return ExportParameters(**values)

    return _make

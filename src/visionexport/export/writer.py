"""Append-only output files of an export.

Every file is fed through a bounded queue drained by its own writer thread.
Producers block while a queue is full, which bounds memory whatever the
number of rows produced at once.
"""

import csv
import os
import queue
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd
from loguru import logger

from visionexport.errors import OutputDirectoryError

PHOTO_HEADER = [
    "photo_id",
    "photo_url",
    "leaf_class_id",
    "iconic_class_id",
    "taxon_id",
    "community",
]
SPATIAL_HEADER = [
    "observation_id",
    "latitude",
    "longitude",
    "observed_on",
    "leaf_class_id",
    "iconic_class_id",
    "taxon_id",
    "community",
    "captive",
]
TAXONOMY_HEADER = [
    "parent_taxon_id",
    "taxon_id",
    "rank_level",
    "leaf_class_id",
    "iconic_class_id",
    "name",
]
ICONIC_HEADER = ["iconic_taxon_id", "iconic_class_id", "name"]
VISUAL_HEADER = "Name, ID, Rank, Status, (Train::Val::Test)"

SINK_FILES = {
    "train": ("train_data.csv", PHOTO_HEADER),
    "val": ("val_data.csv", PHOTO_HEADER),
    "test": ("test_data.csv", PHOTO_HEADER),
    "spatial": ("spatial_data.csv", SPATIAL_HEADER),
    "taxonomy": ("taxonomy.csv", TAXONOMY_HEADER),
    "iconic": ("iconic_taxa.csv", ICONIC_HEADER),
}

DEFAULT_QUEUE_SIZE = 1000

_STOP = object()


def format_observed_on(value: Any) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    if isinstance(value, str):
        return value[:10]
    return value.strftime("%Y-%m-%d")


def format_number(value: Any) -> Any:
    if value is None or pd.isna(value):
        return ""
    if float(value).is_integer():
        return int(value)
    return value


def format_name(name: Optional[str]) -> str:
    return name.replace(",", "") if name else ""


class Sink:
    """A single output file written by a dedicated thread."""

    def __init__(self, path: Path, header: Any = None, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.path = path
        self.queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.error: Optional[BaseException] = None
        self.rows = 0
        self.handle = open(path, "w", newline="")
        if header is not None:
            self.write_row(header)
        self.thread = threading.Thread(
            target=self._drain, name=f"sink-{path.name}", daemon=True
        )
        self.thread.start()

    def write_row(self, row: Any) -> None:
        self.handle.write(f"{row}\n")

    def _drain(self) -> None:
        while True:
            row = self.queue.get()
            try:
                if row is _STOP:
                    return
                self.write_row(row)
                self.rows += 1
            except Exception as error:
                if self.error is None:
                    self.error = error
                    logger.opt(exception=error).error(f"Failed writing to {self.path}")
            finally:
                self.queue.task_done()

    def put(self, row: Any) -> None:
        """Queue a row, blocking while the queue is full."""
        self.queue.put(row)

    def close(self) -> None:
        self.queue.put(_STOP)
        self.thread.join()
        self.handle.flush()
        self.handle.close()
        if self.error is not None:
            raise self.error


class CsvSink(Sink):
    def __init__(self, path: Path, header: Any = None, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.csv_writer = None
        super().__init__(path, header=header, queue_size=queue_size)

    def write_row(self, row: Any) -> None:
        if self.csv_writer is None:
            self.csv_writer = csv.writer(self.handle, lineterminator="\n")
        self.csv_writer.writerow(row)


class OutputWriter:
    """Open the export files and write the rows of the exported taxa.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Existing directory, readable and writable.
    export_name : str
        Name of the subdirectory of `output_dir` receiving the files. It is
        created if needed.
    queue_size : int
        Number of rows each file can hold before producers block.
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        export_name: str,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        output_dir = Path(output_dir)
        if not output_dir.is_dir() or not os.access(output_dir, os.R_OK | os.W_OK):
            raise OutputDirectoryError(
                f"output dir [{output_dir}] does not exist or you do not have read/write permission"
            )
        self.directory = output_dir / export_name
        self.directory.mkdir(exist_ok=True)
        logger.info(f"Writing export to {self.directory}")

        self.sinks: Dict[str, Sink] = {}
        for name, (filename, header) in SINK_FILES.items():
            self.sinks[name] = CsvSink(self.directory / filename, header, queue_size)
        self.sinks["visual"] = Sink(
            self.directory / "taxonomy_visual.txt", VISUAL_HEADER + "\n", queue_size
        )
        self.closed = False

    def __enter__(self) -> "OutputWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def path(self, sink: str) -> Path:
        return self.sinks[sink].path

    def write(self, sink: str, row: Any) -> None:
        self.sinks[sink].put(row)

    def write_rows(self, sink: str, rows: Iterable) -> None:
        for row in rows:
            self.write(sink, row)

    @staticmethod
    def photo_rows(
        taxon,
        photos: Iterable,
        leaf_class: int,
        iconic_class: int,
    ) -> List[list]:
        return [
            [
                photo.photo_id,
                photo.photo_url,
                leaf_class,
                iconic_class,
                taxon.id,
                int(photo.community),
            ]
            for photo in photos
        ]

    @staticmethod
    def spatial_rows(
        taxon,
        observations: Iterable,
        leaf_class: int,
        iconic_class: int,
    ) -> List[list]:
        return [
            [
                observation.id,
                format_number(round(observation.latitude, 4)),
                format_number(round(observation.longitude, 4)),
                format_observed_on(observation.observed_on),
                leaf_class,
                iconic_class,
                taxon.id,
                int(observation.community),
                int(observation.is_captive),
            ]
            for observation in observations
        ]

    def write_photos(
        self,
        split: str,
        taxon,
        photos: Iterable,
        leaf_class: int,
        iconic_class: int,
    ) -> None:
        self.write_rows(split, self.photo_rows(taxon, photos, leaf_class, iconic_class))

    def write_spatial(
        self,
        taxon,
        observations: Iterable,
        leaf_class: int,
        iconic_class: int,
    ) -> None:
        self.write_rows(
            "spatial", self.spatial_rows(taxon, observations, leaf_class, iconic_class)
        )

    def write_taxonomy(
        self,
        parent_id: Optional[int],
        taxon,
        leaf_class: Optional[int],
        iconic_class: Optional[int],
    ) -> None:
        self.write(
            "taxonomy",
            [
                "" if parent_id is None else parent_id,
                taxon.id,
                format_number(taxon.rank_level),
                "" if leaf_class is None else leaf_class,
                "" if iconic_class is None else iconic_class,
                format_name(taxon.name),
            ],
        )

    def write_iconic(self, iconic_taxon_id: int, iconic_class: int, name: Optional[str]) -> None:
        self.write("iconic", [iconic_taxon_id, iconic_class, name or "Unassigned"])

    def write_visual(self, lines: Union[str, List[str]]) -> None:
        if isinstance(lines, str):
            lines = [lines]
        for line in lines:
            self.write("visual", line)

    def close(self) -> None:
        """Drain and close every file. The files are kept whatever happens."""
        if self.closed:
            return
        self.closed = True
        errors = []
        for sink in self.sinks.values():
            try:
                sink.close()
            except Exception as error:
                errors.append(error)
            else:
                logger.debug(f"Closed {sink.path.name} ({sink.rows} rows)")
        if errors:
            raise errors[0]

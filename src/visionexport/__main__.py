#!/usr/bin/env python3

import sys
from typing import Optional

import fire
from loguru import logger

from visionexport.export.exporter import VisionExporter
from visionexport.parameters import ExportParameters, optional_list
from visionexport.store.datastore import DataStore


def export(
    output_dir: str,
    postgres_dsn: Optional[str] = None,
    parquet_dir: Optional[str] = None,
    log_level: str = "INFO",
    **kwargs,
):
    """Build a vision export.

    Parameters
    ----------
    output_dir : str
        Existing directory receiving the export subdirectory.
    postgres_dsn : str, optional
        Connection string of the source Postgres database.
    parquet_dir : str, optional
        Directory with one `<table>.parquet` file per source table.
    log_level : str
        Level of the messages logged to stderr.
    **kwargs
        Any other field of `ExportParameters`, e.g. `--taxa=47126,3`,
        `--train_min=100` or `--skip_ancestry_mismatch`.
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level)

    for key in ["taxa", "leaves"]:
        if key in kwargs:
            kwargs[key] = optional_list(kwargs[key])
    parameters = ExportParameters(output_dir=output_dir, **kwargs)
    store = DataStore.from_source(postgres_dsn=postgres_dsn, parquet_dir=parquet_dir)
    return str(VisionExporter(store, parameters).run())


def main():
    fire.Fire(export)


if __name__ == "__main__":
    main()

"""Build a vision export (train/val/test manifests, spatial sample and
taxonomy files) from an iNaturalist-style database or a folder of parquet
tables.
"""

import argparse
import sys
from pathlib import Path

from loguru import logger

from visionexport.export.exporter import VisionExporter
from visionexport.parameters import (
    SPATIAL_MAX,
    TEST_MAX,
    TEST_MIN,
    TRAIN_MAX,
    TRAIN_MIN,
    TRAIN_PHOTOS_PER_OBSERVATION,
    VAL_MAX,
    VAL_MIN,
    ExportParameters,
    optional_list,
)
from visionexport.store.datastore import DataStore


def main(args):
    parameters = ExportParameters(
        output_dir=args.dir,
        taxa=optional_list(args.taxa),
        leaves=optional_list(args.leaves),
        train_min=args.train_min,
        train_max=args.train_max,
        val_min=args.val_min,
        val_max=args.val_max,
        test_min=args.test_min,
        test_max=args.test_max,
        spatial_max=args.spatial_max,
        train_photos_per_observation=args.train_per_obs,
        skip_ancestry_mismatch=args.skip_ancestry_mismatch,
        seed=args.seed,
        show_progress=not args.no_progress,
        **({"export_name": args.name} if args.name else {}),
    )
    store = DataStore.from_source(postgres_dsn=args.postgres_dsn, parquet_dir=args.parquet_dir)
    export_dir = VisionExporter(store, parameters).run()
    logger.success(f"Export ready in {export_dir}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Export vision training data.")

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--postgres-dsn", type=str, help="Source Postgres connection string")
    source.add_argument(
        "--parquet-dir", type=Path, help="Folder with one <table>.parquet per source table"
    )

    parser.add_argument("--dir", type=Path, required=True, help="Existing output directory")
    parser.add_argument("--name", type=str, default=None, help="Name of the export folder")
    parser.add_argument(
        "--taxa", type=str, default=None, help="Comma-separated taxon IDs to restrict to"
    )
    parser.add_argument(
        "--leaves", type=str, default=None, help="Comma-separated taxon IDs treated as leaves"
    )
    parser.add_argument("--train-min", type=int, default=TRAIN_MIN)
    parser.add_argument("--train-max", type=int, default=TRAIN_MAX)
    parser.add_argument("--val-min", type=int, default=VAL_MIN)
    parser.add_argument("--val-max", type=int, default=VAL_MAX)
    parser.add_argument("--test-min", type=int, default=TEST_MIN)
    parser.add_argument("--test-max", type=int, default=TEST_MAX)
    parser.add_argument("--spatial-max", type=int, default=SPATIAL_MAX)
    parser.add_argument("--train-per-obs", type=int, default=TRAIN_PHOTOS_PER_OBSERVATION)
    parser.add_argument("--skip-ancestry-mismatch", action="store_true")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--no-progress", action="store_true")
    parser.add_argument("--verbose", action="store_true")

    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO")

    main(args)

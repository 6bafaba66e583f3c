import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Default quotas per leaf class
TRAIN_MIN = 50
TRAIN_MAX = 1000
VAL_MIN = 25
VAL_MAX = 100
TEST_MIN = 25
TEST_MAX = 100
SPATIAL_MAX = 5000
TRAIN_PHOTOS_PER_OBSERVATION = 5

# How many taxa to look up at one time
TAXA_CONCURRENCY = 5
# Width of the id ranges used while ingesting the taxonomy
TAXA_BATCH_SIZE = 1000

DEFAULT_SEED = 42
DEFAULT_MAX_PASSES = 1000


def default_export_name() -> str:
    return f"vision-export-{datetime.now().strftime('%Y%m%d%H%M%S')}"


class ExportParameters(BaseModel):
    """Parameters of a vision export run. Types are enforced by Pydantic
    and the whole record is validated once, when it is created.

    Attributes
    ----------
    output_dir : Path
        Existing, read/write accessible directory. The export is written
        to a subdirectory named `export_name`.
    export_name : str (default=vision-export-<timestamp>)
        Name of the subdirectory holding the export files.
    taxa : List[int] (default=[])
        Optional allow-list of taxon IDs. When not empty, only these taxa,
        their ancestors and their descendants are considered.
    leaves : List[int] (default=[])
        Taxon IDs to be treated as leaves regardless of their children.
    train_min, train_max : int (default=50, 1000)
        Minimum and maximum number of train photos per leaf class.
    val_min, val_max : int (default=25, 100)
        Minimum and maximum number of validation photos per leaf class.
    test_min, test_max : int (default=25, 100)
        Minimum and maximum number of test photos per leaf class.
    spatial_max : int (default=5000)
        Maximum number of observations in the spatial sample of a class.
    train_photos_per_observation : int (default=5)
        Maximum number of photos of a single observation used in train.
    skip_ancestry_mismatch : bool (default=False)
        Log and tolerate conflicting parents while ingesting the taxonomy
        instead of aborting.
    taxa_concurrency : int (default=5)
        Number of taxa looked up at the same time.
    taxa_batch_size : int (default=1000)
        Width of the taxon ID ranges fetched during ingestion.
    seed : int (default=42)
        Seed of every random choice made during the export.
    max_passes : int (default=1000)
        Upper bound on the number of completion passes over the taxonomy.
    show_progress : bool (default=True)
        Whether to display tqdm progress bars.
    """

    output_dir: Path
    export_name: str = Field(default_factory=default_export_name)
    taxa: List[int] = Field(default_factory=list)
    leaves: List[int] = Field(default_factory=list)
    train_min: int = Field(default=TRAIN_MIN, ge=0)
    train_max: int = Field(default=TRAIN_MAX, ge=0)
    val_min: int = Field(default=VAL_MIN, ge=0)
    val_max: int = Field(default=VAL_MAX, ge=0)
    test_min: int = Field(default=TEST_MIN, ge=0)
    test_max: int = Field(default=TEST_MAX, ge=0)
    spatial_max: int = Field(default=SPATIAL_MAX, ge=0)
    train_photos_per_observation: int = Field(
        default=TRAIN_PHOTOS_PER_OBSERVATION, ge=1
    )
    skip_ancestry_mismatch: bool = Field(default=False)
    taxa_concurrency: int = Field(default=TAXA_CONCURRENCY, ge=1)
    taxa_batch_size: int = Field(default=TAXA_BATCH_SIZE, ge=1)
    seed: int = Field(default=DEFAULT_SEED)
    max_passes: int = Field(default=DEFAULT_MAX_PASSES, ge=1)
    show_progress: bool = Field(default=True)

    @field_validator("output_dir")
    @classmethod
    def check_output_dir(cls, value: Path) -> Path:
        """Validates that the output directory exists and is accessible."""
        if not value.is_dir() or not os.access(value, os.R_OK | os.W_OK):
            raise ValueError(
                f"output dir [{value}] does not exist or you do not have read/write permission"
            )
        return value

    @field_validator("export_name")
    @classmethod
    def check_export_name(cls, value: str) -> str:
        if not value or Path(value).name != value:
            raise ValueError(f"export_name must be a plain directory name, got `{value}`")
        return value

    @model_validator(mode="after")
    def check_quotas(self):
        """Validates that every minimum quota is below its maximum."""
        for split in ["train", "val", "test"]:
            minimum = getattr(self, f"{split}_min")
            maximum = getattr(self, f"{split}_max")
            if minimum > maximum:
                raise ValueError(
                    f"{split}_min ({minimum}) cannot be larger than {split}_max ({maximum})"
                )
        return self

    @property
    def export_dir(self) -> Path:
        return self.output_dir / self.export_name


def optional_list(value: Optional[List[int]]) -> List[int]:
    """Normalize a CLI value (None, a single ID or a sequence) to a list of ints."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    elif isinstance(value, int):
        value = [value]
    return [int(v) for v in value]

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from visionexport.errors import StatusTransitionError


class TaxonStatus(Enum):
    """Lifecycle of a taxon during an export."""

    UNSET = "unset"
    POPULATED = "populated"
    INCOMPLETE = "incomplete"
    SKIPPED = "skipped"
    COMPLETE = "complete"

    @property
    def is_terminal(self) -> bool:
        return self is not TaxonStatus.UNSET

    @property
    def is_covered(self) -> bool:
        """Whether the taxon, or its descendants, provide a leaf class."""
        return self in (TaxonStatus.POPULATED, TaxonStatus.COMPLETE)


@dataclass
class Taxon:
    """A node of the taxonomy.

    Taxa are created as placeholders the first time their ID appears in an
    ancestry chain and are filled in once their own record is read.
    """

    id: int
    parent_id: Optional[int] = None
    rank: Optional[str] = None
    rank_level: Optional[float] = None
    name: Optional[str] = None
    observations_count: int = 0
    iconic_taxon_id: int = 0
    status: TaxonStatus = TaxonStatus.UNSET
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return self.name is None

    def update_from_record(self, record: Dict[str, Any]) -> None:
        """Copy the fields of a `taxa` row onto this taxon."""
        self.rank = record.get("rank")
        self.rank_level = record.get("rank_level")
        self.name = record.get("name")
        self.observations_count = int(record.get("observations_count") or 0)
        self.iconic_taxon_id = int(record.get("iconic_taxon_id") or 0)

    def set_status(self, status: TaxonStatus) -> None:
        """Assign a terminal status. A terminal status is never replaced."""
        if not status.is_terminal:
            raise StatusTransitionError(
                f"Cannot reset status of taxon {self.id} to {status.value}"
            )
        if self.status.is_terminal:
            raise StatusTransitionError(
                f"Taxon {self.id} is already {self.status.value}, cannot become {status.value}"
            )
        self.status = status

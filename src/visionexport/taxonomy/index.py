import threading
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from visionexport.errors import AncestryMismatchError
from visionexport.export.pool import ConcurrencyPool
from visionexport.store.datastore import DataStore, records
from visionexport.taxonomy.taxon import Taxon, TaxonStatus

ROOT_ID = 0


class TaxonomyIndex:
    """In-memory taxonomy built from the `taxa` table.

    Taxa are stored by ID and the tree is kept as a children adjacency
    keyed by parent ID, rooted at the virtual taxon 0. Every ancestor seen
    in an ancestry chain gets a placeholder entry until its own record is
    read.
    """

    def __init__(self, skip_ancestry_mismatch: bool = False):
        self.skip_ancestry_mismatch = skip_ancestry_mismatch
        self.taxa: Dict[int, Taxon] = {}
        self.children: Dict[int, Dict[int, None]] = {ROOT_ID: {}}
        self._lock = threading.Lock()
        self._status_lock = threading.Lock()
        self.status_changes = 0

    def __contains__(self, taxon_id: int) -> bool:
        return taxon_id in self.taxa

    def __getitem__(self, taxon_id: int) -> Taxon:
        return self.taxa[taxon_id]

    def __len__(self) -> int:
        return len(self.taxa)

    def get(self, taxon_id: int) -> Optional[Taxon]:
        return self.taxa.get(taxon_id)

    def child_ids(self, taxon_id: int) -> List[int]:
        """Children in ascending ID order, whatever the order they were read in."""
        return sorted(self.children.get(taxon_id, {}))

    def root_ids(self) -> List[int]:
        return self.child_ids(ROOT_ID)

    def populate(self, record: Dict[str, Any]) -> Taxon:
        """Add a `taxa` row to the index, linking every ancestor to its parent.

        Raises
        ------
        AncestryMismatchError
            If an ancestor already has a different parent, unless
            `skip_ancestry_mismatch` is set, in which case the parent is
            overwritten.
        """
        taxon_id = int(record["id"])
        ancestry = record.get("ancestry") or ""
        chain = [int(a) for a in ancestry.split("/") if a] + [taxon_id]
        with self._lock:
            taxon = self.taxa.setdefault(taxon_id, Taxon(id=taxon_id))
            taxon.update_from_record(record)
            parent_id = ROOT_ID
            for ancestor_id in chain:
                self.children.setdefault(parent_id, {})[ancestor_id] = None
                ancestor = self.taxa.get(ancestor_id)
                if (
                    ancestor is not None
                    and ancestor.parent_id is not None
                    and ancestor.parent_id != parent_id
                ):
                    error = (
                        f"Ancestry mismatch: {ancestor_id} has parents "
                        f"[{parent_id}, {ancestor.parent_id}] in ancestry of {taxon_id}"
                    )
                    if not self.skip_ancestry_mismatch:
                        raise AncestryMismatchError(error)
                    logger.warning(error)
                    self.children.get(ancestor.parent_id, {}).pop(ancestor_id, None)
                if ancestor is None:
                    ancestor = Taxon(id=ancestor_id)
                    self.taxa[ancestor_id] = ancestor
                ancestor.parent_id = parent_id
                parent_id = ancestor_id
        return taxon

    def populate_many(self, rows: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for row in rows:
            self.populate(row)
            count += 1
        return count

    def placeholder_ids(self) -> List[int]:
        return sorted(t.id for t in self.taxa.values() if t.is_placeholder)

    def ancestry(self, taxon_id: int) -> str:
        """Return the `/`-delimited chain of IDs from the top of the tree
        down to and including the given taxon."""
        chain = []
        seen = set()
        current = self.taxa.get(taxon_id)
        while current is not None:
            if current.id in seen:
                raise AncestryMismatchError(f"Cyclic ancestry through taxon {current.id}")
            seen.add(current.id)
            chain.append(str(current.id))
            if not current.parent_id:
                break
            current = self.taxa.get(current.parent_id)
        return "/".join(reversed(chain))

    def ancestor_ids(self, taxon_id: int) -> List[int]:
        """IDs on the path from the top of the tree to `taxon_id`, inclusive."""
        if taxon_id not in self.taxa:
            return []
        return [int(a) for a in self.ancestry(taxon_id).split("/")]

    def set_status(self, taxon: Taxon, status: TaxonStatus) -> None:
        with self._status_lock:
            taxon.set_status(status)
            self.status_changes += 1

    def load(
        self,
        store: DataStore,
        batch_size: int = 1000,
        concurrency: int = 5,
        show_progress: bool = False,
    ) -> "TaxonomyIndex":
        """Read all eligible taxa in ID-range batches, then fill in the
        placeholders whose own records were not part of those batches."""
        max_id = store.max_taxon_id()
        logger.info(f"Reading taxa up to ID {max_id} in batches of {batch_size}")
        pool = ConcurrencyPool(
            concurrency, name="taxa", raise_errors=True, show_progress=show_progress
        )
        pool.run_id_ranges(
            lambda start, end: self.populate_many(records(store.taxa_in_range(start, end))),
            0,
            max_id,
            batch_size,
        )
        self.load_placeholders(store)
        logger.info(f"Taxonomy holds {len(self.taxa)} taxa")
        return self

    def load_placeholders(self, store: DataStore) -> int:
        ids = self.placeholder_ids()
        if not ids:
            return 0
        logger.info(f"Looking up {len(ids)} ancestor taxa without records")
        return self.populate_many(records(store.taxa_by_ids(ids)))

"""Repeated depth-first passes over the taxonomy until every branch is settled.

A taxon can only be judged once all of its children are: it is complete when
one of its children provides a leaf class, and needs a lookup of its own
otherwise. Each pass therefore settles the deepest taxa it can reach and
collects the ones needing a lookup (the frontier), which are then looked up
before the next pass starts.
"""

import random
import threading
import time
from contextlib import contextmanager
from typing import Iterable, List, Set, Tuple

from loguru import logger

from visionexport.errors import TraversalError
from visionexport.export.allocator import SetAllocator
from visionexport.export.pool import ConcurrencyPool, PoolResult
from visionexport.taxonomy.eligibility import EligibilityAssessor
from visionexport.taxonomy.index import TaxonomyIndex
from visionexport.taxonomy.taxon import Taxon, TaxonStatus


class Turnstile:
    """Let threads through a critical section one at a time, in order of
    their position."""

    def __init__(self):
        self._next = 0
        self._condition = threading.Condition()

    @contextmanager
    def turn(self, position: int):
        with self._condition:
            self._condition.wait_for(lambda: self._next == position)
            try:
                yield
            finally:
                self._next += 1
                self._condition.notify_all()


class CompletionEngine:
    """Drive the lookups of the taxonomy to a fixpoint.

    Parameters
    ----------
    index : TaxonomyIndex
        The taxonomy, with every status still unset.
    assessor : EligibilityAssessor
        Skips extinct taxa and taxa outside the selected branches.
    allocator : SetAllocator
        Looks up and commits a single taxon.
    custom_leaf_ids : Iterable[int]
        Taxa looked up directly, whatever their children.
    concurrency : int
        Number of taxa looked up at the same time.
    seed : int
        Seed of the frontier shuffles.
    max_passes : int
        Number of passes after which the run is considered stuck.
    show_progress : bool
        Display a progress bar for each pass.
    """

    def __init__(
        self,
        index: TaxonomyIndex,
        assessor: EligibilityAssessor,
        allocator: SetAllocator,
        custom_leaf_ids: Iterable[int] = (),
        concurrency: int = 5,
        seed: int = 42,
        max_passes: int = 1000,
        show_progress: bool = False,
    ):
        self.index = index
        self.assessor = assessor
        self.allocator = allocator
        self.custom_leaf_ids: Set[int] = set(int(i) for i in custom_leaf_ids)
        self.concurrency = concurrency
        self.rng = random.Random(seed)
        self.max_passes = max_passes
        self.show_progress = show_progress
        # Taxa whose lookup raised. They count as settled so their parents
        # can still be judged, but are never looked up again in this run.
        self.failed: Set[int] = set()
        self._failed_lock = threading.Lock()
        self.passes = 0

    def is_settled(self, taxon: Taxon) -> bool:
        return taxon.status.is_terminal or taxon.id in self.failed

    def is_converged(self) -> bool:
        return all(self.is_settled(self.index[i]) for i in self.index.root_ids())

    def traverse(self) -> List[int]:
        """Run one depth-first pass from the virtual root and return the IDs
        of the taxa needing a lookup, in traversal order."""
        frontier: List[int] = []
        visited: Set[int] = set()
        stack: List[Tuple[int, bool]] = [
            (taxon_id, False) for taxon_id in reversed(self.index.root_ids())
        ]
        while stack:
            taxon_id, within_filter_branch = stack.pop()
            if taxon_id in visited:
                raise TraversalError(f"Taxon {taxon_id} reached twice in one pass")
            visited.add(taxon_id)
            taxon = self.index[taxon_id]
            if self.is_settled(taxon):
                continue
            within_filter_branch = self.assessor.assess(taxon, within_filter_branch)
            if taxon.status.is_terminal:
                continue

            child_ids = []
            if taxon_id not in self.custom_leaf_ids:
                child_ids = self.index.child_ids(taxon_id)
            if child_ids:
                children = [self.index[child_id] for child_id in child_ids]
                unsettled = [child for child in children if not self.is_settled(child)]
                if unsettled:
                    # Judged on a later pass, once these children are settled
                    for child in reversed(unsettled):
                        stack.append((child.id, within_filter_branch))
                    continue
                if any(child.status.is_covered for child in children):
                    self.index.set_status(taxon, TaxonStatus.COMPLETE)
                    continue
            frontier.append(taxon_id)
        return frontier

    def lookup_task(self, position: int, taxon: Taxon, turnstile: Turnstile) -> None:
        """Allocate in parallel, commit in frontier order."""
        try:
            allocation = self.allocator.allocate(taxon)
        except Exception:
            with turnstile.turn(position):
                self.mark_failed(taxon)
            raise
        with turnstile.turn(position):
            try:
                self.allocator.commit(taxon, allocation)
            except Exception:
                self.mark_failed(taxon)
                raise

    def mark_failed(self, taxon: Taxon) -> None:
        with self._failed_lock:
            self.failed.add(taxon.id)

    def drain(self, frontier: List[int]) -> PoolResult:
        turnstile = Turnstile()
        pool = ConcurrencyPool(
            self.concurrency,
            name=f"pass {self.passes}",
            show_progress=self.show_progress,
        )
        taxa = [(position, self.index[taxon_id]) for position, taxon_id in enumerate(frontier)]
        return pool.run_queue(
            taxa, lambda item: self.lookup_task(item[0], item[1], turnstile)
        )

    def run(self) -> int:
        """Alternate passes and lookups until every root is settled. Returns
        the number of passes.

        Raises
        ------
        TraversalError
            If a pass finds nothing to look up and settles nothing while the
            roots are not settled, if a taxon is reached twice in one pass,
            or after `max_passes` passes.
        """
        while not self.is_converged():
            if self.passes >= self.max_passes:
                raise TraversalError(f"Taxonomy not settled after {self.passes} passes")
            self.passes += 1
            start = time.time()
            changes = self.index.status_changes
            frontier = self.traverse()
            if not frontier:
                if self.index.status_changes == changes and not self.is_converged():
                    raise TraversalError(
                        f"Pass {self.passes} made no progress with unsettled taxa left"
                    )
                logger.info(f"Pass {self.passes}: no taxa to look up")
                continue
            self.rng.shuffle(frontier)
            logger.info(f"Pass {self.passes}: looking up {len(frontier)} taxa")
            result = self.drain(frontier)
            logger.info(
                f"Pass {self.passes} done in {time.time() - start:.1f}s "
                f"({result.completed} looked up, {result.failed} failed)"
            )
        logger.info(f"Taxonomy settled after {self.passes} passes")
        return self.passes

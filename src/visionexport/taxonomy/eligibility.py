from typing import Iterable, Set

from loguru import logger

from visionexport.taxonomy.index import TaxonomyIndex
from visionexport.taxonomy.taxon import Taxon, TaxonStatus


class EligibilityAssessor:
    """Decide, while traversing the taxonomy, which taxa are left out.

    Two rules apply on top of the filters of the `taxa` query:

    * taxa known to be globally extinct are skipped;
    * when an allow-list of taxa is given, any taxon outside the selected
      branches that is not an ancestor of a selected taxon is skipped.

    Skipping a taxon skips its whole subtree.
    """

    def __init__(
        self,
        index: TaxonomyIndex,
        extinct_taxon_ids: Iterable[int] = (),
        select_taxon_ids: Iterable[int] = (),
    ):
        self.index = index
        self.extinct_taxon_ids: Set[int] = set(int(i) for i in extinct_taxon_ids)
        self.select_taxon_ids: Set[int] = set(int(i) for i in select_taxon_ids)
        self.select_ancestor_ids: Set[int] = set()
        for taxon_id in self.select_taxon_ids:
            if taxon_id not in index:
                logger.warning(f"Selected taxon {taxon_id} is not part of the taxonomy")
                continue
            self.select_ancestor_ids.update(index.ancestor_ids(taxon_id))

    def skip(self, taxon: Taxon) -> int:
        """Mark the taxon and every unsettled descendant skipped. Returns the
        number of taxa skipped."""
        skipped = 0
        stack = [taxon.id]
        while stack:
            current = self.index[stack.pop()]
            if current.status.is_terminal:
                continue
            self.index.set_status(current, TaxonStatus.SKIPPED)
            skipped += 1
            stack.extend(self.index.child_ids(current.id))
        return skipped

    def assess_extinct(self, taxon: Taxon) -> bool:
        """Skip the taxon if it is globally extinct. Returns True if skipped."""
        if taxon.id in self.extinct_taxon_ids and not taxon.status.is_terminal:
            count = self.skip(taxon)
            logger.debug(f"Taxon {taxon.id} is extinct, skipped {count} taxa")
            return True
        return False

    def assess_within_filter_branch(self, taxon: Taxon, within_filter_branch: bool) -> bool:
        """Return whether the taxon lies inside a selected branch, skipping it
        when it is neither selected, below a selected taxon, nor an ancestor
        of one."""
        if within_filter_branch:
            return True
        if not self.select_taxon_ids:
            return False
        if taxon.id in self.select_taxon_ids:
            return True
        if taxon.id not in self.select_ancestor_ids and not taxon.status.is_terminal:
            self.skip(taxon)
        return False

    def assess(self, taxon: Taxon, within_filter_branch: bool = False) -> bool:
        """Apply both rules. Returns whether the children of this taxon are
        inside a selected branch."""
        self.assess_extinct(taxon)
        return self.assess_within_filter_branch(taxon, within_filter_branch)

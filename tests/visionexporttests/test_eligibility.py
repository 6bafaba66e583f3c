import pytest

from visionexport.taxonomy import EligibilityAssessor, TaxonomyIndex, TaxonStatus


@pytest.fixture
def index():
    """1 > {2 > {3, 4}, 5 > {6}}"""
    index = TaxonomyIndex()
    for taxon_id, ancestry in [(3, "1/2"), (4, "1/2"), (6, "1/5")]:
        index.populate({"id": taxon_id, "ancestry": ancestry, "name": f"Taxon {taxon_id}"})
    return index


def test_extinct_taxon_and_subtree_are_skipped(index):
    assessor = EligibilityAssessor(index, extinct_taxon_ids=[2])

    assert assessor.assess_extinct(index[2])
    assert index[2].status is TaxonStatus.SKIPPED
    assert index[3].status is TaxonStatus.SKIPPED
    assert index[4].status is TaxonStatus.SKIPPED
    assert index[5].status is TaxonStatus.UNSET


def test_extant_taxon_is_kept(index):
    assessor = EligibilityAssessor(index, extinct_taxon_ids=[2])
    assert not assessor.assess_extinct(index[5])
    assert index[5].status is TaxonStatus.UNSET


def test_no_selection_keeps_everything(index):
    assessor = EligibilityAssessor(index)
    for taxon_id in [1, 2, 3, 4, 5, 6]:
        assert not assessor.assess(index[taxon_id])
        assert index[taxon_id].status is TaxonStatus.UNSET


def test_selection_skips_other_branches(index):
    assessor = EligibilityAssessor(index, select_taxon_ids=[3])
    assert assessor.select_ancestor_ids == {1, 2, 3}

    # ancestors are kept but are not inside the selected branch
    assert not assessor.assess(index[1])
    assert not assessor.assess(index[2])
    assert index[2].status is TaxonStatus.UNSET

    # the selected taxon opens the branch for its descendants
    assert assessor.assess(index[3])
    assert index[3].status is TaxonStatus.UNSET

    assert not assessor.assess(index[4])
    assert index[4].status is TaxonStatus.SKIPPED

    assert not assessor.assess(index[5])
    assert index[5].status is TaxonStatus.SKIPPED
    assert index[6].status is TaxonStatus.SKIPPED


def test_descendants_of_selected_taxon_are_kept(index):
    assessor = EligibilityAssessor(index, select_taxon_ids=[2])

    within = assessor.assess(index[2])
    assert within
    assert assessor.assess(index[3], within)
    assert index[3].status is TaxonStatus.UNSET


def test_unknown_selected_taxon_is_ignored(index):
    assessor = EligibilityAssessor(index, select_taxon_ids=[42])
    assert assessor.select_ancestor_ids == set()
    assessor.assess(index[1])
    assert index[1].status is TaxonStatus.SKIPPED

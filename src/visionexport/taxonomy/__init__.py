"""Taxonomy tree and the rules deciding which of its taxa can be exported."""

from .eligibility import EligibilityAssessor
from .index import ROOT_ID, TaxonomyIndex
from .taxon import Taxon, TaxonStatus

__all__ = [
    "EligibilityAssessor",
    "ROOT_ID",
    "Taxon",
    "TaxonStatus",
    "TaxonomyIndex",
]

#!/usr/bin/env python3

from ._version import __version__
from .parameters import ExportParameters

__all__ = ["__version__", "ExportParameters"]

# Ranks that are never exported, whatever their observation count
EXCLUDED_RANKS = [
    "hybrid",
    "genushybrid",
]

# Species rank level; anything finer is never exported
MIN_RANK_LEVEL = 10

# Minimum number of observations a taxon needs to be considered at all
MIN_OBSERVATIONS_COUNT = 50

# IUCN code used for globally extinct conservation statuses
IUCN_EXTINCT = 70

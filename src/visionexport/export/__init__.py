"""Lookup, balancing and writing of the per-taxon export data."""

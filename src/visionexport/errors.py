"""Exceptions raised while building a vision export."""


class VisionExportError(Exception):
    """Base class for all errors raised by the exporter."""


class AncestryMismatchError(VisionExportError):
    """Raised when a taxon is given two different parents during ingestion."""


class StatusTransitionError(VisionExportError):
    """Raised when a taxon that already has a terminal status is assigned another."""


class TraversalError(VisionExportError):
    """Raised when the completion passes cannot converge (cycle or stuck frontier)."""


class OutputDirectoryError(VisionExportError):
    """Raised when the export directory is missing or not read/write accessible."""

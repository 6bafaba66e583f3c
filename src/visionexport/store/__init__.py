"""Access to the relational tables the export is built from."""

from .datastore import TABLES, DataStore

__all__ = [
    "DataStore",
    "TABLES",
]

from .filesystem import FilesystemStore
from .interface import LedgerStore
from .sql import SqlStore

__all__ = ["FilesystemStore", "LedgerStore", "SqlStore"]

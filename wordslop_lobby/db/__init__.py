from .store import DocumentStore, Filter, Snapshot, Transaction, WriteBatch
from .memory import InMemoryDocumentStore
from .database import create_store

__all__ = [
    "DocumentStore",
    "Filter",
    "Snapshot",
    "Transaction",
    "WriteBatch",
    "InMemoryDocumentStore",
    "create_store",
]

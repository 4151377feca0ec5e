# wordslop_lobby/db/store.py

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time read of one document. `data` is None when the document does not exist."""

    collection: str
    id: str
    data: Optional[Dict[str, Any]]
    revision: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in ("==", "in"):
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, doc: Dict[str, Any]) -> bool:
        actual = doc.get(self.field)
        if self.op == "==":
            return actual == self.value
        return actual in self.value


class Transaction(ABC):
    """
    Read-modify-write scope over the store.

    Reads go to the store immediately; writes are buffered and applied on commit,
    which fails if any document read here has changed in the meantime.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Snapshot:
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        ...


class WriteBatch(ABC):
    """
    Atomic multi-document write.

    `expected_revision` turns an operation into a precondition: if the stored
    revision differs at commit time the whole batch is rejected with Conflict.
    """

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any],
            expected_revision: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any],
               expected_revision: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str,
               expected_revision: Optional[str] = None) -> None:
        ...


class DocumentStore(ABC):
    """Async document store used by every lobby component."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Snapshot:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Write a new document; raises AlreadyExists if the id is taken."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge top-level fields into an existing document; raises NotFound otherwise."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run `fn` optimistically, retrying it on write conflicts.

        `fn` may be called more than once and must derive every write from
        what it reads through the transaction. Raises Conflict once the retry
        budget is spent.
        """

    @abstractmethod
    async def run_batch(self, fn: Callable[[WriteBatch], Any]) -> None:
        ...

    @abstractmethod
    async def query(self, collection: str, filters: Sequence[Filter] = ()) -> List[Snapshot]:
        ...

    @abstractmethod
    def subscribe_document(self, collection: str, doc_id: str) -> AsyncIterator[Snapshot]:
        """Yield the current snapshot, then one per change, until the consumer stops."""

    @abstractmethod
    def subscribe_query(self, collection: str,
                        filters: Sequence[Filter] = ()) -> AsyncIterator[List[Snapshot]]:
        ...

    async def close(self) -> None:
        pass

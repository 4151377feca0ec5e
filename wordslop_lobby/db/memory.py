# wordslop_lobby/db/memory.py

import asyncio
import copy
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from wordslop_lobby.core.errors import AlreadyExists, Conflict, NotFound, StoreUnavailable
from wordslop_lobby.db.store import DocumentStore, Filter, Snapshot, Transaction, WriteBatch
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger(__name__)

_Key = Tuple[str, str]


class _WriteConflict(Exception):
    pass


@dataclass
class _Op:
    kind: str  # set | update | delete
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None
    expected_revision: Optional[str] = None
    check_revision: bool = False


@dataclass
class _Listener:
    collection: str
    doc_id: Optional[str]
    queue: asyncio.Queue


class _MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self.reads: Dict[_Key, Optional[str]] = {}
        self.ops: List[_Op] = []

    async def get(self, collection: str, doc_id: str) -> Snapshot:
        self._store._check_available()
        snapshot = self._store._read(collection, doc_id)
        self.reads.setdefault((collection, doc_id), snapshot.revision)
        # Let other coroutines run between the read and the commit
        await asyncio.sleep(0)
        return snapshot

    def set(self, collection, doc_id, data):
        self.ops.append(_Op("set", collection, doc_id, copy.deepcopy(data)))

    def update(self, collection, doc_id, fields):
        self.ops.append(_Op("update", collection, doc_id, copy.deepcopy(fields)))

    def delete(self, collection, doc_id):
        self.ops.append(_Op("delete", collection, doc_id))


class _MemoryBatch(WriteBatch):
    def __init__(self):
        self.ops: List[_Op] = []

    def set(self, collection, doc_id, data, expected_revision=None):
        self.ops.append(_Op("set", collection, doc_id, copy.deepcopy(data),
                            expected_revision, expected_revision is not None))

    def update(self, collection, doc_id, fields, expected_revision=None):
        self.ops.append(_Op("update", collection, doc_id, copy.deepcopy(fields),
                            expected_revision, expected_revision is not None))

    def delete(self, collection, doc_id, expected_revision=None):
        self.ops.append(_Op("delete", collection, doc_id, None,
                            expected_revision, expected_revision is not None))


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local document store with the same contract as the Mongo backend.

    Every write bumps a store-wide revision counter; transactions remember the
    revisions they read and are rejected at commit if any of them moved.
    Setting `available = False` makes every call fail with StoreUnavailable.
    """

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self.available = True
        self._docs: Dict[str, Dict[str, Tuple[Dict[str, Any], str]]] = {}
        self._counter = itertools.count(1)
        self._lock = asyncio.Lock()
        self._listeners: List[_Listener] = []
        self.commits = 0
        self.conflicts = 0

    def _check_available(self):
        if not self.available:
            raise StoreUnavailable()

    def _read(self, collection: str, doc_id: str) -> Snapshot:
        entry = self._docs.get(collection, {}).get(doc_id)
        if entry is None:
            return Snapshot(collection, doc_id, None, None)
        data, revision = entry
        return Snapshot(collection, doc_id, copy.deepcopy(data), revision)

    def _revision_of(self, collection: str, doc_id: str) -> Optional[str]:
        entry = self._docs.get(collection, {}).get(doc_id)
        return entry[1] if entry else None

    def _apply(self, ops: Sequence[_Op]):
        for op in ops:
            if op.kind == "update" and self._revision_of(op.collection, op.doc_id) is None:
                raise NotFound(f"Document {op.collection}/{op.doc_id} does not exist")

        changed = []
        for op in ops:
            documents = self._docs.setdefault(op.collection, {})
            if op.kind == "delete":
                if documents.pop(op.doc_id, None) is None:
                    continue
            elif op.kind == "set":
                documents[op.doc_id] = (op.data, str(next(self._counter)))
            else:
                current, _ = documents[op.doc_id]
                documents[op.doc_id] = ({**current, **op.data}, str(next(self._counter)))
            changed.append((op.collection, op.doc_id))
        self.commits += 1
        self._notify(changed)

    def _notify(self, changed: Sequence[_Key]):
        for collection, doc_id in changed:
            snapshot = self._read(collection, doc_id)
            for listener in self._listeners:
                if listener.collection != collection:
                    continue
                if listener.doc_id is None:
                    listener.queue.put_nowait(None)
                elif listener.doc_id == doc_id:
                    listener.queue.put_nowait(snapshot)

    async def get(self, collection, doc_id):
        self._check_available()
        return self._read(collection, doc_id)

    async def set(self, collection, doc_id, data):
        self._check_available()
        async with self._lock:
            self._apply([_Op("set", collection, doc_id, copy.deepcopy(data))])

    async def create(self, collection, doc_id, data):
        self._check_available()
        async with self._lock:
            if self._revision_of(collection, doc_id) is not None:
                raise AlreadyExists(f"Document {collection}/{doc_id} already exists")
            self._apply([_Op("set", collection, doc_id, copy.deepcopy(data))])

    async def update(self, collection, doc_id, fields):
        self._check_available()
        async with self._lock:
            self._apply([_Op("update", collection, doc_id, copy.deepcopy(fields))])

    async def delete(self, collection, doc_id):
        self._check_available()
        async with self._lock:
            self._apply([_Op("delete", collection, doc_id)])

    async def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            self._check_available()
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            try:
                async with self._lock:
                    for (collection, doc_id), revision in tx.reads.items():
                        if self._revision_of(collection, doc_id) != revision:
                            raise _WriteConflict()
                    self._apply(tx.ops)
                return result
            except _WriteConflict:
                self.conflicts += 1
                logger.debug(
                    section=LogSection.DATABASE,
                    subsection=LogSubsection.DATABASE.TRANSACTION,
                    message=f"Transaction conflict, attempt {attempt}/{self.max_attempts}"
                )
        raise Conflict(details={"attempts": self.max_attempts})

    async def run_batch(self, fn):
        self._check_available()
        batch = _MemoryBatch()
        fn(batch)
        async with self._lock:
            for op in batch.ops:
                if op.check_revision and self._revision_of(op.collection, op.doc_id) != op.expected_revision:
                    raise Conflict(
                        f"Document {op.collection}/{op.doc_id} changed since it was read",
                        details={"collection": op.collection, "id": op.doc_id}
                    )
            if batch.ops:
                self._apply(batch.ops)

    async def query(self, collection, filters: Sequence[Filter] = ()):
        self._check_available()
        results = []
        for doc_id in list(self._docs.get(collection, {})):
            snapshot = self._read(collection, doc_id)
            if all(f.matches(snapshot.data) for f in filters):
                results.append(snapshot)
        return results

    async def subscribe_document(self, collection, doc_id):
        listener = _Listener(collection, doc_id, asyncio.Queue())
        self._listeners.append(listener)
        try:
            yield await self.get(collection, doc_id)
            while True:
                snapshot = await listener.queue.get()
                self._check_available()
                yield snapshot
        finally:
            if listener in self._listeners:
                self._listeners.remove(listener)

    async def subscribe_query(self, collection, filters: Sequence[Filter] = ()):
        listener = _Listener(collection, None, asyncio.Queue())
        self._listeners.append(listener)
        try:
            yield await self.query(collection, filters)
            while True:
                await listener.queue.get()
                yield await self.query(collection, filters)
        finally:
            if listener in self._listeners:
                self._listeners.remove(listener)

    async def close(self):
        self._listeners.clear()

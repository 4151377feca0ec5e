# wordslop_lobby/db/mongo.py

import uuid
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from wordslop_lobby.core.errors import AlreadyExists, Conflict, NotFound, StoreUnavailable
from wordslop_lobby.db.store import DocumentStore, Filter, Snapshot, Transaction, WriteBatch
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger(__name__)

REVISION_FIELD = "_rev"
RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


def _to_mongo_filter(filters: Sequence[Filter]) -> Dict[str, Any]:
    """Translate store filters into a Mongo query document."""
    query: Dict[str, Any] = {}
    for f in filters:
        if f.op == "==":
            query[f.field] = f.value
        else:
            query[f.field] = {"$in": list(f.value)}
    return query


def _new_revision() -> str:
    return uuid.uuid4().hex


def _to_snapshot(collection: str, doc_id: str, raw: Optional[dict]) -> Snapshot:
    if raw is None:
        return Snapshot(collection, doc_id, None, None)
    revision = raw.pop(REVISION_FIELD, None)
    raw.pop("_id", None)
    return Snapshot(collection, doc_id, raw, revision)


def _is_retryable(exc: PyMongoError) -> bool:
    return any(exc.has_error_label(label) for label in RETRYABLE_LABELS)


class _MongoTransaction(Transaction):
    def __init__(self, store: "MongoDocumentStore", session):
        self._store = store
        self._session = session
        self._ops = []

    async def get(self, collection, doc_id):
        raw = await self._store.db[collection].find_one({"_id": doc_id}, session=self._session)
        return _to_snapshot(collection, doc_id, raw)

    def set(self, collection, doc_id, data):
        self._ops.append(("set", collection, doc_id, dict(data)))

    def update(self, collection, doc_id, fields):
        self._ops.append(("update", collection, doc_id, dict(fields)))

    def delete(self, collection, doc_id):
        self._ops.append(("delete", collection, doc_id, None))

    async def commit(self):
        for kind, collection, doc_id, data in self._ops:
            await self._store._write(kind, collection, doc_id, data, None, self._session)


class _MongoBatch(WriteBatch):
    def __init__(self):
        self.ops = []

    def set(self, collection, doc_id, data, expected_revision=None):
        self.ops.append(("set", collection, doc_id, dict(data), expected_revision))

    def update(self, collection, doc_id, fields, expected_revision=None):
        self.ops.append(("update", collection, doc_id, dict(fields), expected_revision))

    def delete(self, collection, doc_id, expected_revision=None):
        self.ops.append(("delete", collection, doc_id, None, expected_revision))


class MongoDocumentStore(DocumentStore):
    """
    DocumentStore over MongoDB (motor).

    Documents are keyed by `_id` and carry a `_rev` field that changes on every
    write. Transactions and change streams need a replica set.
    """

    def __init__(self, uri: str, db_name: str, max_attempts: int = 5, client=None):
        self.client = client or AsyncIOMotorClient(uri)
        self.db = self.client[db_name]
        self.max_attempts = max_attempts

    async def _write(self, kind, collection, doc_id, data, expected_revision, session):
        coll = self.db[collection]
        selector: Dict[str, Any] = {"_id": doc_id}
        if expected_revision is not None:
            selector[REVISION_FIELD] = expected_revision

        if kind == "set":
            document = {**data, "_id": doc_id, REVISION_FIELD: _new_revision()}
            result = await coll.replace_one(
                selector, document, upsert=expected_revision is None, session=session
            )
            if expected_revision is not None and result.matched_count == 0:
                raise Conflict(f"Document {collection}/{doc_id} changed since it was read")
        elif kind == "update":
            result = await coll.update_one(
                selector, {"$set": {**data, REVISION_FIELD: _new_revision()}}, session=session
            )
            if result.matched_count == 0:
                if expected_revision is not None:
                    raise Conflict(f"Document {collection}/{doc_id} changed since it was read")
                raise NotFound(f"Document {collection}/{doc_id} does not exist")
        else:
            result = await coll.delete_one(selector, session=session)
            if expected_revision is not None and result.deleted_count == 0:
                raise Conflict(f"Document {collection}/{doc_id} changed since it was read")

    async def _in_transaction(self, callback):
        """Run `callback(session)` inside a transaction, retrying transient failures."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        return await callback(session)
            except PyMongoError as exc:
                if not _is_retryable(exc):
                    logger.error(
                        section=LogSection.DATABASE,
                        subsection=LogSubsection.DATABASE.ERROR,
                        message=f"Transaction failed: {exc}"
                    )
                    raise StoreUnavailable(str(exc)) from exc
                logger.debug(
                    section=LogSection.DATABASE,
                    subsection=LogSubsection.DATABASE.TRANSACTION,
                    message=f"Transient transaction error, attempt {attempt}/{self.max_attempts}: {exc}"
                )
        raise Conflict(details={"attempts": self.max_attempts})

    async def get(self, collection, doc_id):
        try:
            raw = await self.db[collection].find_one({"_id": doc_id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return _to_snapshot(collection, doc_id, raw)

    async def set(self, collection, doc_id, data):
        try:
            await self._write("set", collection, doc_id, data, None, None)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def create(self, collection, doc_id, data):
        document = {**data, "_id": doc_id, REVISION_FIELD: _new_revision()}
        try:
            await self.db[collection].insert_one(document)
        except DuplicateKeyError as exc:
            raise AlreadyExists(f"Document {collection}/{doc_id} already exists") from exc
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def update(self, collection, doc_id, fields):
        try:
            await self._write("update", collection, doc_id, fields, None, None)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def delete(self, collection, doc_id):
        try:
            await self._write("delete", collection, doc_id, None, None, None)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def run_transaction(self, fn):
        async def callback(session):
            tx = _MongoTransaction(self, session)
            result = await fn(tx)
            await tx.commit()
            return result

        return await self._in_transaction(callback)

    async def run_batch(self, fn):
        batch = _MongoBatch()
        fn(batch)
        if not batch.ops:
            return

        async def callback(session):
            for kind, collection, doc_id, data, expected_revision in batch.ops:
                await self._write(kind, collection, doc_id, data, expected_revision, session)

        await self._in_transaction(callback)

    async def query(self, collection, filters: Sequence[Filter] = ()) -> List[Snapshot]:
        try:
            raws = await self.db[collection].find(_to_mongo_filter(filters)).to_list(None)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return [_to_snapshot(collection, raw["_id"], raw) for raw in raws]

    async def subscribe_document(self, collection, doc_id):
        pipeline = [{"$match": {"documentKey._id": doc_id}}]
        try:
            async with self.db[collection].watch(pipeline) as stream:
                yield await self.get(collection, doc_id)
                async for _change in stream:
                    yield await self.get(collection, doc_id)
        except PyMongoError as exc:
            logger.error(
                section=LogSection.DATABASE,
                subsection=LogSubsection.DATABASE.SUBSCRIPTION,
                message=f"Change stream for {collection}/{doc_id} failed: {exc}"
            )
            raise StoreUnavailable(str(exc)) from exc

    async def subscribe_query(self, collection, filters: Sequence[Filter] = ()):
        try:
            async with self.db[collection].watch() as stream:
                yield await self.query(collection, filters)
                async for _change in stream:
                    yield await self.query(collection, filters)
        except PyMongoError as exc:
            logger.error(
                section=LogSection.DATABASE,
                subsection=LogSubsection.DATABASE.SUBSCRIPTION,
                message=f"Change stream for {collection} failed: {exc}"
            )
            raise StoreUnavailable(str(exc)) from exc

    async def close(self):
        self.client.close()

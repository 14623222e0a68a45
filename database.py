"""
Document store adapters.

The engines only need a small surface: read a document by id, run an
equality query, write/insert/delete a document and run a function inside a
transaction whose writes either all commit or all roll back. Two adapters
implement it:

- MongoDocumentStore: pymongo, multi-document transactions through
  ClientSession.with_transaction (requires a replica set).
- MemoryDocumentStore: process-local store with optimistic concurrency,
  used for tests and local development.

Documents handed to `write`/`insert` never contain the id; documents returned
by `read`/`query` always carry it under "id".
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from pymongo import MongoClient
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
    WTimeoutError,
)

from errors import Conflict, TransientStoreError
from settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreHandle:
    """Read/write surface shared by a store and its transaction handles."""

    def read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def query(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def write(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Create or fully replace the document."""
        raise NotImplementedError

    def insert(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Create the document; raises Conflict if the id is taken."""
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError


class DocumentStore(StoreHandle):
    def run_transaction(self, fn: Callable[[StoreHandle], T]) -> T:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def collection_names(self) -> List[str]:
        raise NotImplementedError


# ------------------- MONGODB -------------------

def _is_transient(exc: PyMongoError) -> bool:
    if isinstance(exc, (ConnectionFailure, ExecutionTimeout, WTimeoutError)):
        return True
    return exc.has_error_label("TransientTransactionError") or exc.has_error_label("UnknownTransactionCommitResult")


@contextmanager
def _mongo_errors():
    try:
        yield
    except DuplicateKeyError as e:
        raise Conflict(str(e)) from e
    except PyMongoError as e:
        if _is_transient(e):
            raise TransientStoreError(f"Store unavailable: {e}") from e
        raise


def _from_mongo(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["id"] = str(doc.pop("_id", ""))
    return doc


def _to_mongo_filter(filter_dict: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    filter_q = dict(filter_dict or {})
    if "id" in filter_q:
        filter_q["_id"] = filter_q.pop("id")
    return filter_q


class _MongoHandle(StoreHandle):
    def __init__(self, db, session=None):
        self.db = db
        self.session = session

    def read(self, collection, doc_id):
        doc = self.db[collection].find_one({"_id": doc_id}, session=self.session)
        return _from_mongo(doc) if doc else None

    def query(self, collection, filter_dict=None):
        docs = self.db[collection].find(_to_mongo_filter(filter_dict), session=self.session)
        return [_from_mongo(d) for d in docs]

    def write(self, collection, doc_id, document):
        self.db[collection].replace_one({"_id": doc_id}, dict(document), upsert=True, session=self.session)

    def insert(self, collection, doc_id, document):
        try:
            self.db[collection].insert_one({**document, "_id": doc_id}, session=self.session)
        except DuplicateKeyError as e:
            raise Conflict(f"{collection} document '{doc_id}' already exists") from e

    def delete(self, collection, doc_id):
        result = self.db[collection].delete_one({"_id": doc_id}, session=self.session)
        return result.deleted_count > 0


class MongoDocumentStore(DocumentStore):
    def __init__(self, database_url: str, database_name: str, timeout_ms: int = 5000):
        self.client = MongoClient(
            database_url,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            timeoutMS=timeout_ms,
        )
        self.db = self.client[database_name]
        self._handle = _MongoHandle(self.db)

    @property
    def name(self) -> str:
        return self.db.name

    def read(self, collection, doc_id):
        with _mongo_errors():
            return self._handle.read(collection, doc_id)

    def query(self, collection, filter_dict=None):
        with _mongo_errors():
            return self._handle.query(collection, filter_dict)

    def write(self, collection, doc_id, document):
        with _mongo_errors():
            self._handle.write(collection, doc_id, document)

    def insert(self, collection, doc_id, document):
        with _mongo_errors():
            self._handle.insert(collection, doc_id, document)

    def delete(self, collection, doc_id):
        with _mongo_errors():
            return self._handle.delete(collection, doc_id)

    def run_transaction(self, fn):
        # with_transaction retries TransientTransactionError on its own until
        # its time limit; anything still failing surfaces as TransientStoreError.
        with _mongo_errors():
            with self.client.start_session() as session:
                return session.with_transaction(lambda s: fn(_MongoHandle(self.db, s)))

    def ping(self):
        with _mongo_errors():
            self.client.admin.command("ping")
        return True

    def collection_names(self):
        with _mongo_errors():
            return self.db.list_collection_names()


# ------------------- IN-MEMORY -------------------

class _MemoryTransaction(StoreHandle):
    """
    Buffers writes until commit. Every collection the transaction touches is
    pinned to the version seen at first touch; commit fails with a write
    conflict if any of them moved in the meantime.
    """

    def __init__(self, store: "MemoryDocumentStore"):
        self.store = store
        self.staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self.seen_versions: Dict[str, int] = {}

    def _touch(self, collection):
        if collection not in self.seen_versions:
            with self.store._locked():
                self.seen_versions[collection] = self.store._versions.get(collection, 0)

    def read(self, collection, doc_id):
        self._touch(collection)
        key = (collection, doc_id)
        if key in self.staged:
            doc = self.staged[key]
            return {**copy.deepcopy(doc), "id": doc_id} if doc is not None else None
        return self.store.read(collection, doc_id)

    def query(self, collection, filter_dict=None):
        self._touch(collection)
        results = {d["id"]: d for d in self.store.query(collection, filter_dict)}
        for (coll, doc_id), doc in self.staged.items():
            if coll != collection:
                continue
            results.pop(doc_id, None)
            if doc is not None and _matches(doc, filter_dict):
                results[doc_id] = {**copy.deepcopy(doc), "id": doc_id}
        return list(results.values())

    def write(self, collection, doc_id, document):
        self._touch(collection)
        self.staged[(collection, doc_id)] = copy.deepcopy(_strip_id(document))

    def insert(self, collection, doc_id, document):
        if self.read(collection, doc_id) is not None:
            raise Conflict(f"{collection} document '{doc_id}' already exists")
        self.write(collection, doc_id, document)

    def delete(self, collection, doc_id):
        existed = self.read(collection, doc_id) is not None
        self.staged[(collection, doc_id)] = None
        return existed

    def commit(self):
        with self.store._locked():
            for collection, version in self.seen_versions.items():
                if self.store._versions.get(collection, 0) != version:
                    raise TransientStoreError(f"Write conflict on collection '{collection}'")
            for (collection, doc_id), doc in self.staged.items():
                docs = self.store._collections.setdefault(collection, {})
                if doc is None:
                    docs.pop(doc_id, None)
                else:
                    docs[doc_id] = doc
            for collection in {c for c, _ in self.staged}:
                self.store._bump(collection)


def _strip_id(document: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in document.items() if k != "id"}


def _matches(doc: Dict[str, Any], filter_dict: Optional[Dict[str, Any]]) -> bool:
    return all(doc.get(k) == v for k, v in (filter_dict or {}).items())


class MemoryDocumentStore(DocumentStore):
    name = "memory"

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise TransientStoreError("Timed out waiting for the document store")
        try:
            yield
        finally:
            self._lock.release()

    def _bump(self, collection):
        self._versions[collection] = self._versions.get(collection, 0) + 1

    def read(self, collection, doc_id):
        with self._locked():
            doc = self._collections.get(collection, {}).get(doc_id)
            return {**copy.deepcopy(doc), "id": doc_id} if doc is not None else None

    def query(self, collection, filter_dict=None):
        with self._locked():
            return [
                {**copy.deepcopy(doc), "id": doc_id}
                for doc_id, doc in self._collections.get(collection, {}).items()
                if _matches(doc, filter_dict)
            ]

    def write(self, collection, doc_id, document):
        with self._locked():
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(_strip_id(document))
            self._bump(collection)

    def insert(self, collection, doc_id, document):
        with self._locked():
            if doc_id in self._collections.get(collection, {}):
                raise Conflict(f"{collection} document '{doc_id}' already exists")
            self.write(collection, doc_id, document)

    def delete(self, collection, doc_id):
        with self._locked():
            existed = self._collections.get(collection, {}).pop(doc_id, None) is not None
            if existed:
                self._bump(collection)
            return existed

    def run_transaction(self, fn):
        tx = _MemoryTransaction(self)
        result = fn(tx)
        tx.commit()
        return result

    def ping(self):
        return True

    def collection_names(self):
        with self._locked():
            return sorted(name for name, docs in self._collections.items() if docs)


def create_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore(lock_timeout=settings.store_timeout_ms / 1000)
    logger.info("Connecting to MongoDB database %s", settings.database_name)
    return MongoDocumentStore(settings.database_url, settings.database_name, settings.store_timeout_ms)

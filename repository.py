"""
Typed access to the entity collections.

The repository validates every document against its schema on the way in
and on the way out and owns the created_at/updated_at stamps. It wraps
either the store itself or a transaction handle, so the same accessors are
used inside and outside multi-document operations.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from database import StoreHandle
from errors import Conflict, NotFound, TransientStoreError, ValidationError
from schemas import COLLECTIONS, Document

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVER_FIELDS = ("id", "created_at", "updated_at")

_KEY_NAMESPACE = uuid.UUID("6f2b8f1e-63a4-4d47-9a43-0c1f0b6a4e52")


def new_id() -> str:
    return uuid.uuid4().hex


def natural_key_id(*parts: str) -> str:
    """Stable id for a join document, derived from its natural key."""
    return uuid.uuid5(_KEY_NAMESPACE, "|".join(parts)).hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _model_for(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValidationError(f"Unknown collection '{collection}'")


def validate_document(collection: str, data: Dict[str, Any]) -> Document:
    model = _model_for(collection)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()]
        raise ValidationError(f"Invalid {collection} document", errors=errors) from e


def _reject_server_fields(data: Dict[str, Any]):
    given = [f for f in SERVER_FIELDS if f in data]
    if given:
        raise ValidationError(f"Fields {', '.join(given)} are server-assigned and cannot be written")


class Repository:
    def __init__(self, handle: StoreHandle):
        self.handle = handle

    def _load(self, collection: str, raw: Optional[Dict[str, Any]]) -> Optional[Document]:
        if raw is None:
            return None
        return validate_document(collection, raw)

    def _store(self, collection: str, entity: Document):
        self.handle.write(collection, entity.id, entity.model_dump(exclude={"id"}))

    def find(self, collection: str, doc_id: str) -> Optional[Document]:
        _model_for(collection)
        return self._load(collection, self.handle.read(collection, doc_id))

    def get(self, collection: str, doc_id: str) -> Document:
        entity = self.find(collection, doc_id)
        if entity is None:
            raise NotFound(collection, doc_id)
        return entity

    def list(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> List[Document]:
        _model_for(collection)
        docs = [self._load(collection, d) for d in self.handle.query(collection, filter_dict)]
        docs.sort(key=lambda d: (d.created_at or datetime.min.replace(tzinfo=timezone.utc), d.id))
        return docs

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> Document:
        _reject_server_fields(data)
        now = utcnow()
        entity = validate_document(collection, {**data, "id": doc_id or new_id(), "created_at": now, "updated_at": now})
        self.handle.insert(collection, entity.id, entity.model_dump(exclude={"id"}))
        return entity

    def create_if_absent(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Tuple[Document, bool]:
        existing = self.find(collection, doc_id)
        if existing is not None:
            return existing, False
        try:
            return self.create(collection, data, doc_id=doc_id), True
        except Conflict:
            # Lost a race with a concurrent create of the same natural key.
            return self.get(collection, doc_id), False

    def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> Document:
        """
        Merge patch into the stored document and write it back whole.

        This is a read-modify-write: on a handle shared with concurrent
        writers, call it through run_atomic so a lost update is detected.
        """
        _reject_server_fields(patch)
        current = self.get(collection, doc_id)
        merged = {**current.model_dump(), **patch, "updated_at": self._next_stamp(current)}
        entity = validate_document(collection, merged)
        self._store(collection, entity)
        return entity

    def replace(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        """Write the full document under doc_id, keeping created_at if it already exists."""
        _reject_server_fields(data)
        current = self.find(collection, doc_id)
        now = utcnow()
        entity = validate_document(collection, {
            **data,
            "id": doc_id,
            "created_at": current.created_at if current else now,
            "updated_at": self._next_stamp(current) if current else now,
        })
        self._store(collection, entity)
        return entity

    def delete(self, collection: str, doc_id: str):
        if not self.delete_if_present(collection, doc_id):
            raise NotFound(collection, doc_id)

    def delete_if_present(self, collection: str, doc_id: str) -> bool:
        _model_for(collection)
        return self.handle.delete(collection, doc_id)

    @staticmethod
    def _next_stamp(current: Document) -> datetime:
        now = utcnow()
        if current.updated_at and current.updated_at > now:
            return current.updated_at
        return now


def run_atomic(store, fn: Callable[[Repository], T], retries: int = 3, backoff: float = 0.05, sleep=time.sleep) -> T:
    """
    Run fn inside a store transaction, retrying transient failures.

    fn receives a Repository bound to the transaction handle and must be
    safe to re-run from the start: a retry only happens when nothing of the
    previous attempt was committed.
    """
    attempt = 0
    while True:
        try:
            return store.run_transaction(lambda handle: fn(Repository(handle)))
        except TransientStoreError as e:
            if attempt >= retries:
                logger.error("Transaction failed after %d attempts: %s", attempt + 1, e)
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning("Transient store failure (%s), retry %d/%d in %.2fs", e, attempt, retries, delay)
            sleep(delay)

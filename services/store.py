"""
Record store adapter.

The orchestrator talks to its persistence layer through the small
`RecordStore` contract: create / get / update / query / delete of JSON
documents addressed by collection name and key.  Each call is atomic on its
own; there is no transaction spanning several calls or collections, which is
why bundle creation relies on compensating deletes.

Two implementations live here:

* `SqlRecordStore` keeps every document in a single SQLAlchemy `records`
  table and opens one session per call.
* `InMemoryRecordStore` keeps documents in dictionaries.  It is used by the
  test-suite and for local experiments.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models import database
from models.errors import CollaboratorUnavailableError, NotFoundError, RecordConflictError
from models.schemas import utc_now

ORDERS = "orders"
ORDER_ITEMS = "order_items"
ORDER_RELATIONSHIPS = "order_relationships"
INVOICES = "invoices"
SUBSCRIPTIONS = "subscriptions"
SUBSCRIPTION_PLANS = "subscription_plans"

Document = Dict[str, Any]


class RecordStore(Protocol):
    def create(self, collection: str, key: str, fields: Document) -> Document: ...

    def get(self, collection: str, key: str) -> Optional[Document]: ...

    def update(self, collection: str, key: str, fields: Document) -> Document: ...

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]: ...

    def delete(self, collection: str, key: str) -> bool: ...


def apply_query(
    documents: Iterable[Document],
    filters: Optional[Dict[str, Any]] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Document]:
    """Filter by field equality, sort by one field (`-field` for descending), then limit."""
    filters = filters or {}
    matched = [doc for doc in documents if all(doc.get(k) == v for k, v in filters.items())]
    if order_by:
        field = order_by.lstrip("-")
        # Documents missing the sort field go last in either direction.
        present = [doc for doc in matched if doc.get(field) is not None]
        missing = [doc for doc in matched if doc.get(field) is None]
        present.sort(key=lambda doc: doc[field], reverse=order_by.startswith("-"))
        matched = present + missing
    if limit is not None:
        matched = matched[:limit]
    return matched


class Record(database.Base):
    __tablename__ = "records"
    __table_args__ = (UniqueConstraint("collection", "key", name="uq_records_collection_key"),)

    id = Column(Integer, primary_key=True, index=True)
    collection = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def update_timestamp(self) -> None:
        self.updated_at = utc_now()


class SqlRecordStore:
    """Document store on top of a single SQLAlchemy table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, create_tables: bool = True):
        self._session_factory = session_factory or database.SessionLocal
        if create_tables:
            database.Base.metadata.create_all(bind=self._session_factory.kw["bind"])

    def _find(self, db, collection: str, key: str) -> Optional[Record]:
        return db.query(Record).filter(Record.collection == collection, Record.key == key).first()

    def create(self, collection: str, key: str, fields: Document) -> Document:
        try:
            with database.get_db(self._session_factory) as db:
                if self._find(db, collection, key) is not None:
                    raise RecordConflictError(collection, key)
                db.add(Record(collection=collection, key=key, data=copy.deepcopy(fields)))
        except SQLAlchemyError as e:
            raise CollaboratorUnavailableError("record store", str(e)) from e
        return copy.deepcopy(fields)

    def get(self, collection: str, key: str) -> Optional[Document]:
        try:
            with database.get_db(self._session_factory) as db:
                record = self._find(db, collection, key)
                return copy.deepcopy(record.data) if record is not None else None
        except SQLAlchemyError as e:
            raise CollaboratorUnavailableError("record store", str(e)) from e

    def update(self, collection: str, key: str, fields: Document) -> Document:
        try:
            with database.get_db(self._session_factory) as db:
                record = self._find(db, collection, key)
                if record is None:
                    raise NotFoundError(collection, key)
                # Reassign so SQLAlchemy notices the JSON change.
                merged = {**record.data, **copy.deepcopy(fields)}
                record.data = merged
                record.update_timestamp()
        except SQLAlchemyError as e:
            raise CollaboratorUnavailableError("record store", str(e)) from e
        return copy.deepcopy(merged)

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        try:
            with database.get_db(self._session_factory) as db:
                rows = db.query(Record).filter(Record.collection == collection).all()
                documents = [copy.deepcopy(r.data) for r in rows]
        except SQLAlchemyError as e:
            raise CollaboratorUnavailableError("record store", str(e)) from e
        return apply_query(documents, filters, order_by, limit)

    def delete(self, collection: str, key: str) -> bool:
        try:
            with database.get_db(self._session_factory) as db:
                record = self._find(db, collection, key)
                if record is None:
                    return False
                db.delete(record)
        except SQLAlchemyError as e:
            raise CollaboratorUnavailableError("record store", str(e)) from e
        return True


class InMemoryRecordStore:
    """Dictionary-backed store with the same semantics as `SqlRecordStore`."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.Lock()

    def create(self, collection: str, key: str, fields: Document) -> Document:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if key in docs:
                raise RecordConflictError(collection, key)
            docs[key] = copy.deepcopy(fields)
            return copy.deepcopy(fields)

    def get(self, collection: str, key: str) -> Optional[Document]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def update(self, collection: str, key: str, fields: Document) -> Document:
        with self._lock:
            docs = self._collections.get(collection, {})
            if key not in docs:
                raise NotFoundError(collection, key)
            docs[key] = {**docs[key], **copy.deepcopy(fields)}
            return copy.deepcopy(docs[key])

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        with self._lock:
            documents = [copy.deepcopy(d) for d in self._collections.get(collection, {}).values()]
        return apply_query(documents, filters, order_by, limit)

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None

    def keys(self, collection: str) -> List[str]:
        with self._lock:
            return list(self._collections.get(collection, {}))

"""Document store collaborator and a local SQLite implementation.

The aggregation code only relies on the DocumentStore protocol: subscribe to
a collection and receive the full current list of documents on every change,
and write documents. SqliteDocumentStore implements it for the CLI and tests.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from wallet_trace.models import Document

SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]
Filter = tuple[str, str, Any]

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
"""

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Field value placeholder replaced by the store's write time
SERVER_TIMESTAMP: Any = _ServerTimestamp()


class StoreError(Exception):
    """Raised when the store cannot complete a read or write."""

    pass


def devices_path(user_id: str) -> str:
    return f"users/{user_id}/devices"


def activity_path(user_id: str, device_doc_id: str) -> str:
    return f"users/{user_id}/devices/{device_doc_id}/walletActivity"


def annotations_path(user_id: str) -> str:
    return f"users/{user_id}/spendingRecords"


def split_document_path(path: str) -> tuple[str, str]:
    """Split "a/b/c/d" into ("a/b/c", "d").

    Raises:
        ValueError: If the path does not name a document (even segment count).
    """
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2 or len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: '{path}'")
    return "/".join(parts[:-1]), parts[-1]


def _matches(data: dict[str, Any], filters: list[Filter] | None) -> bool:
    if not filters:
        return True
    for field_name, op, value in filters:
        if op != "==":
            raise ValueError(f"Unsupported filter operator: {op}")
        if data.get(field_name) != value:
            return False
    return True


class DocumentStore(Protocol):
    """What the aggregation core needs from the hosted document store."""

    def subscribe(
        self,
        collection_path: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
        *,
        filters: list[Filter] | None = None,
    ) -> Unsubscribe: ...

    def write_document(
        self, path: str, fields: dict[str, Any], *, merge: bool = False
    ) -> None: ...


class SqliteDocumentStore:
    """SQLite-backed document store with in-process live subscriptions.

    Subscribers get the full snapshot immediately and after every write to
    their collection. Not thread-safe; all callbacks run on the writing thread.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._init_schema()
        self._listeners: defaultdict[
            str, dict[int, tuple[SnapshotCallback, ErrorCallback | None, list[Filter] | None]]
        ] = defaultdict(dict)
        self._next_listener_id = 0
        self._last_write_at: datetime | None = None

    def __enter__(self) -> SqliteDocumentStore:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Drop all listeners and close the database connection."""
        self._listeners.clear()
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> SqliteDocumentStore:
        """Open or create a store at the given path."""
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> SqliteDocumentStore:
        """Create an in-memory store for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def _write_time(self) -> datetime:
        """Current time, strictly later than any previous write."""
        now = datetime.now(timezone.utc)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        if self._last_write_at is not None and now <= self._last_write_at:
            now = self._last_write_at + timedelta(milliseconds=1)
        self._last_write_at = now
        return now

    def _resolve_server_timestamps(self, fields: dict[str, Any], stamp: str) -> dict[str, Any]:
        return {
            key: (stamp if value is SERVER_TIMESTAMP else value)
            for key, value in fields.items()
        }

    def list_documents(
        self, collection_path: str, *, filters: list[Filter] | None = None
    ) -> list[Document]:
        """Read the current documents of a collection, oldest write first."""
        try:
            cursor = self._conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? ORDER BY created_at, id",
                (collection_path.strip("/"),),
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read '{collection_path}': {e}") from e

        docs = []
        for row in rows:
            data = json.loads(row["data"])
            if _matches(data, filters):
                docs.append(Document(id=row["id"], data=data))
        return docs

    def get_document(self, path: str) -> Document | None:
        """Read a single document, or None if it does not exist."""
        collection, doc_id = split_document_path(path)
        try:
            row = self._conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read '{path}': {e}") from e
        if row is None:
            return None
        return Document(id=row["id"], data=json.loads(row["data"]))

    def write_document(
        self, path: str, fields: dict[str, Any], *, merge: bool = False
    ) -> None:
        """Create or replace a document; with merge=True, update only the given fields."""
        collection, doc_id = split_document_path(path)
        written_at = self._write_time()
        stamp = written_at.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        data = self._resolve_server_timestamps(fields, stamp)

        try:
            with self._conn:
                if merge:
                    existing = self._conn.execute(
                        "SELECT data FROM documents WHERE collection = ? AND id = ?",
                        (collection, doc_id),
                    ).fetchone()
                    if existing is not None:
                        data = {**json.loads(existing["data"]), **data}
                self._conn.execute(
                    """
                    INSERT INTO documents (collection, id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (collection, id)
                    DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                    """,
                    (collection, doc_id, json.dumps(data), stamp, stamp),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write '{path}': {e}") from e

        self._notify(collection)

    def add_document(self, collection_path: str, fields: dict[str, Any]) -> str:
        """Create a document with a generated ID and return the ID."""
        doc_id = uuid.uuid4().hex[:20]
        self.write_document(f"{collection_path.strip('/')}/{doc_id}", fields)
        return doc_id

    def delete_document(self, path: str) -> bool:
        """Delete a document. Returns True if it existed."""
        collection, doc_id = split_document_path(path)
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND id = ?",
                    (collection, doc_id),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete '{path}': {e}") from e
        if cursor.rowcount > 0:
            self._notify(collection)
            return True
        return False

    def subscribe(
        self,
        collection_path: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
        *,
        filters: list[Filter] | None = None,
    ) -> Unsubscribe:
        """Deliver the collection's full snapshot now and after every change.

        Returns a callable that removes the subscription; no callbacks are
        delivered once it returns.
        """
        collection = collection_path.strip("/")
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[collection][listener_id] = (on_snapshot, on_error, filters)
        logger.debug("Subscribed %s to %s", listener_id, collection)

        def unsubscribe() -> None:
            listeners = self._listeners.get(collection)
            if listeners is not None and listeners.pop(listener_id, None) is not None:
                logger.debug("Unsubscribed %s from %s", listener_id, collection)

        self._deliver(collection, listener_id)
        return unsubscribe

    def _deliver(self, collection: str, listener_id: int) -> None:
        entry = self._listeners.get(collection, {}).get(listener_id)
        if entry is None:
            return
        on_snapshot, on_error, filters = entry
        try:
            docs = self.list_documents(collection, filters=filters)
        except StoreError as e:
            if on_error is None:
                raise
            on_error(e)
            return
        on_snapshot(docs)

    def _notify(self, collection: str) -> None:
        # Copy the IDs: callbacks may subscribe or unsubscribe while we iterate
        for listener_id in list(self._listeners.get(collection, {})):
            self._deliver(collection, listener_id)

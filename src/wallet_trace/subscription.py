"""Live subscription to one device's activity feed."""

from __future__ import annotations

import logging
from typing import Callable

from wallet_trace.models import ActivityRecord, Document, SourceDescriptor
from wallet_trace.store import DocumentStore, Unsubscribe
from wallet_trace.timestamps import is_parseable, normalize

# (source_id, full replacement set for that source)
ReplaceCallback = Callable[[str, tuple[ActivityRecord, ...]], None]
SourceErrorCallback = Callable[[str, Exception], None]

logger = logging.getLogger(__name__)


def records_from_snapshot(
    docs: list[Document],
    source_id: str,
    source_label: str | None = None,
) -> tuple[ActivityRecord, ...]:
    """Build the records a snapshot contributes for one source.

    Documents whose timestamp is missing or unparseable are left out. If a
    snapshot repeats a document ID, the later occurrence wins.
    """
    by_id: dict[str, ActivityRecord] = {}
    dropped = 0
    for doc in docs:
        occurred_at = normalize(doc.data.get("timestamp"))
        if not is_parseable(occurred_at):
            dropped += 1
            continue
        by_id[doc.id] = ActivityRecord(
            id=doc.id,
            source_id=source_id,
            source_label=source_label,
            occurred_at=occurred_at,
        )
    if dropped:
        logger.debug(
            "Dropped %d of %d activity documents with unparseable timestamps (source %s)",
            dropped,
            len(docs),
            source_id,
        )
    return tuple(by_id.values())


class SourceSubscription:
    """Keeps the current activity records of one source.

    Every snapshot from the store replaces the whole set for this source and
    is forwarded to `on_replace`. Closing stops the underlying subscription
    and forwards an empty set so the source's records can be evicted.
    """

    def __init__(
        self,
        store: DocumentStore,
        source: SourceDescriptor,
        collection_path: str,
        on_replace: ReplaceCallback,
        on_error: SourceErrorCallback | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._collection_path = collection_path
        self._on_replace = on_replace
        self._on_error = on_error
        self._unsubscribe: Unsubscribe | None = None
        self._docs: list[Document] = []
        self.records: tuple[ActivityRecord, ...] = ()
        self.active = False
        self.has_snapshot = False

    @property
    def source_id(self) -> str:
        return self._source.id

    @property
    def source(self) -> SourceDescriptor:
        return self._source

    def open(self) -> None:
        """Start the underlying subscription. No-op if already open."""
        if self.active:
            return
        self.active = True
        logger.info("Opening activity subscription for source %s", self.source_id)
        try:
            unsubscribe = self._store.subscribe(
                self._collection_path, self._handle_snapshot, self._handle_error
            )
        except Exception as e:
            self._handle_error(e)
            # No live handle: a later open() subscribes again
            self.active = False
            return
        if self.active:
            self._unsubscribe = unsubscribe
        else:
            # Closed from inside the initial snapshot callback
            unsubscribe()

    def close(self) -> None:
        """Stop the subscription and emit an empty set for this source."""
        if not self.active:
            return
        self.active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("Closed activity subscription for source %s", self.source_id)
        self._docs = []
        self.records = ()
        self._on_replace(self.source_id, ())

    def relabel(self, source: SourceDescriptor) -> None:
        """Adopt a new descriptor for the same source and re-emit its records."""
        if source.id != self.source_id:
            raise ValueError(f"Cannot relabel source {self.source_id} as {source.id}")
        self._source = source
        if self.active and self.has_snapshot:
            self._emit()

    def _emit(self) -> None:
        self.records = records_from_snapshot(self._docs, self.source_id, self._source.label)
        self._on_replace(self.source_id, self.records)

    def _handle_snapshot(self, docs: list[Document]) -> None:
        if not self.active:
            return
        self._docs = list(docs)
        self.has_snapshot = True
        self._emit()

    def _handle_error(self, error: Exception) -> None:
        if not self.active:
            return
        logger.warning(
            "Activity subscription for source %s failed: %s", self.source_id, error
        )
        self._docs = []
        self.has_snapshot = True
        self.records = ()
        self._on_replace(self.source_id, ())
        if self._on_error is not None:
            self._on_error(self.source_id, error)

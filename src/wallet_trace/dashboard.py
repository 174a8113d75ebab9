"""Live activity dashboard for one user.

Wires the device list, the per-device activity feeds and the spending
records together:

    devices snapshot -> StreamAggregator.set_sources
    activity snapshots -> StreamAggregator -> AnnotationJoiner.update_activities
    spending records snapshot -> AnnotationJoiner.handle_snapshot
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Callable

from pydantic import ValidationError

from wallet_trace.aggregator import StreamAggregator
from wallet_trace.annotations import AnnotatedActivity, AnnotationJoiner
from wallet_trace.models import Document, SourceDescriptor
from wallet_trace.stats import DashboardSummary, summarize
from wallet_trace.store import DocumentStore, Unsubscribe, annotations_path, devices_path

ViewCallback = Callable[[tuple[AnnotatedActivity, ...]], None]

logger = logging.getLogger(__name__)


def devices_from_snapshot(docs: list[Document]) -> list[SourceDescriptor]:
    """Device descriptors, newest registration first. Invalid documents are skipped."""
    devices = []
    for doc in docs:
        try:
            devices.append(SourceDescriptor.from_document(doc))
        except ValidationError as e:
            logger.warning("Skipping invalid device %s: %s", doc.id, e.errors()[0]["msg"])
    devices.sort(key=lambda d: d.id)
    devices.sort(key=lambda d: d.created_at, reverse=True)
    return devices


class ActivityDashboard:
    """Keeps an annotated, sorted activity view up to date for one user."""

    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self._store = store
        self._user_id = user_id
        self._joiner = AnnotationJoiner(on_publish=self._handle_view)
        self._aggregator = StreamAggregator.for_user(
            store, user_id, on_publish=self._joiner.update_activities
        )
        self._listeners: dict[int, ViewCallback] = {}
        self._next_listener_id = 0
        self._unsubscribes: list[Unsubscribe] = []
        self._devices_received = False
        self._started = False
        self._closed = False
        self.devices: list[SourceDescriptor] = []

    def __enter__(self) -> ActivityDashboard:
        self.start()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    @property
    def view(self) -> tuple[AnnotatedActivity, ...]:
        return self._joiner.view

    @property
    def joiner(self) -> AnnotationJoiner:
        return self._joiner

    @property
    def aggregator(self) -> StreamAggregator:
        return self._aggregator

    @property
    def loading(self) -> bool:
        if self._closed:
            return False
        return not self._devices_received or self._aggregator.loading

    def add_listener(self, callback: ViewCallback) -> Callable[[], None]:
        """Register a callback for every new annotated view. Returns a remover."""
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = callback

        def remove() -> None:
            self._listeners.pop(listener_id, None)

        return remove

    def start(self) -> None:
        """Subscribe to spending records and the device list."""
        if self._started:
            return
        self._started = True
        logger.info("Starting dashboard for user %s", self._user_id)
        # Annotations are not gated behind activity; subscribe to both up front
        self._unsubscribes.append(
            self._store.subscribe(
                annotations_path(self._user_id),
                self._joiner.handle_snapshot,
                self._joiner.handle_error,
            )
        )
        self._unsubscribes.append(
            self._store.subscribe(
                devices_path(self._user_id),
                self._handle_devices,
                self._handle_devices_error,
            )
        )

    def close(self) -> None:
        """Stop every subscription before returning."""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        self._aggregator.close()
        self._listeners.clear()
        logger.info("Stopped dashboard for user %s", self._user_id)

    def summary(
        self, *, now: datetime | None = None, tz: tzinfo | None = None
    ) -> DashboardSummary:
        return summarize(self.view, len(self.devices), now=now, tz=tz)

    def _handle_devices(self, docs: list[Document]) -> None:
        if self._closed:
            return
        self.devices = devices_from_snapshot(docs)
        self._devices_received = True
        self._aggregator.set_sources(self.devices)

    def _handle_devices_error(self, error: Exception) -> None:
        if self._closed:
            return
        logger.warning("Device list subscription failed: %s", error)
        self.devices = []
        self._devices_received = True
        self._aggregator.set_sources([])

    def _handle_view(self, view: tuple[AnnotatedActivity, ...]) -> None:
        if self._closed:
            return
        for callback in list(self._listeners.values()):
            callback(view)

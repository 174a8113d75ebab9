"""Merge live activity from a changing set of sources into one sorted view.

All mutable state is owned by StreamAggregator and only changed by its
reducer. Subscription callbacks, source-set changes and teardown are turned
into messages and applied one at a time, in arrival order, on the caller's
thread. Callbacks that fire while a message is being applied are queued
behind it instead of re-entering the reducer.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from wallet_trace.models import ActivityRecord, SourceDescriptor
from wallet_trace.store import DocumentStore, activity_path
from wallet_trace.subscription import SourceSubscription

PublishCallback = Callable[[tuple[ActivityRecord, ...]], None]

logger = logging.getLogger(__name__)


def merge_contributions(
    contributions: Mapping[str, Iterable[ActivityRecord]],
) -> tuple[ActivityRecord, ...]:
    """Flatten per-source records into the merged collection.

    Ordered by occurred_at descending, then id ascending, then source_id
    ascending. Records with the same (source_id, id) appear once. The result
    depends only on the mapping's content, never on insertion order.
    """
    by_key: dict[tuple[str, str], ActivityRecord] = {}
    for source_id in sorted(contributions):
        for record in contributions[source_id]:
            by_key[record.key] = record

    merged = sorted(by_key.values(), key=lambda r: (r.id, r.source_id))
    # Stable sort: ties on occurred_at keep the ascending id order above
    merged.sort(key=lambda r: r.occurred_at, reverse=True)
    return tuple(merged)


@dataclass(frozen=True)
class _SetSources:
    sources: tuple[SourceDescriptor, ...]


@dataclass(frozen=True)
class _Replace:
    source_id: str
    generation: int
    records: tuple[ActivityRecord, ...]


@dataclass(frozen=True)
class _SourceFailed:
    source_id: str
    generation: int
    error: Exception


_Message = _SetSources | _Replace | _SourceFailed


class StreamAggregator:
    """Owns one SourceSubscription per source and publishes the merged view.

    `set_sources` reconciles the open subscriptions against the desired set.
    Every per-source replacement re-merges all contributions and publishes
    the result to the listeners.
    """

    def __init__(
        self,
        store: DocumentStore,
        path_for_source: Callable[[SourceDescriptor], str],
        *,
        on_publish: PublishCallback | None = None,
    ) -> None:
        self._store = store
        self._path_for_source = path_for_source
        self._subscriptions: dict[str, SourceSubscription] = {}
        self._generations: dict[str, int] = {}
        self._next_generation = 0
        self._contributions: dict[str, tuple[ActivityRecord, ...]] = {}
        self._pending: set[str] = set()
        self._failed: set[str] = set()
        self._sources_known = False
        self._closed = False
        self._queue: deque[_Message] = deque()
        self._draining = False
        self._listeners: dict[int, PublishCallback] = {}
        self._next_listener_id = 0
        self.records: tuple[ActivityRecord, ...] = ()
        if on_publish is not None:
            self.add_listener(on_publish)

    @classmethod
    def for_user(
        cls,
        store: DocumentStore,
        user_id: str,
        *,
        on_publish: PublishCallback | None = None,
    ) -> StreamAggregator:
        """Aggregator over the walletActivity collections of a user's devices."""
        return cls(
            store,
            lambda source: activity_path(user_id, source.id),
            on_publish=on_publish,
        )

    @property
    def loading(self) -> bool:
        """True until the source set is known and every source has reported."""
        if self._closed:
            return False
        return not self._sources_known or bool(self._pending)

    @property
    def source_ids(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    @property
    def failed_source_ids(self) -> frozenset[str]:
        """Sources whose last delivery was an error rather than a snapshot."""
        return frozenset(self._failed)

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, callback: PublishCallback) -> Callable[[], None]:
        """Register a callback for every publication. Returns a remover."""
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = callback

        def remove() -> None:
            self._listeners.pop(listener_id, None)

        return remove

    def set_sources(self, sources: Iterable[SourceDescriptor]) -> None:
        """Open subscriptions for new sources and close those no longer present.

        Calling again with the same descriptors changes nothing. A source
        whose descriptor changed only in its label keeps its subscription.
        """
        self._send(_SetSources(tuple(sources)))

    def close(self) -> None:
        """Stop every subscription. No publications happen afterwards."""
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        self._generations.clear()
        for subscription in subscriptions:
            subscription.close()
        self._contributions.clear()
        self._pending.clear()
        self._failed.clear()
        self._listeners.clear()
        self.records = ()
        logger.info("Aggregator closed (%d subscriptions stopped)", len(subscriptions))

    def _send(self, message: _Message) -> None:
        if self._closed:
            return
        self._queue.append(message)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue and not self._closed:
                self._reduce(self._queue.popleft())
        finally:
            self._draining = False

    def _reduce(self, message: _Message) -> None:
        if isinstance(message, _SetSources):
            self._apply_sources(message.sources)
            self._publish()
        elif isinstance(message, _Replace):
            if self._generations.get(message.source_id) != message.generation:
                logger.debug("Ignoring stale update for source %s", message.source_id)
                return
            self._contributions[message.source_id] = message.records
            self._pending.discard(message.source_id)
            self._failed.discard(message.source_id)
            self._publish()
        elif isinstance(message, _SourceFailed):
            if self._generations.get(message.source_id) != message.generation:
                return
            self._contributions[message.source_id] = ()
            self._pending.discard(message.source_id)
            self._failed.add(message.source_id)
            self._publish()

    def _apply_sources(self, sources: tuple[SourceDescriptor, ...]) -> None:
        desired: dict[str, SourceDescriptor] = {}
        for source in sources:
            desired[source.id] = source

        for source_id in [sid for sid in self._subscriptions if sid not in desired]:
            subscription = self._subscriptions.pop(source_id)
            self._generations.pop(source_id, None)
            subscription.close()
            self._contributions.pop(source_id, None)
            self._pending.discard(source_id)
            self._failed.discard(source_id)

        for source_id, source in desired.items():
            existing = self._subscriptions.get(source_id)
            if existing is None:
                self._open(source)
                continue
            if existing.source != source:
                existing.relabel(source)
            if not existing.active:
                # The store refused the subscription earlier; try again
                self._pending.add(source_id)
                existing.open()

        self._sources_known = True

    def _open(self, source: SourceDescriptor) -> None:
        generation = self._next_generation
        self._next_generation += 1

        def on_replace(source_id: str, records: tuple[ActivityRecord, ...]) -> None:
            self._send(_Replace(source_id, generation, records))

        def on_error(source_id: str, error: Exception) -> None:
            self._send(_SourceFailed(source_id, generation, error))

        subscription = SourceSubscription(
            self._store,
            source,
            self._path_for_source(source),
            on_replace,
            on_error,
        )
        self._subscriptions[source.id] = subscription
        self._generations[source.id] = generation
        self._pending.add(source.id)
        subscription.open()

    def _publish(self) -> None:
        self.records = merge_contributions(self._contributions)
        logger.debug(
            "Publishing %d records from %d sources", len(self.records), len(self._contributions)
        )
        for callback in list(self._listeners.values()):
            callback(self.records)

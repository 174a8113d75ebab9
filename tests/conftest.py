"""Shared fixtures: a document store whose snapshots are delivered by hand."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import pytest

from wallet_trace.models import Document


@dataclass
class FakeSubscription:
    path: str
    on_snapshot: Callable[[list[Document]], None]
    on_error: Callable[[Exception], None] | None
    filters: list[tuple[str, str, Any]] | None = None
    active: bool = True

    def cancel(self) -> None:
        self.active = False


@dataclass
class FakeStore:
    """Records subscriptions; tests push snapshots in whatever order they like."""

    subscriptions: list[FakeSubscription] = field(default_factory=list)
    writes: list[tuple[str, dict[str, Any], bool]] = field(default_factory=list)
    fail_writes: Exception | None = None

    def subscribe(self, collection_path, on_snapshot, on_error=None, *, filters=None):
        sub = FakeSubscription(collection_path, on_snapshot, on_error, filters)
        self.subscriptions.append(sub)
        return sub.cancel

    def write_document(self, path, fields, *, merge=False):
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes.append((path, dict(fields), merge))

    def active(self, path: str) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.path == path and s.active]

    def active_paths(self) -> list[str]:
        return sorted(s.path for s in self.subscriptions if s.active)

    def emit(self, path: str, docs: list[Document]) -> None:
        for sub in self.active(path):
            sub.on_snapshot(list(docs))

    def fail(self, path: str, error: Exception) -> None:
        for sub in self.active(path):
            assert sub.on_error is not None
            sub.on_error(error)


def activity_doc(doc_id: str, timestamp: Any) -> Document:
    return Document(id=doc_id, data={"timestamp": timestamp})


def device_doc(doc_id: str, name: str = "", created_at: int = 0) -> Document:
    return Document(
        id=doc_id,
        data={"deviceId": f"hw-{doc_id}", "name": name, "createdAt": created_at},
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()

"""Spending annotations and their join onto the activity collection."""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from pydantic import ValidationError

from wallet_trace.models import ActivityRecord, AnnotationRecord, Document
from wallet_trace.store import SERVER_TIMESTAMP, DocumentStore, annotations_path

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class _NotAnnotated:
    """Sentinel: no annotation has been recorded for the activity yet."""

    _instance: _NotAnnotated | None = None

    def __new__(cls) -> _NotAnnotated:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_ANNOTATED"

    def __bool__(self) -> bool:
        return False


NOT_ANNOTATED = _NotAnnotated()


class SpendingStatus(enum.Enum):
    SPENT = "spent"
    NOT_SPENT = "not_spent"
    UNKNOWN = "unknown"


class AnnotationError(Exception):
    """Raised when an annotation cannot be saved."""

    pass


@dataclass(frozen=True)
class AnnotatedActivity:
    """An activity record with its annotation resolved, or NOT_ANNOTATED."""

    activity: ActivityRecord
    annotation: AnnotationRecord | _NotAnnotated = NOT_ANNOTATED

    @property
    def is_annotated(self) -> bool:
        return self.annotation is not NOT_ANNOTATED

    @property
    def spending_status(self) -> SpendingStatus:
        if not isinstance(self.annotation, AnnotationRecord):
            return SpendingStatus.UNKNOWN
        return SpendingStatus.SPENT if self.annotation.is_spent else SpendingStatus.NOT_SPENT

    @property
    def spent_with(self) -> str | None:
        if isinstance(self.annotation, AnnotationRecord) and self.annotation.is_spent:
            return self.annotation.spent_with
        return None


def _write_order(record: AnnotationRecord) -> tuple[datetime, str]:
    return (record.updated_at or _OLDEST, record.id)


def latest_by_activity(
    annotations: Iterable[AnnotationRecord],
) -> dict[str, AnnotationRecord]:
    """Keep the most recently written annotation per activity ID.

    Ordering is by the store-assigned updated_at, never by arrival order.
    Records without a write time lose to any record that has one; exact ties
    go to the larger document ID.
    """
    latest: dict[str, AnnotationRecord] = {}
    for record in annotations:
        current = latest.get(record.activity_id)
        if current is None or _write_order(record) > _write_order(current):
            latest[record.activity_id] = record
    return latest


def annotations_from_snapshot(docs: list[Document]) -> list[AnnotationRecord]:
    """Validate annotation documents, skipping the ones that do not validate."""
    records = []
    for doc in docs:
        try:
            records.append(AnnotationRecord.from_document(doc))
        except ValidationError as e:
            logger.warning("Skipping invalid spending record %s: %s", doc.id, e.errors()[0]["msg"])
    return records


def join_annotations(
    records: Iterable[ActivityRecord],
    annotation_map: Mapping[str, AnnotationRecord],
) -> tuple[AnnotatedActivity, ...]:
    """Attach annotation_map[record.id] to each record, keeping record order."""
    return tuple(
        AnnotatedActivity(record, annotation_map.get(record.id, NOT_ANNOTATED))
        for record in records
    )


class AnnotationJoiner:
    """Joins an independently updating annotation map onto the activity view.

    Either side may arrive first. Each update replaces that side entirely
    and republishes the joined view.
    """

    def __init__(
        self,
        *,
        on_publish: Callable[[tuple[AnnotatedActivity, ...]], None] | None = None,
    ) -> None:
        self._activities: tuple[ActivityRecord, ...] = ()
        self._annotations: dict[str, AnnotationRecord] = {}
        self._on_publish = on_publish
        self.annotations_received = False
        self.view: tuple[AnnotatedActivity, ...] = ()

    @property
    def annotations(self) -> Mapping[str, AnnotationRecord]:
        return dict(self._annotations)

    def annotation_for(self, activity_id: str) -> AnnotationRecord | _NotAnnotated:
        return self._annotations.get(activity_id, NOT_ANNOTATED)

    def update_activities(self, records: Iterable[ActivityRecord]) -> None:
        self._activities = tuple(records)
        self._publish()

    def update_annotations(self, annotations: Iterable[AnnotationRecord]) -> None:
        self._annotations = latest_by_activity(annotations)
        self.annotations_received = True
        self._publish()

    def handle_snapshot(self, docs: list[Document]) -> None:
        """Store subscription callback for the spending-records collection."""
        self.update_annotations(annotations_from_snapshot(docs))

    def handle_error(self, error: Exception) -> None:
        """Keep the last known annotations when the subscription fails."""
        logger.warning("Spending record subscription failed: %s", error)
        self.annotations_received = True
        self._publish()

    def _publish(self) -> None:
        self.view = join_annotations(self._activities, self._annotations)
        if self._on_publish is not None:
            self._on_publish(self.view)


def save_annotation(
    store: DocumentStore,
    user_id: str,
    activity_id: str,
    *,
    is_spent: bool,
    spent_with: str = "",
    existing: AnnotationRecord | None = None,
) -> str:
    """Write the spending record for an activity and return its document ID.

    Updates `existing` in place (keeping its createdAt) when given, otherwise
    creates a new record. Store failures propagate to the caller unchanged;
    nothing is retried.

    Raises:
        AnnotationError: If is_spent is True and spent_with is blank.
    """
    detail = spent_with.strip()
    if is_spent and not detail:
        raise AnnotationError("'Spent with' details are required when money was spent")

    doc_id = existing.id if existing is not None else uuid.uuid4().hex[:20]
    fields = {
        "userId": user_id,
        "activityId": activity_id,
        "isSpent": is_spent,
        "spentWith": detail if is_spent else "",
        "updatedAt": SERVER_TIMESTAMP,
    }
    if existing is None:
        fields["createdAt"] = SERVER_TIMESTAMP

    store.write_document(f"{annotations_path(user_id)}/{doc_id}", fields, merge=True)
    logger.info("Saved spending record %s for activity %s", doc_id, activity_id)
    return doc_id

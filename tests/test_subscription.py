"""Tests for per-source activity subscriptions."""

from datetime import datetime, timezone

import pytest
from conftest import activity_doc

from wallet_trace.models import Document, SourceDescriptor
from wallet_trace.subscription import SourceSubscription, records_from_snapshot

PATH = "users/u1/devices/a/walletActivity"


def make_subscription(store, name="Phone"):
    replaced = []
    errors = []
    sub = SourceSubscription(
        store,
        SourceDescriptor(id="a", name=name),
        PATH,
        lambda source_id, records: replaced.append((source_id, records)),
        lambda source_id, error: errors.append((source_id, error)),
    )
    return sub, replaced, errors


class TestRecordsFromSnapshot:
    def test_builds_attributed_records(self):
        docs = [activity_doc("1", "2024-01-01T10:00:00Z")]
        (record,) = records_from_snapshot(docs, "a", "Phone")
        assert record.id == "1"
        assert record.source_id == "a"
        assert record.source_label == "Phone"
        assert record.occurred_at == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)

    def test_unparseable_timestamps_are_dropped(self):
        docs = [
            activity_doc("1", "2024-01-01T10:00:00Z"),
            activity_doc("2", "yesterday-ish"),
            Document(id="3", data={}),
        ]
        assert [r.id for r in records_from_snapshot(docs, "a")] == ["1"]

    def test_out_of_range_timestamp_dropped_sibling_kept(self):
        docs = [
            activity_doc("edge", "0001-01-01T00:00:00+01:00"),
            activity_doc("1", "2024-01-01T10:00:00Z"),
        ]
        assert [r.id for r in records_from_snapshot(docs, "a")] == ["1"]

    def test_repeated_id_keeps_later_document(self):
        docs = [
            activity_doc("1", "2024-01-01T10:00:00Z"),
            activity_doc("1", "2024-01-02T10:00:00Z"),
        ]
        (record,) = records_from_snapshot(docs, "a")
        assert record.occurred_at.day == 2

    def test_display_source_falls_back(self):
        (labelled,) = records_from_snapshot([activity_doc("1", 0)], "a", "Phone")
        (unlabelled,) = records_from_snapshot([activity_doc("1", 0)], "a")
        (anonymous,) = records_from_snapshot([activity_doc("1", 0)], "")
        assert labelled.display_source == "Phone"
        assert unlabelled.display_source == "a"
        assert anonymous.display_source == "Unknown Device"


class TestSourceSubscription:
    def test_open_subscribes_once(self, fake_store):
        sub, _, _ = make_subscription(fake_store)
        sub.open()
        sub.open()
        assert len(fake_store.subscriptions) == 1
        assert fake_store.active_paths() == [PATH]

    def test_snapshot_replaces_whole_set(self, fake_store):
        sub, replaced, _ = make_subscription(fake_store)
        sub.open()
        fake_store.emit(PATH, [activity_doc("1", 0), activity_doc("2", 1000)])
        fake_store.emit(PATH, [activity_doc("2", 1000)])
        assert [[r.id for r in records] for _, records in replaced] == [["1", "2"], ["2"]]
        assert sub.has_snapshot

    def test_close_unsubscribes_and_emits_empty_set(self, fake_store):
        sub, replaced, _ = make_subscription(fake_store)
        sub.open()
        fake_store.emit(PATH, [activity_doc("1", 0)])
        sub.close()
        assert fake_store.active_paths() == []
        assert replaced[-1] == ("a", ())
        assert sub.records == ()

    def test_callbacks_after_close_are_ignored(self, fake_store):
        sub, replaced, _ = make_subscription(fake_store)
        sub.open()
        handle = fake_store.subscriptions[0]
        sub.close()
        count = len(replaced)
        handle.on_snapshot([activity_doc("1", 0)])
        handle.on_error(RuntimeError("late"))
        assert len(replaced) == count

    def test_error_emits_empty_set_then_reports(self, fake_store):
        sub, replaced, errors = make_subscription(fake_store)
        sub.open()
        fake_store.emit(PATH, [activity_doc("1", 0)])
        error = RuntimeError("permission denied")
        fake_store.fail(PATH, error)
        assert replaced[-1] == ("a", ())
        assert errors == [("a", error)]

    def test_relabel_reemits_with_new_label(self, fake_store):
        sub, replaced, _ = make_subscription(fake_store)
        sub.open()
        fake_store.emit(PATH, [activity_doc("1", 0)])
        sub.relabel(SourceDescriptor(id="a", name="Work phone"))
        assert replaced[-1][1][0].source_label == "Work phone"
        assert len(fake_store.subscriptions) == 1

    def test_relabel_before_snapshot_emits_nothing(self, fake_store):
        sub, replaced, _ = make_subscription(fake_store)
        sub.open()
        sub.relabel(SourceDescriptor(id="a", name="Work phone"))
        assert replaced == []

    def test_relabel_rejects_other_source(self, fake_store):
        sub, _, _ = make_subscription(fake_store)
        with pytest.raises(ValueError, match="Cannot relabel"):
            sub.relabel(SourceDescriptor(id="b"))

    def test_close_during_initial_snapshot_unsubscribes(self):
        """A store that delivers synchronously may see close() before open() returns."""

        class ImmediateStore:
            def __init__(self):
                self.unsubscribed = False

            def subscribe(self, path, on_snapshot, on_error=None, *, filters=None):
                on_snapshot([activity_doc("1", 0)])

                def unsubscribe():
                    self.unsubscribed = True

                return unsubscribe

            def write_document(self, path, fields, *, merge=False):
                pass

        store = ImmediateStore()
        holder = {}

        def on_replace(source_id, records):
            if records:
                holder["sub"].close()

        sub = SourceSubscription(store, SourceDescriptor(id="a"), PATH, on_replace)
        holder["sub"] = sub
        sub.open()
        assert store.unsubscribed
        assert not sub.active

    def test_refused_subscription_reports_error(self, fake_store):
        error = ConnectionError("offline")

        class RefusingStore(type(fake_store)):
            def subscribe(self, *args, **kwargs):
                raise error

        store = RefusingStore()
        sub, replaced, errors = make_subscription(store)
        sub.open()

        assert replaced == [("a", ())]
        assert errors == [("a", error)]
        assert not sub.active

    def test_open_after_refusal_subscribes_again(self, fake_store):
        class FlakyStore(type(fake_store)):
            refuse = True

            def subscribe(self, *args, **kwargs):
                if self.refuse:
                    raise ConnectionError("offline")
                return super().subscribe(*args, **kwargs)

        store = FlakyStore()
        sub, _, _ = make_subscription(store)
        sub.open()
        store.refuse = False
        sub.open()

        assert sub.active
        assert store.active_paths() == [PATH]

from datetime import datetime

import pytest

from conftest import START

from backend.infrastructure import SERVER_TIMESTAMP, BatchRejected, FixedClock, InMemoryRecordStore, Precondition, Write


@pytest.fixture()
def store():
    return InMemoryRecordStore(clock=FixedClock(START), max_batch_writes=3)


def test_batch_is_all_or_nothing(store):
    store.commit_batch([Write.create("jobs", "j1", {"status": "DONE"})])

    with pytest.raises(BatchRejected) as excinfo:
        store.commit_batch(
            [
                Write.create("documents", "d1", {"doc_no": "INV2025-0001"}),
                Write.update("jobs", "j1", {"status": "CLOSED"}, Precondition(fields={"status": "RECEIVED"})),
            ]
        )

    assert excinfo.value.record_id == "j1"
    assert store.get("documents", "d1") is None
    assert store.get("jobs", "j1") == {"status": "DONE"}


def test_create_refuses_existing_record(store):
    store.commit_batch([Write.create("activeDocuments", "j1:TAX_INVOICE", {"doc_id": "d1"})])

    with pytest.raises(BatchRejected):
        store.commit_batch([Write.create("activeDocuments", "j1:TAX_INVOICE", {"doc_id": "d2"})])
    assert store.get("activeDocuments", "j1:TAX_INVOICE") == {"doc_id": "d1"}


def test_update_of_missing_record_is_rejected(store):
    with pytest.raises(BatchRejected):
        store.commit_batch([Write.update("jobs", "missing", {"status": "DONE"})])


def test_server_timestamp_is_shared_by_the_batch(store):
    timestamp = store.commit_batch(
        [
            Write.set("jobs", "j1", {"last_activity_at": SERVER_TIMESTAMP}),
            Write.set("jobs/j1/activities", "a1", {"created_at": SERVER_TIMESTAMP}),
        ]
    )

    assert isinstance(timestamp, datetime)
    assert store.get("jobs", "j1")["last_activity_at"] == timestamp
    assert store.get("jobs/j1/activities", "a1")["created_at"] == timestamp


def test_oversized_batch_is_refused(store):
    writes = [Write.set("jobs", f"j{index}", {"n": index}) for index in range(4)]

    with pytest.raises(ValueError):
        store.commit_batch(writes)
    assert store.query("jobs") == []


def test_query_filters_and_orders(store):
    store.commit_batch(
        [
            Write.set("jobs", "a", {"status": "DONE", "rank": 2}),
            Write.set("jobs", "b", {"status": "DONE", "rank": 5}),
            Write.set("jobs", "c", {"status": "CLOSED", "rank": 9}),
        ]
    )

    rows = store.query("jobs", where={"status": "DONE"}, order_by="rank", descending=True)

    assert [row["rank"] for row in rows] == [5, 2]


def test_subscription_sees_committed_snapshots(store):
    snapshots = []
    subscription = store.subscribe("jobs/j1/activities", lambda rows: snapshots.append(len(rows)))

    store.commit_batch([Write.set("jobs/j1/activities", "a1", {"text": "received"})])
    subscription.unsubscribe()
    store.commit_batch([Write.set("jobs/j1/activities", "a2", {"text": "accepted"})])

    assert snapshots == [0, 1]


def test_reads_return_copies(store):
    store.commit_batch([Write.set("jobs", "j1", {"photos": ["front.jpg"]})])

    record = store.get("jobs", "j1")
    record["photos"].append("back.jpg")

    assert store.get("jobs", "j1") == {"photos": ["front.jpg"]}

"""Record store contract and the in-memory implementation.

The store is document oriented: records are plain dicts addressed by a
collection path (``jobs``, ``jobs/<id>/activities``, ``jobsArchive_2025``…)
and a record id.  Multi-record effects go through :meth:`commit_batch`,
which applies every write or none of them.  Each write may carry a
:class:`Precondition`; preconditions are evaluated under the same lock as
the apply step, so a batch built from a stale read is rejected as a whole.
"""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Mapping, Protocol, Sequence

from backend.infrastructure.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()
_MISSING = object()


class BatchRejected(Exception):
    """A write precondition did not hold at commit time."""

    def __init__(self, collection: str, record_id: str, reason: str) -> None:
        super().__init__(f"{collection}/{record_id}: {reason}")
        self.collection = collection
        self.record_id = record_id
        self.reason = reason


class StoreUnavailable(Exception):
    """Transport-level failure; the batch was not applied."""


@dataclass(frozen=True, slots=True)
class Precondition:
    exists: bool | None = None
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Write:
    op: Literal["set", "update", "delete"]
    collection: str
    record_id: str
    data: Mapping[str, Any] | None = None
    precondition: Precondition | None = None

    @classmethod
    def set(cls, collection: str, record_id: str, data: Mapping[str, Any], precondition: Precondition | None = None) -> "Write":
        return cls("set", collection, record_id, dict(data), precondition)

    @classmethod
    def create(cls, collection: str, record_id: str, data: Mapping[str, Any]) -> "Write":
        return cls("set", collection, record_id, dict(data), Precondition(exists=False))

    @classmethod
    def update(cls, collection: str, record_id: str, data: Mapping[str, Any], precondition: Precondition | None = None) -> "Write":
        return cls("update", collection, record_id, dict(data), precondition)

    @classmethod
    def delete(cls, collection: str, record_id: str, precondition: Precondition | None = None) -> "Write":
        return cls("delete", collection, record_id, None, precondition)


SnapshotCallback = Callable[[list[dict[str, Any]]], None]


class Subscription:
    def __init__(self, store: "InMemoryRecordStore", collection: str, callback: SnapshotCallback, where: Mapping[str, Any] | None) -> None:
        self._store = store
        self.collection = collection
        self.callback = callback
        self.where = dict(where or {})
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._store._remove_subscription(self)


class RecordStore(Protocol):
    """Persistence contract consumed by the engine."""

    max_batch_writes: int

    def get(self, collection: str, record_id: str) -> dict[str, Any] | None: ...

    def query(
        self,
        collection: str,
        *,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]: ...

    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        *,
        where: Mapping[str, Any] | None = None,
    ) -> Subscription: ...

    def commit_batch(self, writes: Sequence[Write]) -> datetime: ...

    def server_timestamp(self) -> datetime: ...

    def new_id(self) -> str: ...

    def list_collections(self, prefix: str = "") -> list[str]: ...

    def reset(self) -> None: ...


def _matches(record: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
    return all(record.get(key) == value for key, value in where.items())


def _sort_key(value: Any) -> tuple[int, Any]:
    return (0, "") if value is None else (1, value)


class InMemoryRecordStore:
    """Thread-safe in-memory store for development and tests."""

    def __init__(self, clock: Clock | None = None, max_batch_writes: int = 400) -> None:
        self._clock = clock or SystemClock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: list[Subscription] = []
        self._lock = threading.RLock()
        self.max_batch_writes = max_batch_writes

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def query(
        self,
        collection: str,
        *,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(record)
                for record in self._collections.get(collection, {}).values()
                if not where or _matches(record, where)
            ]
        if order_by:
            rows.sort(key=lambda row: _sort_key(row.get(order_by)), reverse=descending)
        return rows

    def list_collections(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(name for name, records in self._collections.items() if records and name.startswith(prefix))

    def server_timestamp(self) -> datetime:
        return self._clock.now()

    def new_id(self) -> str:
        return self._clock.new_id()

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        *,
        where: Mapping[str, Any] | None = None,
    ) -> Subscription:
        subscription = Subscription(self, collection, callback, where)
        with self._lock:
            self._subscriptions.append(subscription)
        callback(self.query(collection, where=where))
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, touched: set[str]) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.collection in touched]
        for subscription in targets:
            if subscription.active:
                subscription.callback(self.query(subscription.collection, where=subscription.where))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def _check(self, write: Write) -> None:
        current = self._collections.get(write.collection, {}).get(write.record_id)
        if write.op == "update" and current is None:
            raise BatchRejected(write.collection, write.record_id, "record does not exist")
        condition = write.precondition
        if condition is None:
            return
        if condition.exists is True and current is None:
            raise BatchRejected(write.collection, write.record_id, "record does not exist")
        if condition.exists is False and current is not None:
            raise BatchRejected(write.collection, write.record_id, "record already exists")
        for key, expected in condition.fields.items():
            actual = current.get(key, _MISSING) if current is not None else _MISSING
            if actual is _MISSING:
                actual = None
            if actual != expected:
                raise BatchRejected(
                    write.collection,
                    write.record_id,
                    f"expected {key}={expected!r}, found {actual!r}",
                )

    @staticmethod
    def _resolve(data: Mapping[str, Any], timestamp: datetime) -> dict[str, Any]:
        return {
            key: (timestamp if value is SERVER_TIMESTAMP else copy.deepcopy(value))
            for key, value in data.items()
        }

    def commit_batch(self, writes: Sequence[Write]) -> datetime:
        """Apply ``writes`` atomically and return the batch's server timestamp."""

        if not writes:
            raise ValueError("batch must contain at least one write")
        if len(writes) > self.max_batch_writes:
            raise ValueError(f"batch of {len(writes)} writes exceeds the limit of {self.max_batch_writes}")

        with self._lock:
            for write in writes:
                self._check(write)
            timestamp = self._clock.now()
            touched: set[str] = set()
            for write in writes:
                records = self._collections.setdefault(write.collection, {})
                if write.op == "delete":
                    records.pop(write.record_id, None)
                elif write.op == "set":
                    records[write.record_id] = self._resolve(write.data or {}, timestamp)
                else:
                    records[write.record_id].update(self._resolve(write.data or {}, timestamp))
                touched.add(write.collection)

        logger.debug("committed batch of %d writes across %s", len(writes), sorted(touched))
        self._notify(touched)
        return timestamp

    def reset(self) -> None:
        with self._lock:
            self._collections.clear()
            self._subscriptions.clear()

"""Infrastructure layer exports."""

from .clock import Clock, FixedClock, SystemClock
from .permissions import (
    Action,
    Caller,
    PermissionProvider,
    Role,
    RolePermissionProvider,
    configure_permission_provider,
    get_permission_provider,
)
from .store import (
    SERVER_TIMESTAMP,
    BatchRejected,
    InMemoryRecordStore,
    Precondition,
    RecordStore,
    StoreUnavailable,
    Subscription,
    Write,
)
from .workers import StoreWorkerDirectory, WorkerDirectory

__all__ = [
    "Action",
    "BatchRejected",
    "Caller",
    "Clock",
    "FixedClock",
    "InMemoryRecordStore",
    "PermissionProvider",
    "Precondition",
    "RecordStore",
    "Role",
    "RolePermissionProvider",
    "SERVER_TIMESTAMP",
    "StoreUnavailable",
    "StoreWorkerDirectory",
    "Subscription",
    "SystemClock",
    "Write",
    "WorkerDirectory",
    "configure_permission_provider",
    "get_permission_provider",
]

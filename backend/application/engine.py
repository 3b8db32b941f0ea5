"""Process-wide wiring of the engine services."""
from __future__ import annotations

from dataclasses import dataclass

from backend.application.archival import ArchivalMover
from backend.application.backfill import BackfillImporter
from backend.application.dashboard import DashboardReader
from backend.application.feeds import ActivityFeed
from backend.application.jobs import JobService
from backend.application.reconciliation import ReconciliationCoordinator
from backend.core.config import EngineSettings, get_settings
from backend.infrastructure import (
    Clock,
    InMemoryRecordStore,
    PermissionProvider,
    RecordStore,
    StoreWorkerDirectory,
    SystemClock,
    WorkerDirectory,
    get_permission_provider,
)


@dataclass
class Engine:
    settings: EngineSettings
    clock: Clock
    store: RecordStore
    archival: ArchivalMover
    jobs: JobService
    coordinator: ReconciliationCoordinator
    feed: ActivityFeed
    dashboard: DashboardReader
    backfill: BackfillImporter

    @classmethod
    def build(
        cls,
        *,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        store: RecordStore | None = None,
        permissions: PermissionProvider | None = None,
        workers: WorkerDirectory | None = None,
    ) -> "Engine":
        settings = settings or get_settings()
        clock = clock or SystemClock()
        store = store or InMemoryRecordStore(clock=clock, max_batch_writes=settings.max_batch_writes)
        permissions = permissions or get_permission_provider()
        workers = workers or StoreWorkerDirectory(store)
        archival = ArchivalMover(store, settings, clock)
        coordinator = ReconciliationCoordinator(store, settings, clock, permissions, archival)
        return cls(
            settings=settings,
            clock=clock,
            store=store,
            archival=archival,
            jobs=JobService(store, settings, clock, permissions, workers, archival),
            coordinator=coordinator,
            feed=ActivityFeed(store, archival),
            dashboard=DashboardReader(store, clock),
            backfill=BackfillImporter(coordinator),
        )


_engine: Engine | None = None


def configure_engine(engine: Engine) -> Engine:
    """Install a pre-built engine (tests pin the clock or swap the store)."""

    global _engine
    _engine = engine
    return engine


def get_engine() -> Engine:
    """Return the singleton engine, building the in-memory one on first use."""

    global _engine
    if _engine is None:
        _engine = Engine.build()
    return _engine


def get_job_service() -> JobService:
    return get_engine().jobs


def get_coordinator() -> ReconciliationCoordinator:
    return get_engine().coordinator


def get_activity_feed() -> ActivityFeed:
    return get_engine().feed


def get_dashboard_reader() -> DashboardReader:
    return get_engine().dashboard


def reset_engine_state() -> None:
    """Reset the in-memory store (used in tests)."""

    get_engine().store.reset()

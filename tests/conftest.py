import sys
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from backend.application import Engine, IssueRequest, configure_engine, reset_engine_state
from backend.core.config import DEFAULT_CONFIG_PATH, load_settings
from backend.domain.documents import DocType, LineItem
from backend.domain.jobs import Department
from backend.infrastructure import Caller, FixedClock, Role, RolePermissionProvider

START = datetime(2025, 3, 1, 8, 0)
ENGINE_ENV = ("ARCHIVE_HORIZON_YEARS", "ARCHIVE_ON_CLOSE", "MAX_BATCH_WRITES", "VAT_RATE", "ENGINE_CONFIG_PATH")

OFFICE = Caller("u-office", "Nok", Role.OFFICER)
WORKER = Caller("u-worker", "Wit", Role.WORKER, Department.CAR_SERVICE.value)
ACCOUNTING = Caller("u-acc", "Ploy", Role.ACCOUNTING)
ADMIN = Caller("u-admin", "Admin", Role.ADMIN)
VIEWER = Caller("u-viewer", "Guest", Role.VIEWER)


def build_engine(store=None, **overrides) -> Engine:
    settings = load_settings(DEFAULT_CONFIG_PATH)
    if overrides:
        settings = replace(settings, **overrides)
    return Engine.build(
        settings=settings,
        clock=FixedClock(START),
        store=store,
        permissions=RolePermissionProvider(),
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENGINE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def engine():
    built = configure_engine(build_engine())
    yield built
    reset_engine_state()


def items(*prices: str) -> tuple[LineItem, ...]:
    return tuple(
        LineItem(description=f"item {index}", quantity=Decimal("1"), unit_price=Decimal(price))
        for index, price in enumerate(prices, 1)
    )


def invoice(**fields) -> IssueRequest:
    fields.setdefault("items", items("1000"))
    return IssueRequest(doc_type=DocType.TAX_INVOICE, **fields)


def done_job(engine: Engine, **fields):
    job = engine.jobs.create_job(Department.CAR_SERVICE, OFFICE, **fields)
    engine.jobs.accept_job(job.job_id, WORKER)
    return engine.jobs.mark_done(job.job_id, WORKER)

"""Engine configuration loaded from ``backend/config/engine.yaml``.

Environment variables take precedence over the YAML defaults so that a
deployment can tune the archive horizon or VAT rate without editing files.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "engine.yaml"


@dataclass(frozen=True)
class EngineSettings:
    archive_horizon_years: int = 5
    archive_on_close: bool = True
    archive_collection_prefix: str = "jobsArchive_"
    max_batch_writes: int = 400
    vat_rate: Decimal = Decimal("0.07")
    document_prefixes: dict[str, str] = field(default_factory=dict)
    skip_approval: frozenset[str] = frozenset({"RECEIPT"})
    tax_applicable_default: dict[str, bool] = field(default_factory=dict)

    def prefix_for(self, doc_type: str) -> str:
        return self.document_prefixes.get(doc_type) or doc_type[:2]

    def tax_default_for(self, doc_type: str) -> bool:
        return bool(self.tax_applicable_default.get(doc_type, True))

    def requires_approval(self, doc_type: str) -> bool:
        return doc_type not in self.skip_approval


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fp:
        return yaml.safe_load(fp) or {}


def load_settings(path: Path | None = None) -> EngineSettings:
    """Build settings from YAML defaults overlaid with environment variables."""

    env_path = os.getenv("ENGINE_CONFIG_PATH")
    config_path = path or (Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
    raw = _load_yaml(config_path)

    archive = raw.get("archive") or {}
    store = raw.get("store") or {}
    documents = raw.get("documents") or {}

    horizon = int(archive.get("horizon_years", 5))
    on_close = bool(archive.get("on_close", True))
    max_batch = int(store.get("max_batch_writes", 400))
    vat_rate = Decimal(str(documents.get("vat_rate", "0.07")))

    if (value := os.getenv("ARCHIVE_HORIZON_YEARS")):
        horizon = int(value)
    if (value := os.getenv("ARCHIVE_ON_CLOSE")):
        on_close = _as_bool(value)
    if (value := os.getenv("MAX_BATCH_WRITES")):
        max_batch = int(value)
    if (value := os.getenv("VAT_RATE")):
        vat_rate = Decimal(value)

    if horizon < 1:
        raise ValueError("archive horizon must be at least one year")
    if max_batch < 2:
        raise ValueError("max_batch_writes must allow at least two writes")

    return EngineSettings(
        archive_horizon_years=horizon,
        archive_on_close=on_close,
        archive_collection_prefix=str(archive.get("collection_prefix") or "jobsArchive_"),
        max_batch_writes=max_batch,
        vat_rate=vat_rate,
        document_prefixes={str(k): str(v) for k, v in (documents.get("prefixes") or {}).items()},
        skip_approval=frozenset(str(item) for item in documents.get("skip_approval") or []),
        tax_applicable_default={
            str(k): bool(v) for k, v in (documents.get("tax_applicable_default") or {}).items()
        },
    )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings, loading them on first use."""

    return load_settings()

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"cannot fingerprint {type(value)!r}")


def fingerprint(payload: Any) -> str:
    """Stable sha256 over a JSON rendering of ``payload``."""

    text = json.dumps(payload, sort_keys=True, default=_default, ensure_ascii=False)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()

from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Query
from fastapi.encoders import jsonable_encoder

from backend.application import get_dashboard_reader

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

# amounts are serialised as strings
_ENCODERS = {Decimal: str}


@router.get("")
async def get_dashboard(as_of: date | None = Query(default=None)) -> dict:
    return jsonable_encoder(get_dashboard_reader().summary(as_of), custom_encoder=_ENCODERS)


@router.get("/backlog")
async def get_backlog() -> dict:
    reader = get_dashboard_reader()
    return {"items": reader.backlog(), "unbilled_done": reader.unbilled_done()}


@router.get("/ar-aging")
async def get_ar_aging(as_of: date | None = Query(default=None)) -> dict:
    return {"items": jsonable_encoder(get_dashboard_reader().ar_aging(as_of), custom_encoder=_ENCODERS)}


@router.get("/cash-flow")
async def get_cash_flow() -> dict:
    return {"items": jsonable_encoder(get_dashboard_reader().cash_flow(), custom_encoder=_ENCODERS)}

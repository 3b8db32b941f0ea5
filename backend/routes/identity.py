from __future__ import annotations

from fastapi import Header, HTTPException

from backend.infrastructure.permissions import Caller, Role


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_department: str | None = Header(default=None),
) -> Caller:
    """Caller identity forwarded by the authenticating gateway."""

    if not x_user_id:
        return Caller(user_id="anonymous", name="anonymous", role=Role.VIEWER)
    try:
        role = Role((x_user_role or Role.VIEWER.value).strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown role {x_user_role!r}") from None
    return Caller(
        user_id=x_user_id,
        name=x_user_name or x_user_id,
        role=role,
        department=x_user_department or None,
    )

"""FastAPI routers for the guilds domain."""

from __future__ import annotations

from fastapi import APIRouter

from guildhall.guilds.api import guilds, members

router = APIRouter(prefix="/api/guilds/v1")

router.include_router(guilds.router)
router.include_router(members.router)

__all__ = ["router"]

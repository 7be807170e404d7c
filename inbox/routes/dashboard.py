from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, HTTPException

from ..runtime import InboxRuntime

_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check_dates(*values: Optional[str]) -> None:
    for value in values:
        if value and not _DATE.match(value):
            raise HTTPException(status_code=400, detail="Dates must be YYYY-MM-DD")


def create_dashboard_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

    @router.get("/stats")
    async def stats(startDate: Optional[str] = None, endDate: Optional[str] = None):
        _check_dates(startDate, endDate)
        return {"success": True, "stats": await rt.db_manager.dashboard_stats(startDate, endDate)}

    @router.get("/charts")
    async def charts(startDate: Optional[str] = None, endDate: Optional[str] = None):
        """Time series for the dashboard graphs."""
        _check_dates(startDate, endDate)
        return {"success": True, "chart": await rt.db_manager.dashboard_chart(startDate, endDate)}

    return router

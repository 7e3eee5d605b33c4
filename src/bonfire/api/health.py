"""Health check endpoint for the Bonfire API."""

from datetime import datetime
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from bonfire import __version__
from bonfire.api.deps import get_db
from bonfire.models import WireModel, utcnow

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

router = APIRouter(tags=["health"])


class HealthResponse(WireModel):
    """Health check response model."""

    status: str
    version: str
    timestamp: datetime
    database: str
    discord: str
    listeners: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: "Engine" = Depends(get_db)) -> HealthResponse:
    """Report database, Discord and listener status.

    Overall status is 'ok' only when the database answers; Discord and
    listener state are informational ('unavailable' when the API runs
    without the bot).
    """
    try:
        with db.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception:
        db_status = "error"

    sync = getattr(request.app.state, "sync", None)
    if sync is None:
        discord_status = listeners_status = "unavailable"
    else:
        discord_status = "connected" if sync.gateway.client.is_ready() else "disconnected"
        listeners_status = "active" if sync.started else "stopped"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version=__version__,
        timestamp=utcnow(),
        database=db_status,
        discord=discord_status,
        listeners=listeners_status,
    )

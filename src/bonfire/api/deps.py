"""FastAPI dependency injection for the Bonfire API.

Shared resources live on ``app.state``: ``config``, ``db``, ``store`` and,
when the API runs next to the bot, ``sync``.
"""

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from bonfire.config import Config
    from bonfire.engine import SyncEngine
    from bonfire.store import RecordStore


def get_config(request: Request) -> "Config":
    return request.app.state.config


def get_db(request: Request) -> "Engine":
    return request.app.state.db


def get_store(request: Request) -> "RecordStore":
    return request.app.state.store


def get_sync(request: Request) -> "SyncEngine":
    """Get the running sync engine.

    Raises:
        HTTPException: 503 when the API runs without the Discord bot.
    """
    sync = getattr(request.app.state, "sync", None)
    if sync is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return sync

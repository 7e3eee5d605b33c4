"""Announcement endpoints for the Bonfire API.

Creating or updating a post only writes to the store; the change listener
picks the record up and mirrors it onto Discord.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import field_validator

from bonfire.api.deps import get_store, get_sync
from bonfire.models import AnnouncementRecord, RecordStatus, WireModel, utcnow

if TYPE_CHECKING:
    from bonfire.engine import SyncEngine
    from bonfire.store import RecordStore

log = structlog.get_logger()

router = APIRouter(prefix="/api/discord", tags=["discord"])


# =============================================================================
# Request / Response Models
# =============================================================================


class PostCreate(WireModel):
    """Body of a new announcement. ``title`` is checked by the handler."""

    title: str | None = None
    description: str = ""
    author: str | None = None
    additional_info: str = ""
    timestamp: datetime | None = None
    roam_id: str | None = None
    roam_details: dict[str, Any] | None = None


class PostUpdate(WireModel):
    """Content changes for a posted announcement. Unset fields are kept."""

    title: str | None = None
    description: str | None = None
    author: str | None = None
    additional_info: str | None = None
    timestamp: datetime | None = None

    @field_validator("title", "description", "author", "additional_info")
    @classmethod
    def not_null(cls, value: str | None) -> str:
        # Omit a field to keep it; only the timestamp can be cleared
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class PostResponse(WireModel):
    success: bool = True
    post: AnnouncementRecord


class PostCreatedResponse(WireModel):
    success: bool = True
    message: str
    post_id: str
    post: AnnouncementRecord


class PostUpdateResponse(WireModel):
    success: bool = True
    message: str
    post_id: str
    update_data: dict[str, Any]


class PostListResponse(WireModel):
    success: bool = True
    posts: list[AnnouncementRecord]
    count: int


class PostDeletedResponse(WireModel):
    success: bool = True
    message: str
    post_id: str


class ReactionSyncResponse(WireModel):
    success: bool = True
    synced: int


class CachedIdentityResponse(WireModel):
    discord_id: str
    account_id: str
    display_name: str
    age_seconds: float


class IdentityCacheResponse(WireModel):
    size: int
    ttl_seconds: float
    entries: list[CachedIdentityResponse]


# =============================================================================
# Endpoints
# =============================================================================


def _require_record(store: "RecordStore", post_id: str) -> AnnouncementRecord:
    record = store.get(post_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Post not found")
    return record


@router.post("/post", response_model=PostCreatedResponse, status_code=201)
async def create_post(
    body: PostCreate,
    store: "RecordStore" = Depends(get_store),
) -> PostCreatedResponse:
    """Create a pending announcement."""
    if not body.title:
        raise HTTPException(status_code=400, detail="Title is required")

    record = store.create(
        AnnouncementRecord(
            title=body.title,
            description=body.description,
            author=body.author or "Anonymous",
            additional_info=body.additional_info,
            timestamp=body.timestamp or utcnow(),
            roam_id=body.roam_id,
            roam_details=body.roam_details,
        )
    )
    log.info("post_created", record_id=record.id)
    return PostCreatedResponse(
        message="Discord post created successfully",
        post_id=record.id,
        post=record,
    )


@router.put("/post/{post_id}", response_model=PostUpdateResponse)
async def update_post(
    post_id: str,
    body: PostUpdate,
    store: "RecordStore" = Depends(get_store),
) -> PostUpdateResponse:
    """Apply content changes and request a Discord edit."""
    _require_record(store, post_id)

    update_data = body.model_dump(exclude_unset=True)
    store.request_update(post_id, update_data)
    return PostUpdateResponse(
        message="Discord post update requested",
        post_id=post_id,
        update_data=body.model_dump(exclude_unset=True, by_alias=True, mode="json"),
    )


@router.get("/posts", response_model=PostListResponse)
async def list_posts(
    limit: int = Query(20, ge=1, le=100),
    status: RecordStatus | None = Query(None),
    store: "RecordStore" = Depends(get_store),
) -> PostListResponse:
    """List announcements, newest first."""
    posts = store.list_records(status=status, limit=limit)
    return PostListResponse(posts=posts, count=len(posts))


@router.get("/post/{post_id}", response_model=PostResponse)
async def get_post(post_id: str, store: "RecordStore" = Depends(get_store)) -> PostResponse:
    return PostResponse(post=_require_record(store, post_id))


@router.delete("/post/{post_id}", response_model=PostDeletedResponse)
async def delete_post(
    post_id: str,
    store: "RecordStore" = Depends(get_store),
) -> PostDeletedResponse:
    """Mark a post deleted. The Discord message is left in place."""
    _require_record(store, post_id)
    store.mark_deleted(post_id)
    return PostDeletedResponse(message="Discord post marked as deleted", post_id=post_id)


@router.post("/reactions/sync", response_model=ReactionSyncResponse)
async def sync_reactions(sync: "SyncEngine" = Depends(get_sync)) -> ReactionSyncResponse:
    """Run the reaction sweep now."""
    synced = await sync.sync_reactions()
    return ReactionSyncResponse(synced=synced)


@router.get("/identity-cache", response_model=IdentityCacheResponse)
async def identity_cache_stats(sync: "SyncEngine" = Depends(get_sync)) -> IdentityCacheResponse:
    return IdentityCacheResponse(**sync.identity.stats())

"""Bookmark endpoints for API clients."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_bookmark_store, get_current_session
from schemas.auth import AuthSession
from schemas.bookmark import BookmarkCreate, BookmarkRecord
from services.bookmark_service import BookmarkStore
from services.exceptions import BookmarkNotFoundError, StoreError

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])


@router.post("/", response_model=BookmarkRecord, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    session: AuthSession = Depends(get_current_session),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkRecord:
    """Create a new bookmark; open dashboards of the same user are notified."""
    try:
        return await store.insert(session.user_id, data)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)


@router.get("/", response_model=list[BookmarkRecord])
async def list_bookmarks(
    session: AuthSession = Depends(get_current_session),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> list[BookmarkRecord]:
    """List the current user's bookmarks, newest first."""
    try:
        return await store.select(session.user_id)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: UUID,
    session: AuthSession = Depends(get_current_session),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> None:
    """Delete a bookmark owned by the current user."""
    try:
        await store.delete(bookmark_id, session.user_id)
    except BookmarkNotFoundError:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    except StoreError as e:
        raise HTTPException(status_code=502, detail=e.message)

"""Pydantic schemas for bookmark records and their change notifications."""
from datetime import datetime
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, HttpUrl, field_validator

from core.config import get_settings


def validate_title(title: str) -> str:
    """
    Trim and validate a bookmark title.

    Raises:
        ValueError: If the title is blank or exceeds the configured maximum length.
    """
    title = title.strip()
    if not title:
        raise ValueError("Title cannot be empty")
    settings = get_settings()
    if len(title) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(title):,} characters).",
        )
    return title


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    # HttpUrl normalizes root domains with trailing slash (example.com -> example.com/)
    # but preserves paths as-is (example.com/page stays example.com/page)
    title: str
    url: HttpUrl

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        """Validate title."""
        return validate_title(v)


class BookmarkRecord(BaseModel):
    """A stored bookmark as seen by its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    title: str
    url: str
    created_at: datetime


class BookmarkKey(BaseModel):
    """Identifying columns of a deleted bookmark."""

    id: UUID
    user_id: str


class ChangeType(StrEnum):
    """Kind of change carried by the notification feed."""

    INSERT = "INSERT"
    DELETE = "DELETE"


class BookmarkChange(BaseModel):
    """
    A change notification for one bookmark.

    Inserts carry the new record in ``new``; deletes carry the old key in ``old``.
    """

    type: ChangeType
    new: BookmarkRecord | None = None
    old: BookmarkKey | None = None

    @property
    def bookmark_id(self) -> UUID | None:
        """Id of the affected bookmark."""
        if self.type == ChangeType.INSERT:
            return self.new.id if self.new else None
        return self.old.id if self.old else None

    @property
    def owner_id(self) -> str | None:
        """Owner of the affected bookmark."""
        if self.type == ChangeType.INSERT:
            return self.new.user_id if self.new else None
        return self.old.user_id if self.old else None


class DashboardState(BaseModel):
    """Reconciled view of a user's bookmarks pushed to an open dashboard."""

    bookmarks: list[BookmarkRecord]
    error: str | None = None
    loading: bool = False
    fetching: bool = False
    submitting: bool = False
    deleting: list[UUID] = []

"""Pydantic schemas for bookmark endpoints."""
from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from schemas.validators import validate_title, validate_url


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    url: str
    title: str

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        """Trim and validate the URL."""
        return validate_url(v)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        """Normalize and validate the title."""
        return validate_title(v)


class BookmarkUpdate(BaseModel):
    """Schema for updating an existing bookmark. Omitted fields are left unchanged."""

    url: str | None = None
    title: str | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str | None) -> str | None:
        """Trim and validate the URL if provided."""
        if v is None:
            raise ValueError("URL cannot be null")
        return validate_url(v)

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str | None) -> str | None:
        """Normalize and validate the title if provided."""
        if v is None:
            raise ValueError("Title cannot be null")
        return validate_title(v)


class BookmarkResponse(BaseModel):
    """
    Schema for bookmark responses and change-feed rows.

    This is also the typed record the sync client keeps in its list, so it is
    frozen: a row is replaced, never edited in place.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    user_id: UUID
    url: str
    title: str
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps (e.g. read back from SQLite) as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class BookmarkListResponse(BaseModel):
    """All bookmarks of the current user, newest first."""

    items: list[BookmarkResponse]
    total: int

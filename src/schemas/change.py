"""Pydantic schemas for the bookmark change feed."""
from enum import StrEnum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, model_validator

from schemas.bookmark import BookmarkResponse

BOOKMARKS_TABLE = "bookmarks"


class ChangeType(StrEnum):
    """Kind of committed row change."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class BookmarkChange(BaseModel):
    """
    One committed change to a bookmark row.

    INSERT and UPDATE carry the row as it is now in ``new``. DELETE carries the
    row as it was in ``old``. UPDATE may also carry the previous row in ``old``.
    """

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    table: Literal["bookmarks"] = BOOKMARKS_TABLE
    new: BookmarkResponse | None = None
    old: BookmarkResponse | None = None

    @model_validator(mode="after")
    def check_rows(self) -> "BookmarkChange":
        """Ensure the row required by the change type is present."""
        if self.type in (ChangeType.INSERT, ChangeType.UPDATE) and self.new is None:
            raise ValueError(f"{self.type} change requires 'new' row")
        if self.type == ChangeType.DELETE and self.old is None:
            raise ValueError("DELETE change requires 'old' row")
        return self

    @property
    def row(self) -> BookmarkResponse:
        """The row this change is about (``new`` when present, else ``old``)."""
        if self.new is not None:
            return self.new
        if self.old is None:
            raise ValueError(f"{self.type} change carries no row")
        return self.old

    @property
    def user_id(self) -> UUID:
        """Owner of the changed row."""
        return self.row.user_id

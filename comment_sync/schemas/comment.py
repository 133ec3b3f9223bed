"""
Comment schemas for the marketplace comment API and the local comment tree.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AuthorInfo(BaseModel):
    """Display information for a comment author, embedded or looked up by id."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    name: str = ""
    avatar: Optional[str] = None


class Comment(BaseModel):
    """
    A comment or reply on a marketplace listing.

    The remote API uses camelCase keys and Mongo-style ids; aliases map them
    onto the snake_case fields. ``pending`` and ``correlation_id`` are local
    only: a comment created by the acting actor carries a correlation id and
    no server id until the remote create succeeds.
    """
    model_config = ConfigDict(populate_by_name=True, validate_assignment=False)

    id: Optional[str] = Field(None, alias="_id")
    thread_id: Optional[str] = Field(None, alias="product")
    parent_id: Optional[str] = Field(None, alias="parent")
    author_id: str = Field(..., alias="user")
    author: Optional[AuthorInfo] = None
    content: str
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    like_count: int = Field(0, ge=0, alias="likeCount")
    liked_by: Set[str] = Field(default_factory=set, alias="likes")
    replies: List["Comment"] = Field(default_factory=list)
    pending: bool = False
    correlation_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _split_embedded_user(cls, data: Any) -> Any:
        """Accept ``user`` either as an id or as an embedded user object."""
        if isinstance(data, dict):
            user = data.get("user")
            if isinstance(user, dict):
                data = dict(data)
                data["user"] = user.get("_id") or user.get("id")
                data.setdefault("author", user)
            likes = data.get("likes")
            if isinstance(likes, list):
                data = dict(data)
                data["likes"] = {
                    like.get("_id") if isinstance(like, dict) else like
                    for like in likes
                }
        return data

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_reply(self) -> bool:
        return self.parent_id is not None

    @property
    def key(self) -> str:
        """Server id once confirmed, correlation id while pending."""
        return self.id if self.id is not None else self.correlation_id

    def is_liked_by(self, actor_id: str) -> bool:
        return actor_id in self.liked_by


class CommentCreate(BaseModel):
    """Schema for creating a new top-level comment."""
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(..., alias="productId")
    content: str = Field(..., min_length=1)


class CommentReply(BaseModel):
    """Schema for replying to a top-level comment."""
    content: str = Field(..., min_length=1)


class CommentUpdate(BaseModel):
    """Schema for editing a comment."""
    content: str = Field(..., min_length=1)


class LikeResult(BaseModel):
    """Remote answer to a like or unlike command."""
    model_config = ConfigDict(populate_by_name=True)

    comment_id: str
    liked: bool
    like_count: Optional[int] = Field(None, ge=0, alias="likeCount")
    comment: Optional[Comment] = None


# Enable forward references for recursive model
Comment.model_rebuild()

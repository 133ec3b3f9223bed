"""
Change events produced by reconciliation and consumed by subscribers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, List, Optional, Union

from comment_sync.schemas.comment import Comment


class ConnectionStatus(str, Enum):
    """Connection status reported to subscribers."""
    # reserved for a push transport; polling never reports it
    REALTIME = "realtime"
    POLLING = "polling"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class CommentInserted:
    """A comment or reply observed for the first time."""
    comment: Comment

    @property
    def comment_id(self) -> str:
        return self.comment.id

    @property
    def parent_id(self) -> Optional[str]:
        return self.comment.parent_id


@dataclass(frozen=True)
class CommentUpdated:
    """A comment whose content changed remotely."""
    comment_id: str
    content: str
    updated_at: datetime
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class CommentDeleted:
    """A comment or reply that disappeared from the snapshot."""
    comment_id: str
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class LikeChanged:
    """A comment whose authoritative like count changed."""
    comment_id: str
    like_count: int
    liked_by: FrozenSet[str] = frozenset()
    parent_id: Optional[str] = None


@dataclass
class ChangeSet:
    """All events computed by one reconciliation cycle."""
    inserted: List[CommentInserted] = field(default_factory=list)
    updated: List[CommentUpdated] = field(default_factory=list)
    deleted: List[CommentDeleted] = field(default_factory=list)
    like_changed: List[LikeChanged] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted or self.like_changed)

    @property
    def total(self) -> int:
        return len(self.inserted) + len(self.updated) + len(self.deleted) + len(self.like_changed)


Handler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class SubscriptionCallbacks:
    """
    Subscriber callbacks. Each may be a plain function or a coroutine
    function; missing callbacks are skipped.
    """
    on_insert: Optional[Handler] = None
    on_update: Optional[Handler] = None
    on_delete: Optional[Handler] = None
    on_like_change: Optional[Handler] = None
    on_status_change: Optional[Handler] = None
    on_initial: Optional[Handler] = None

"""
Snapshot fetching: full, self-consistent reads of one comment thread.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from comment_sync.schemas.comment import Comment
from comment_sync.services.repository import ThreadRepository

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ThreadSnapshot:
    """Top-level comments and per-parent replies observed by one full fetch."""
    thread_id: str
    top_level: List[Comment]
    replies: Dict[str, List[Comment]] = field(default_factory=dict)
    failed_parents: Set[str] = field(default_factory=set)
    observed_at: Optional[datetime] = None

    @property
    def reply_count(self) -> int:
        return sum(len(replies) for replies in self.replies.values())

    def as_tree(self) -> List[Comment]:
        """Top-level comments with their ``replies`` populated (deep copies)."""
        tree = []
        for comment in self.top_level:
            node = comment.model_copy(deep=True)
            node.replies = [reply.model_copy(deep=True) for reply in self.replies.get(comment.id, [])]
            tree.append(node)
        return tree


class SnapshotFetcher:
    """Pulls complete listings of a thread from the repository."""

    def __init__(self, repository: ThreadRepository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    async def fetch_top_level(self, thread_id: str) -> List[Comment]:
        """
        Fetch the top-level comments of a thread, newest first.

        Raises:
            NotFoundError: If the thread does not exist
            NetworkError: If the repository cannot be reached
        """
        comments = await self.repository.list_top_level(thread_id)
        normalized = [
            comment.model_copy(update={"thread_id": comment.thread_id or thread_id, "replies": []})
            for comment in comments
            if comment.parent_id is None
        ]
        return sorted(normalized, key=lambda c: c.created_at, reverse=True)

    async def fetch_replies(self, comment_id: str, thread_id: Optional[str] = None) -> List[Comment]:
        """
        Fetch the replies of one top-level comment, oldest first.

        Raises:
            NotFoundError: If the parent comment does not exist
            NetworkError: If the repository cannot be reached
        """
        replies = await self.repository.list_replies(comment_id)
        normalized = [
            reply.model_copy(update={
                "parent_id": comment_id,
                "thread_id": reply.thread_id or thread_id,
                "replies": [],
            })
            for reply in replies
        ]
        return sorted(normalized, key=lambda r: r.created_at)

    async def fetch_thread(self, thread_id: str) -> ThreadSnapshot:
        """
        Fetch the whole thread: top level first, then every parent's replies.

        A reply fetch failure is logged and recorded in ``failed_parents``; it
        does not abort the rest of the snapshot. A top-level failure propagates.
        """
        observed_at = self.clock()
        top_level = await self.fetch_top_level(thread_id)

        replies: Dict[str, List[Comment]] = {}
        failed_parents: Set[str] = set()
        for comment in top_level:
            try:
                replies[comment.id] = await self.fetch_replies(comment.id, thread_id)
            except Exception as e:
                logger.error(f"Error fetching replies for comment {comment.id}: {e}")
                failed_parents.add(comment.id)

        return ThreadSnapshot(
            thread_id=thread_id,
            top_level=top_level,
            replies=replies,
            failed_parents=failed_parents,
            observed_at=observed_at,
        )

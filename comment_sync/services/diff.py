"""
Snapshot diffing: turns two consecutive full snapshots into change events.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from comment_sync.core.exceptions import InternalError
from comment_sync.schemas.comment import Comment
from comment_sync.schemas.events import (
    ChangeSet, CommentDeleted, CommentInserted, CommentUpdated, LikeChanged
)
from comment_sync.services.snapshot import ThreadSnapshot

logger = logging.getLogger(__name__)


class DiffEngine:
    """
    Previously observed state of one thread, and the diff against it.

    Top-level inserts are found by locating the previous head in the new
    list: everything in front of it is new. When the previous head is gone,
    only the new head is reported. This is deliberately not a set difference;
    comments pushed below the head in the same cycle as a head deletion are
    not reported.

    A parent whose replies have never loaded (the fetch failed at seed time,
    or on the tick that first saw the parent) has an unknown reply set. The
    first successful load reports every reply of that parent as inserted,
    regardless of the watermark.
    """

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        self._seeded = False
        self._top_level_ids: List[str] = []
        self._updated_at: Dict[str, datetime] = {}
        self._like_counts: Dict[str, int] = {}
        self._reply_ids: Dict[str, List[str]] = {}
        self._reply_watermark: Optional[datetime] = None
        self._unknown_parents: Set[str] = set()

    @property
    def is_seeded(self) -> bool:
        return self._seeded

    @property
    def head_id(self) -> Optional[str]:
        return self._top_level_ids[0] if self._top_level_ids else None

    @property
    def reply_watermark(self) -> Optional[datetime]:
        return self._reply_watermark

    def reply_ids(self, parent_id: str) -> List[str]:
        return list(self._reply_ids.get(parent_id, []))

    def replies_unknown(self, parent_id: str) -> bool:
        return parent_id in self._unknown_parents

    def seed(self, snapshot: ThreadSnapshot) -> None:
        """Record the initial snapshot without producing any events."""
        self._replace_state(snapshot)
        self._seeded = True
        logger.debug(
            f"Seeded diff state for thread {self.thread_id} with "
            f"{len(snapshot.top_level)} comments and {snapshot.reply_count} replies"
        )

    def diff(self, snapshot: ThreadSnapshot) -> ChangeSet:
        """
        Compute the changes between the recorded state and ``snapshot``, then
        make ``snapshot`` the recorded state.

        Raises:
            InternalError: If called before ``seed``
        """
        if not self._seeded:
            raise InternalError(f"Diff state for thread {self.thread_id} was never seeded")

        changes = ChangeSet()
        previous_ids = set(self._top_level_ids)
        current_ids = {comment.id for comment in snapshot.top_level}

        for comment in self._new_top_level(snapshot.top_level, previous_ids):
            changes.inserted.append(CommentInserted(comment=comment))

        for comment_id in self._top_level_ids:
            if comment_id not in current_ids:
                changes.deleted.append(CommentDeleted(comment_id=comment_id))

        for parent in snapshot.top_level:
            if parent.id in snapshot.failed_parents:
                continue
            current_replies = snapshot.replies.get(parent.id, [])
            previous_reply_ids = self._reply_ids.get(parent.id, [])
            known = set(previous_reply_ids)
            first_load = parent.id in self._unknown_parents

            for reply in current_replies:
                if reply.id in known:
                    continue
                if first_load or self._after_watermark(reply.created_at):
                    changes.inserted.append(CommentInserted(comment=reply))

            current_reply_ids = {reply.id for reply in current_replies}
            for reply_id in previous_reply_ids:
                if reply_id not in current_reply_ids:
                    changes.deleted.append(CommentDeleted(comment_id=reply_id, parent_id=parent.id))

        for comment in self._observed(snapshot):
            self._compare(comment, changes)

        self._replace_state(snapshot)
        return changes

    def _new_top_level(self, current: List[Comment], previous_ids: set) -> List[Comment]:
        if not current:
            return []
        head = self.head_id
        if head is not None:
            for index, comment in enumerate(current):
                if comment.id == head:
                    return current[:index]
        # previous head missing: report the new head only
        return [current[0]] if current[0].id not in previous_ids else []

    def _after_watermark(self, created_at: datetime) -> bool:
        return self._reply_watermark is None or created_at > self._reply_watermark

    def _compare(self, comment: Comment, changes: ChangeSet) -> None:
        recorded_update = self._updated_at.get(comment.id)
        if recorded_update is not None and recorded_update != comment.updated_at:
            changes.updated.append(CommentUpdated(
                comment_id=comment.id,
                content=comment.content,
                updated_at=comment.updated_at,
                parent_id=comment.parent_id,
            ))

        recorded_likes = self._like_counts.get(comment.id)
        if recorded_likes is not None and recorded_likes != comment.like_count:
            changes.like_changed.append(LikeChanged(
                comment_id=comment.id,
                like_count=comment.like_count,
                liked_by=frozenset(comment.liked_by),
                parent_id=comment.parent_id,
            ))

    def _observed(self, snapshot: ThreadSnapshot) -> Iterable[Comment]:
        for comment in snapshot.top_level:
            yield comment
            if comment.id not in snapshot.failed_parents:
                yield from snapshot.replies.get(comment.id, [])

    def _replace_state(self, snapshot: ThreadSnapshot) -> None:
        top_level_ids = [comment.id for comment in snapshot.top_level]
        updated_at: Dict[str, datetime] = {}
        like_counts: Dict[str, int] = {}
        reply_ids: Dict[str, List[str]] = {}
        unknown_parents: Set[str] = set()

        for comment in self._observed(snapshot):
            updated_at[comment.id] = comment.updated_at
            like_counts[comment.id] = comment.like_count

        for parent_id in top_level_ids:
            if parent_id in snapshot.failed_parents:
                if parent_id in self._unknown_parents or parent_id not in self._reply_ids:
                    unknown_parents.add(parent_id)
                # keep what was known about this parent until its replies load again
                reply_ids[parent_id] = list(self._reply_ids.get(parent_id, []))
                for reply_id in reply_ids[parent_id]:
                    if reply_id in self._updated_at:
                        updated_at[reply_id] = self._updated_at[reply_id]
                    if reply_id in self._like_counts:
                        like_counts[reply_id] = self._like_counts[reply_id]
            else:
                reply_ids[parent_id] = [reply.id for reply in snapshot.replies.get(parent_id, [])]

        watermark = snapshot.observed_at
        if watermark is None:
            created = [reply.created_at for replies in snapshot.replies.values() for reply in replies]
            watermark = max(created + ([self._reply_watermark] if self._reply_watermark else []), default=None)

        self._top_level_ids = top_level_ids
        self._updated_at = updated_at
        self._like_counts = like_counts
        self._reply_ids = reply_ids
        self._unknown_parents = unknown_parents
        self._reply_watermark = watermark


class DiffEngineRegistry:
    """One DiffEngine per thread id; engines never share state."""

    def __init__(self):
        self._engines: Dict[str, DiffEngine] = {}

    def get(self, thread_id: str) -> DiffEngine:
        engine = self._engines.get(thread_id)
        if engine is None:
            engine = DiffEngine(thread_id)
            self._engines[thread_id] = engine
        return engine

    def discard(self, thread_id: str) -> None:
        self._engines.pop(thread_id, None)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)

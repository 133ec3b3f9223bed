"""
Thread store: the client-held comment tree.

Local mutations are applied optimistically, sent to the repository and then
confirmed. Reconciliation events are merged by id, so the actor's own
confirmed comments arriving again from a poll never duplicate.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from comment_sync.core.config import settings
from comment_sync.core.exceptions import (
    ForbiddenError, InternalError, NotFoundError, ServiceException,
    UnauthenticatedError, ValidationError
)
from comment_sync.schemas.comment import AuthorInfo, Comment
from comment_sync.schemas.events import (
    CommentDeleted, CommentInserted, CommentUpdated, ConnectionStatus,
    LikeChanged, SubscriptionCallbacks
)
from comment_sync.services.authors import AuthorResolver
from comment_sync.services.reconciliation import ReconciliationLoop, Subscription, invoke_handler
from comment_sync.services.repository import ThreadRepository
from comment_sync.services.snapshot import utcnow
from comment_sync.services.submission import SubmissionKind, SubmissionTracker

logger = logging.getLogger(__name__)


@dataclass
class ThreadState:
    """Comments of one thread, newest first, with their replies oldest first."""
    thread_id: str
    comments: List[Comment] = field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    subscription: Optional[Subscription] = None


def insert_top_level(comments: List[Comment], comment: Comment) -> None:
    """Insert keeping newest-first order; ties go in front."""
    for index, existing in enumerate(comments):
        if existing.created_at <= comment.created_at:
            comments.insert(index, comment)
            return
    comments.append(comment)


def insert_reply(replies: List[Comment], reply: Comment) -> None:
    """Insert keeping oldest-first order; ties go behind."""
    for index, existing in enumerate(replies):
        if existing.created_at > reply.created_at:
            replies.insert(index, reply)
            return
    replies.append(reply)


class ThreadStore:
    """Comment trees for one acting actor, namespaced by thread id."""

    def __init__(
        self,
        repository: ThreadRepository,
        actor_id: Optional[str],
        loop: Optional[ReconciliationLoop] = None,
        tracker: Optional[SubmissionTracker] = None,
        max_length: Optional[int] = None,
        rollback_edit_delete: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
        author_resolver: Optional[AuthorResolver] = None
    ):
        self.repository = repository
        self.actor_id = actor_id
        self.loop = loop
        self.tracker = tracker or SubmissionTracker()
        self.max_length = max_length or settings.MAX_COMMENT_LENGTH
        self.rollback_edit_delete = (
            rollback_edit_delete if rollback_edit_delete is not None
            else settings.ROLLBACK_EDIT_DELETE_ON_FAILURE
        )
        self.clock = clock
        self.author_resolver = author_resolver
        self._threads: Dict[str, ThreadState] = {}

    # Reads

    def get_thread(self, thread_id: str) -> List[Comment]:
        """Deep copy of a thread's comment tree."""
        state = self._threads.get(thread_id)
        if state is None:
            return []
        return [comment.model_copy(deep=True) for comment in state.comments]

    def find(self, comment_id: str) -> Optional[Comment]:
        located = self._locate(comment_id)
        return located[2].model_copy(deep=True) if located else None

    def connection_status(self, thread_id: str) -> ConnectionStatus:
        state = self._threads.get(thread_id)
        return state.status if state else ConnectionStatus.DISCONNECTED

    def last_error(self, thread_id: str) -> Optional[str]:
        state = self._threads.get(thread_id)
        return state.last_error if state else None

    def load(self, thread_id: str, comments: List[Comment]) -> None:
        """
        Replace a thread's confirmed comments with a loaded tree. Pending
        local comments survive the replacement, pending replies included
        when their parent is still in the loaded tree.
        """
        state = self._thread(thread_id)
        pending = [comment for comment in state.comments if comment.pending]
        pending_replies = {
            comment.id: [reply for reply in comment.replies if reply.pending]
            for comment in state.comments
            if not comment.pending
        }
        loaded = sorted(
            (comment.model_copy(deep=True) for comment in comments if comment.parent_id is None),
            key=lambda c: c.created_at,
            reverse=True,
        )
        for comment in loaded:
            comment.replies.sort(key=lambda r: r.created_at)
            for reply in pending_replies.get(comment.id, []):
                insert_reply(comment.replies, reply)
        state.comments[:] = pending + loaded
        if self.author_resolver is not None:
            self.author_resolver.remember_embedded(state.comments)

    def clear(self, thread_id: str) -> None:
        """Forget a thread and stop its subscription."""
        state = self._threads.pop(thread_id, None)
        if state is not None and state.subscription is not None:
            state.subscription.unsubscribe()

    # Subscription

    async def subscribe(self, thread_id: str, callbacks: Optional[SubscriptionCallbacks] = None) -> Subscription:
        """
        Load a thread and keep it reconciled.

        ``callbacks`` only receive changes that actually altered the store:
        an insert for an id already present, or a like change equal to the
        local value, is merged silently.
        """
        if self.loop is None:
            self.loop = ReconciliationLoop(repository=self.repository)
        listener = callbacks or SubscriptionCallbacks()
        state = self._thread(thread_id)

        async def on_initial(comments: List[Comment]) -> None:
            self.load(thread_id, comments)
            await self.fill_authors(thread_id)
            await invoke_handler(listener.on_initial, self.get_thread(thread_id))

        async def on_insert(event: CommentInserted) -> None:
            if self.apply_insert(thread_id, event):
                author = await self._author_for(event.comment)
                if author is not None:
                    self._set_author(thread_id, event.comment.id, author)
                    event = CommentInserted(comment=event.comment.model_copy(update={"author": author}))
                await invoke_handler(listener.on_insert, event)

        async def on_update(event: CommentUpdated) -> None:
            if self.apply_update(thread_id, event):
                await invoke_handler(listener.on_update, event)

        async def on_delete(event: CommentDeleted) -> None:
            if self.apply_delete(thread_id, event):
                await invoke_handler(listener.on_delete, event)

        async def on_like_change(event: LikeChanged) -> None:
            if self.apply_like_change(thread_id, event):
                await invoke_handler(listener.on_like_change, event)

        async def on_status_change(status: ConnectionStatus) -> None:
            state.status = status
            await invoke_handler(listener.on_status_change, status)

        subscription = await self.loop.subscribe(thread_id, SubscriptionCallbacks(
            on_insert=on_insert,
            on_update=on_update,
            on_delete=on_delete,
            on_like_change=on_like_change,
            on_status_change=on_status_change,
            on_initial=on_initial,
        ))
        state.subscription = subscription
        return subscription

    # Merge rules

    def apply_insert(self, thread_id: str, event: CommentInserted) -> bool:
        comment = event.comment
        if comment.id is None or self._locate(comment.id, thread_id) is not None:
            return False
        state = self._thread(thread_id)
        if comment.parent_id is None:
            insert_top_level(state.comments, comment.model_copy(update={"replies": []}, deep=True))
            return True

        located = self._locate(comment.parent_id, thread_id)
        if located is None or located[1] is not None:
            logger.debug(f"Dropping reply {comment.id}: parent {comment.parent_id} not in thread {thread_id}")
            return False
        insert_reply(located[2].replies, comment.model_copy(deep=True))
        return True

    def apply_update(self, thread_id: str, event: CommentUpdated) -> bool:
        located = self._locate(event.comment_id, thread_id)
        if located is None:
            return False
        comment = located[2]
        if comment.content == event.content and comment.updated_at == event.updated_at:
            return False
        if self.tracker.is_submitting(SubmissionKind.EDIT, event.comment_id):
            logger.debug(f"Deferring remote update of comment {event.comment_id} until local edit settles")
            return False
        comment.content = event.content
        comment.updated_at = event.updated_at
        return True

    def apply_delete(self, thread_id: str, event: CommentDeleted) -> bool:
        return self._remove(event.comment_id, thread_id) is not None

    def apply_like_change(self, thread_id: str, event: LikeChanged) -> bool:
        located = self._locate(event.comment_id, thread_id)
        if located is None:
            return False
        comment = located[2]
        if comment.like_count == event.like_count and comment.liked_by == set(event.liked_by):
            return False
        comment.like_count = event.like_count
        comment.liked_by = set(event.liked_by)
        return True

    # Authors

    async def fill_authors(self, thread_id: str) -> None:
        """Resolve display information for comments that carry only an author id."""
        if self.author_resolver is None:
            return
        state = self._threads.get(thread_id)
        if state is None:
            return
        missing = [
            comment
            for top in list(state.comments)
            for comment in [top] + top.replies
            if comment.author is None
        ]
        for comment in missing:
            comment.author = await self.author_resolver.resolve(comment.author_id)

    async def _author_for(self, comment: Comment) -> Optional[AuthorInfo]:
        if self.author_resolver is None or comment.author is not None:
            return None
        return await self.author_resolver.resolve(comment.author_id)

    def _set_author(self, thread_id: str, comment_id: str, author: AuthorInfo) -> None:
        located = self._locate(comment_id, thread_id)
        if located is not None and located[2].author is None:
            located[2].author = author

    async def _with_author(self, comment: Comment) -> Comment:
        author = await self._author_for(comment)
        if author is None:
            return comment
        return comment.model_copy(update={"author": author})

    # Mutations

    async def create(self, thread_id: str, content: str) -> Comment:
        """
        Create a top-level comment.

        The pending comment appears at the head of the thread immediately and
        is swapped for the confirmed one by correlation id.

        Raises:
            UnauthenticatedError: If there is no acting actor
            ValidationError: If content is empty or too long
            DuplicateError: If a create is already in flight for the thread
            NotFoundError, NetworkError, ServerError: If the remote create fails
        """
        self._require_actor()
        text = self._validate_content(content)

        async with self.tracker.track(SubmissionKind.CREATE, thread_id):
            state = self._thread(thread_id)
            pending = self._pending_comment(thread_id, None, text)
            state.comments.insert(0, pending)
            state.last_error = None

            try:
                confirmed = await self.repository.create(thread_id, text)
            except Exception as e:
                self._discard_pending(thread_id, None, pending.key)
                raise self._failure(thread_id, "create comment", e)

            confirmed = await self._with_author(confirmed)
            result = self._confirm(thread_id, None, pending.key, confirmed)
            logger.info(f"Created comment {result.id} on thread {thread_id} by actor {self.actor_id}")
            return result

    async def reply(self, parent_id: str, content: str) -> Comment:
        """
        Reply to a top-level comment. The pending reply is appended to the
        parent's replies and swapped on confirmation.

        Raises:
            UnauthenticatedError: If there is no acting actor
            ValidationError: If content is invalid or the parent is itself a reply
            NotFoundError: If the parent is not in the store or remotely
            DuplicateError: If a reply to the same parent is in flight
        """
        self._require_actor()
        text = self._validate_content(content)
        state, grandparent, parent = self._require(parent_id)
        if grandparent is not None:
            raise ValidationError("Replies cannot have replies")
        thread_id = state.thread_id

        async with self.tracker.track(SubmissionKind.REPLY, parent_id):
            pending = self._pending_comment(thread_id, parent_id, text)
            insert_reply(parent.replies, pending)
            state.last_error = None

            try:
                confirmed = await self.repository.reply(parent_id, text)
            except Exception as e:
                self._discard_pending(thread_id, parent_id, pending.key)
                raise self._failure(thread_id, "reply to comment", e)

            confirmed = await self._with_author(confirmed)
            result = self._confirm(thread_id, parent_id, pending.key, confirmed)
            logger.info(f"Created reply {result.id} to comment {parent_id} by actor {self.actor_id}")
            return result

    async def edit(self, comment_id: str, content: str) -> Comment:
        """
        Edit a comment's content.

        The new content and ``updated_at`` are applied immediately. On remote
        failure they stay in place unless rollback is enabled in settings.

        Raises:
            UnauthenticatedError, ValidationError, NotFoundError, ForbiddenError,
            DuplicateError, NetworkError, ServerError
        """
        self._require_actor()
        text = self._validate_content(content)
        state, _, comment = self._require(comment_id)
        self._require_author(comment)

        async with self.tracker.track(SubmissionKind.EDIT, comment_id):
            previous = (comment.content, comment.updated_at)
            comment.content = text
            comment.updated_at = self.clock()
            state.last_error = None

            try:
                confirmed = await self.repository.edit(comment_id, text)
            except Exception as e:
                if self.rollback_edit_delete:
                    located = self._locate(comment_id, state.thread_id)
                    if located is not None and located[2].content == text:
                        located[2].content, located[2].updated_at = previous
                raise self._failure(state.thread_id, "edit comment", e)

            located = self._locate(comment_id, state.thread_id)
            if located is None:
                return confirmed
            located[2].content = confirmed.content
            located[2].updated_at = confirmed.updated_at
            logger.info(f"Updated comment {comment_id} by actor {self.actor_id}")
            return located[2].model_copy(deep=True)

    async def delete(self, comment_id: str) -> None:
        """
        Delete a comment, and with a top-level comment all of its replies.

        The comment disappears immediately. On remote failure it stays gone
        unless rollback is enabled in settings.

        Raises:
            UnauthenticatedError, NotFoundError, ForbiddenError, DuplicateError,
            NetworkError, ServerError
        """
        self._require_actor()
        state, parent, comment = self._require(comment_id)
        self._require_author(comment)
        parent_id = parent.id if parent is not None else None

        async with self.tracker.track(SubmissionKind.DELETE, comment_id):
            self._remove(comment_id, state.thread_id)
            state.last_error = None

            try:
                await self.repository.delete(comment_id)
            except Exception as e:
                if self.rollback_edit_delete:
                    self._restore(state.thread_id, parent_id, comment)
                raise self._failure(state.thread_id, "delete comment", e)

            logger.info(f"Deleted comment {comment_id} by actor {self.actor_id}")

    async def like(self, comment_id: str) -> Comment:
        """
        Toggle the actor's like: likes the comment, or unlikes it when the
        actor already likes it. The count is never incremented twice.

        Raises:
            UnauthenticatedError, NotFoundError, DuplicateError, NetworkError, ServerError
        """
        actor_id = self._require_actor()
        _, _, comment = self._require(comment_id)
        return await self._submit_like(comment_id, not comment.is_liked_by(actor_id))

    async def unlike(self, comment_id: str) -> Comment:
        """Remove the actor's like; a no-op when the actor does not like it."""
        actor_id = self._require_actor()
        _, _, comment = self._require(comment_id)
        if not comment.is_liked_by(actor_id):
            return comment.model_copy(deep=True)
        return await self._submit_like(comment_id, False)

    async def _submit_like(self, comment_id: str, liked: bool) -> Comment:
        actor_id = self.actor_id
        async with self.tracker.track(SubmissionKind.LIKE, comment_id):
            state, _, comment = self._require(comment_id)
            previous = (comment.like_count, set(comment.liked_by))
            if liked:
                comment.liked_by.add(actor_id)
                comment.like_count += 1
            else:
                comment.liked_by.discard(actor_id)
                comment.like_count = max(0, comment.like_count - 1)
            state.last_error = None

            try:
                if liked:
                    result = await self.repository.like(comment_id)
                else:
                    result = await self.repository.unlike(comment_id)
            except Exception as e:
                located = self._locate(comment_id, state.thread_id)
                if located is not None:
                    located[2].like_count, located[2].liked_by = previous
                raise self._failure(state.thread_id, "like comment" if liked else "unlike comment", e)

            located = self._locate(comment_id, state.thread_id)
            if located is None:
                raise NotFoundError(f"Comment {comment_id} was deleted")
            target = located[2]
            if result.like_count is not None:
                target.like_count = result.like_count
            if result.liked:
                target.liked_by.add(actor_id)
            else:
                target.liked_by.discard(actor_id)
            return target.model_copy(deep=True)

    # Helpers

    def _thread(self, thread_id: str) -> ThreadState:
        state = self._threads.get(thread_id)
        if state is None:
            state = ThreadState(thread_id=thread_id)
            self._threads[thread_id] = state
        return state

    def _locate(
        self, comment_id: str, thread_id: Optional[str] = None
    ) -> Optional[Tuple[ThreadState, Optional[Comment], Comment]]:
        """Find a confirmed comment: (thread state, parent or None, comment)."""
        if thread_id is not None:
            states = [self._threads[thread_id]] if thread_id in self._threads else []
        else:
            states = list(self._threads.values())
        for state in states:
            for comment in state.comments:
                if comment.id == comment_id:
                    return state, None, comment
                for reply in comment.replies:
                    if reply.id == comment_id:
                        return state, comment, reply
        return None

    def _require(self, comment_id: str) -> Tuple[ThreadState, Optional[Comment], Comment]:
        located = self._locate(comment_id)
        if located is None:
            raise NotFoundError(f"Comment with ID {comment_id} not found")
        return located

    def _require_actor(self) -> str:
        if not self.actor_id:
            raise UnauthenticatedError("Login required to modify comments")
        return self.actor_id

    def _require_author(self, comment: Comment) -> None:
        if comment.author_id != self.actor_id:
            raise ForbiddenError("Only the comment author can modify this comment")

    def _validate_content(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Comment content cannot be empty")
        if len(text) > self.max_length:
            raise ValidationError(f"Comment content exceeds {self.max_length} characters")
        return text

    def _pending_comment(self, thread_id: str, parent_id: Optional[str], content: str) -> Comment:
        now = self.clock()
        return Comment(
            id=None,
            thread_id=thread_id,
            parent_id=parent_id,
            author_id=self.actor_id,
            content=content,
            created_at=now,
            updated_at=now,
            like_count=0,
            liked_by=set(),
            pending=True,
            correlation_id=f"local-{uuid.uuid4()}",
        )

    def _container(self, thread_id: str, parent_id: Optional[str]) -> Optional[List[Comment]]:
        if parent_id is None:
            state = self._threads.get(thread_id)
            return state.comments if state is not None else None
        located = self._locate(parent_id, thread_id)
        return located[2].replies if located is not None else None

    def _discard_pending(self, thread_id: str, parent_id: Optional[str], key: str) -> None:
        container = self._container(thread_id, parent_id)
        if container is None:
            return
        container[:] = [c for c in container if not (c.pending and c.key == key)]

    def _confirm(
        self, thread_id: str, parent_id: Optional[str], key: str, confirmed: Comment
    ) -> Comment:
        """Swap the pending entry for the confirmed comment."""
        confirmed = confirmed.model_copy(update={
            "thread_id": confirmed.thread_id or thread_id,
            "parent_id": parent_id,
            "pending": False,
            "correlation_id": None,
            "replies": [],
        }, deep=True)
        self._discard_pending(thread_id, parent_id, key)

        container = self._container(thread_id, parent_id)
        if container is None:
            # parent deleted or thread cleared while the request was in flight
            return confirmed
        existing = next((c for c in container if c.id == confirmed.id), None)
        if existing is not None:
            # a poll already delivered this comment
            return existing.model_copy(deep=True)
        if parent_id is None:
            insert_top_level(container, confirmed)
        else:
            insert_reply(container, confirmed)
        return confirmed.model_copy(deep=True)

    def _remove(self, comment_id: str, thread_id: str) -> Optional[Comment]:
        located = self._locate(comment_id, thread_id)
        if located is None:
            return None
        state, parent, comment = located
        container = parent.replies if parent is not None else state.comments
        container[:] = [c for c in container if c is not comment]
        return comment

    def _restore(self, thread_id: str, parent_id: Optional[str], comment: Comment) -> None:
        if comment.id is None or self._locate(comment.id, thread_id) is not None:
            return
        container = self._container(thread_id, parent_id)
        if container is None:
            return
        if parent_id is None:
            insert_top_level(container, comment)
        else:
            insert_reply(container, comment)

    def _failure(self, thread_id: str, action: str, error: Exception) -> ServiceException:
        state = self._threads.get(thread_id)
        if state is not None:
            state.last_error = str(error)
        logger.error(f"Failed to {action} on thread {thread_id}: {error}")
        if isinstance(error, ServiceException):
            return error
        return InternalError(f"Failed to {action}")

"""
Pytest configuration and shared fixtures.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from comment_sync.core.exceptions import NetworkError, NotFoundError
from comment_sync.schemas.comment import AuthorInfo, Comment, LikeResult
from comment_sync.schemas.events import SubscriptionCallbacks
from comment_sync.services.reconciliation import ReconciliationLoop
from comment_sync.services.snapshot import SnapshotFetcher
from comment_sync.services.thread_store import ThreadStore


BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
THREAD_ID = "listing-1"
ACTOR_ID = "user-1"
OTHER_ACTOR_ID = "user-2"


# Factory fixtures for creating test data
class CommentFactory:
    """Factory for creating test comments."""

    @staticmethod
    def create_comment(
        comment_id: str = None,
        thread_id: str = THREAD_ID,
        parent_id: str = None,
        author_id: str = OTHER_ACTOR_ID,
        content: str = None,
        created_at: datetime = None,
        updated_at: datetime = None,
        like_count: int = 0,
        liked_by: Iterable[str] = (),
        **kwargs
    ) -> Comment:
        """Create a confirmed comment instance."""
        comment_id = comment_id or f"c-{uuid.uuid4().hex[:8]}"
        created_at = created_at or BASE_TIME
        return Comment(
            id=comment_id,
            thread_id=thread_id,
            parent_id=parent_id,
            author_id=author_id,
            content=content or f"Comment {comment_id}",
            created_at=created_at,
            updated_at=updated_at or created_at,
            like_count=like_count,
            liked_by=set(liked_by),
            **kwargs
        )

    @staticmethod
    def at(minutes: float) -> datetime:
        """Timestamp ``minutes`` after the base time."""
        return BASE_TIME + timedelta(minutes=minutes)


class FakeThreadRepository:
    """
    In-memory stand-in for the remote comment API.

    Timestamps come from a manual clock; every write advances it by one
    second. ``failures`` maps an operation name to the exception it raises,
    ``list_gate`` and ``mutation_gate`` hold calls until set.
    """

    def __init__(self, actor_id: str = ACTOR_ID):
        self.actor_id = actor_id
        self.now = BASE_TIME
        self.top_level: Dict[str, List[Comment]] = {}
        self.replies: Dict[str, List[Comment]] = {}
        self.users: Dict[str, AuthorInfo] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, Exception] = {}
        self.reply_failures: Set[str] = set()
        self.list_gate: Optional[asyncio.Event] = None
        self.mutation_gate: Optional[asyncio.Event] = None
        self._counter = 0

    def clock(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def add_thread(self, thread_id: str = THREAD_ID) -> None:
        self.top_level.setdefault(thread_id, [])

    def add_user(self, user_id: str, name: str) -> AuthorInfo:
        self.users[user_id] = AuthorInfo(id=user_id, name=name)
        return self.users[user_id]

    def add_comment(
        self,
        thread_id: str = THREAD_ID,
        comment_id: str = None,
        content: str = None,
        author_id: str = OTHER_ACTOR_ID,
        parent_id: str = None,
        like_count: int = 0,
        liked_by: Iterable[str] = ()
    ) -> Comment:
        """Add a comment server-side, as another client would."""
        self._counter += 1
        created_at = self.advance()
        comment = CommentFactory.create_comment(
            comment_id=comment_id or f"srv-{self._counter}",
            thread_id=thread_id,
            parent_id=parent_id,
            author_id=author_id,
            content=content,
            created_at=created_at,
            like_count=like_count,
            liked_by=liked_by,
        )
        if parent_id is None:
            self.top_level.setdefault(thread_id, []).append(comment)
        else:
            self.replies.setdefault(parent_id, []).append(comment)
        return comment

    def edit_remote(self, comment_id: str, content: str) -> Comment:
        container, index = self._find(comment_id)
        container[index] = container[index].model_copy(
            update={"content": content, "updated_at": self.advance()}
        )
        return container[index]

    def set_likes(self, comment_id: str, liked_by: Iterable[str]) -> Comment:
        container, index = self._find(comment_id)
        liked = set(liked_by)
        container[index] = container[index].model_copy(
            update={"liked_by": liked, "like_count": len(liked)}
        )
        return container[index]

    def remove(self, comment_id: str) -> None:
        container, index = self._find(comment_id)
        del container[index]
        self.replies.pop(comment_id, None)

    def _find(self, comment_id: str) -> Tuple[List[Comment], int]:
        for container in list(self.top_level.values()) + list(self.replies.values()):
            for index, comment in enumerate(container):
                if comment.id == comment_id:
                    return container, index
        raise NotFoundError(f"Comment with ID {comment_id} not found")

    async def _guard(self, operation: str, argument: Any, gate: Optional[asyncio.Event] = None) -> None:
        self.calls.append((operation, argument))
        if gate is not None:
            await gate.wait()
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def list_top_level(self, thread_id: str) -> List[Comment]:
        await self._guard("list_top_level", thread_id, self.list_gate)
        if thread_id not in self.top_level:
            raise NotFoundError(f"Listing {thread_id} not found")
        comments = sorted(self.top_level[thread_id], key=lambda c: c.created_at, reverse=True)
        return [comment.model_copy(deep=True) for comment in comments]

    async def list_replies(self, comment_id: str) -> List[Comment]:
        await self._guard("list_replies", comment_id)
        if comment_id in self.reply_failures:
            raise NetworkError(f"Timed out loading replies of {comment_id}")
        return [reply.model_copy(deep=True) for reply in self.replies.get(comment_id, [])]

    async def create(self, thread_id: str, content: str) -> Comment:
        await self._guard("create", thread_id)
        comment = self.add_comment(thread_id, content=content, author_id=self.actor_id)
        if self.mutation_gate is not None:
            await self.mutation_gate.wait()
        return comment.model_copy(deep=True)

    async def reply(self, parent_id: str, content: str) -> Comment:
        await self._guard("reply", parent_id)
        self._find(parent_id)
        thread_id = next(
            (tid for tid, comments in self.top_level.items() if any(c.id == parent_id for c in comments)),
            None,
        )
        comment = self.add_comment(thread_id, content=content, author_id=self.actor_id, parent_id=parent_id)
        if self.mutation_gate is not None:
            await self.mutation_gate.wait()
        return comment.model_copy(deep=True)

    async def edit(self, comment_id: str, content: str) -> Comment:
        await self._guard("edit", comment_id, self.mutation_gate)
        return self.edit_remote(comment_id, content).model_copy(deep=True)

    async def delete(self, comment_id: str) -> None:
        await self._guard("delete", comment_id, self.mutation_gate)
        self.remove(comment_id)

    async def like(self, comment_id: str) -> LikeResult:
        await self._guard("like", comment_id, self.mutation_gate)
        container, index = self._find(comment_id)
        comment = self.set_likes(comment_id, container[index].liked_by | {self.actor_id})
        return LikeResult(comment_id=comment_id, liked=True, like_count=comment.like_count)

    async def unlike(self, comment_id: str) -> LikeResult:
        await self._guard("unlike", comment_id, self.mutation_gate)
        container, index = self._find(comment_id)
        comment = self.set_likes(comment_id, container[index].liked_by - {self.actor_id})
        return LikeResult(comment_id=comment_id, liked=False, like_count=comment.like_count)

    async def get_user(self, user_id: str) -> AuthorInfo:
        await self._guard("get_user", user_id)
        if user_id not in self.users:
            raise NotFoundError(f"User {user_id} not found")
        return self.users[user_id].model_copy()


class EventRecorder:
    """Collects subscriber callbacks in the order they fire."""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    def callbacks(self) -> SubscriptionCallbacks:
        return SubscriptionCallbacks(
            on_insert=lambda event: self.events.append(("insert", event)),
            on_update=lambda event: self.events.append(("update", event)),
            on_delete=lambda event: self.events.append(("delete", event)),
            on_like_change=lambda event: self.events.append(("like", event)),
            on_status_change=lambda status: self.events.append(("status", status)),
            on_initial=lambda comments: self.events.append(("initial", comments)),
        )

    def of(self, kind: str) -> List[Any]:
        return [payload for name, payload in self.events if name == kind]

    def changes(self) -> List[Tuple[str, Any]]:
        """Insert/update/delete/like events, without status or initial load."""
        return [(name, payload) for name, payload in self.events if name in ("insert", "update", "delete", "like")]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def comment_factory() -> type:
    return CommentFactory


@pytest.fixture
def repository() -> FakeThreadRepository:
    repo = FakeThreadRepository()
    repo.add_thread(THREAD_ID)
    return repo


@pytest.fixture
def fetcher(repository: FakeThreadRepository) -> SnapshotFetcher:
    return SnapshotFetcher(repository, clock=repository.clock)


@pytest_asyncio.fixture
async def reconciliation_loop(fetcher: SnapshotFetcher):
    """Loop with a long period; tests drive ticks through ``refresh``."""
    loop = ReconciliationLoop(fetcher=fetcher, interval=3600, backoff_factor=2.0, max_backoff=14400)
    yield loop
    await loop.close()


@pytest.fixture
def thread_store(repository: FakeThreadRepository, reconciliation_loop: ReconciliationLoop) -> ThreadStore:
    return ThreadStore(
        repository,
        actor_id=ACTOR_ID,
        loop=reconciliation_loop,
        clock=repository.clock,
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()

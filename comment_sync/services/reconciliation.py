"""
Reconciliation loop: polling as a stand-in for push delivery.

Every subscribed thread gets one timer task. Each tick fetches a full
snapshot, diffs it against the previous one and dispatches the resulting
events to the subscriber's callbacks.
"""
import asyncio
import inspect
import logging
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from comment_sync.core.config import settings
from comment_sync.core.exceptions import DuplicateError, NotFoundError
from comment_sync.core.logging import ReconciliationLogHandler, set_correlation_id
from comment_sync.schemas.comment import Comment
from comment_sync.schemas.events import ChangeSet, ConnectionStatus, Handler, SubscriptionCallbacks
from comment_sync.services.diff import DiffEngineRegistry
from comment_sync.services.repository import ThreadRepository
from comment_sync.services.snapshot import SnapshotFetcher

logger = logging.getLogger(__name__)


async def invoke_handler(handler: Optional[Handler], payload: Any) -> None:
    """Call a plain or coroutine callback; a missing callback is a no-op."""
    if handler is None:
        return
    result = handler(payload)
    if inspect.isawaitable(result):
        await result


class SubscriptionState(str, Enum):
    """Lifecycle of one subscription."""
    IDLE = "idle"
    POLLING = "polling"
    CANCELLED = "cancelled"


class Subscription:
    """Handle returned by ``ReconciliationLoop.subscribe``."""

    def __init__(self, loop: "ReconciliationLoop", thread_id: str, callbacks: SubscriptionCallbacks):
        self.id = str(uuid.uuid4())
        self.thread_id = thread_id
        self.callbacks = callbacks
        self.initial: List[Comment] = []
        self.status: Optional[ConnectionStatus] = None
        self.state = SubscriptionState.IDLE
        self.consecutive_failures = 0
        self.next_delay = loop.interval
        self.log = ReconciliationLogHandler(thread_id, self.id)
        self._loop = loop
        self._cancelled = False
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def unsubscribe(self) -> None:
        """Stop polling. No event is delivered after this returns."""
        self._loop._cancel(self)

    async def _emit(self, name: str, payload: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            await invoke_handler(callback, payload)
        except Exception as e:
            self.log.log_callback_error(name, e)

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        previous = self.status
        self.status = status
        self.log.log_status_change(previous.value if previous else "none", status.value)
        await self._emit("on_status_change", status)


class ReconciliationLoop:
    """
    Drives fetch -> diff -> dispatch cycles for subscribed threads.

    Fetch failures inside a tick never escape it: the connection status drops
    to ``disconnected``, the previous snapshot is kept and the next tick
    retries after a bounded exponential backoff.
    """

    def __init__(
        self,
        repository: Optional[ThreadRepository] = None,
        fetcher: Optional[SnapshotFetcher] = None,
        engines: Optional[DiffEngineRegistry] = None,
        interval: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        max_backoff: Optional[float] = None
    ):
        if fetcher is None:
            if repository is None:
                raise ValueError("Either a repository or a snapshot fetcher is required")
            fetcher = SnapshotFetcher(repository)
        self.fetcher = fetcher
        self.engines = engines or DiffEngineRegistry()
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.BACKOFF_FACTOR
        self.max_backoff = max_backoff if max_backoff is not None else settings.MAX_BACKOFF_SECONDS
        self._subscriptions: Dict[str, Subscription] = {}

    def get_subscription(self, thread_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(thread_id)

    async def subscribe(self, thread_id: str, callbacks: Optional[SubscriptionCallbacks] = None) -> Subscription:
        """
        Load a thread, seed its diff state and start polling it.

        Args:
            thread_id: Listing (thread) ID
            callbacks: Subscriber callbacks

        Returns:
            Subscription whose ``initial`` holds the loaded comment tree

        Raises:
            DuplicateError: If the thread is already subscribed on this loop
            NotFoundError, NetworkError: If the initial top-level load fails
        """
        if thread_id in self._subscriptions:
            raise DuplicateError(f"Thread {thread_id} is already subscribed")

        subscription = Subscription(self, thread_id, callbacks or SubscriptionCallbacks())
        self._subscriptions[thread_id] = subscription

        try:
            snapshot = await self.fetcher.fetch_thread(thread_id)
        except Exception:
            self._subscriptions.pop(thread_id, None)
            raise

        if subscription.cancelled:
            return subscription

        self.engines.get(thread_id).seed(snapshot)
        subscription.initial = snapshot.as_tree()
        subscription.log.log_initial_load(
            len(snapshot.top_level), snapshot.reply_count, len(snapshot.failed_parents)
        )

        await subscription._emit("on_initial", subscription.initial)
        await subscription._set_status(ConnectionStatus.POLLING)

        if not subscription.cancelled:
            subscription.state = SubscriptionState.POLLING
            subscription._task = asyncio.create_task(self._run(subscription))
        return subscription

    def unsubscribe(self, thread_id: str) -> None:
        subscription = self._subscriptions.get(thread_id)
        if subscription is None:
            raise NotFoundError(f"Thread {thread_id} is not subscribed")
        subscription.unsubscribe()

    async def refresh(self, thread_id: str) -> Optional[ChangeSet]:
        """Run one tick now for a subscribed thread."""
        subscription = self._subscriptions.get(thread_id)
        if subscription is None:
            raise NotFoundError(f"Thread {thread_id} is not subscribed")
        return await self.tick(subscription)

    async def close(self) -> None:
        """Cancel every subscription and wait for the timer tasks to finish."""
        tasks = [s._task for s in self._subscriptions.values() if s._task is not None]
        for subscription in list(self._subscriptions.values()):
            subscription.unsubscribe()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def tick(self, subscription: Subscription) -> Optional[ChangeSet]:
        """
        One reconciliation cycle. Returns the dispatched change set, or None
        when the tick was skipped, failed or was cancelled.
        """
        if subscription.cancelled:
            subscription.log.log_tick_skipped("cancelled")
            return None
        if subscription.in_flight:
            subscription.log.log_tick_skipped("previous tick in flight")
            return None

        subscription._in_flight = True
        started = time.perf_counter()
        try:
            try:
                snapshot = await self.fetcher.fetch_thread(subscription.thread_id)
            except Exception as e:
                if subscription.cancelled:
                    return None
                subscription.consecutive_failures += 1
                subscription.next_delay = self._delay_for(subscription.consecutive_failures)
                subscription.log.log_fetch_failure(e, subscription.consecutive_failures, subscription.next_delay)
                await subscription._set_status(ConnectionStatus.DISCONNECTED)
                return None

            if subscription.cancelled:
                return None

            changes = self.engines.get(subscription.thread_id).diff(snapshot)
            subscription.consecutive_failures = 0
            subscription.next_delay = self.interval

            if subscription.cancelled:
                return None
            await subscription._set_status(ConnectionStatus.POLLING)
            await self._dispatch(subscription, changes)

            subscription.log.log_tick(
                time.perf_counter() - started,
                len(changes.inserted),
                len(changes.updated),
                len(changes.deleted),
                len(changes.like_changed),
            )
            return changes
        except Exception as e:
            logger.error(f"Unexpected error in reconciliation tick for thread {subscription.thread_id}: {e}")
            return None
        finally:
            subscription._in_flight = False

    def _delay_for(self, failures: int) -> float:
        if failures <= 0:
            return self.interval
        return min(self.interval * (self.backoff_factor ** failures), max(self.max_backoff, self.interval))

    async def _dispatch(self, subscription: Subscription, changes: ChangeSet) -> None:
        batches = (
            ("on_delete", changes.deleted),
            ("on_insert", changes.inserted),
            ("on_update", changes.updated),
            ("on_like_change", changes.like_changed),
        )
        for name, events in batches:
            for event in events:
                if subscription.cancelled:
                    return
                await subscription._emit(name, event)

    async def _run(self, subscription: Subscription) -> None:
        set_correlation_id(subscription.id)
        while not subscription.cancelled:
            await asyncio.sleep(subscription.next_delay)
            if subscription.cancelled:
                break
            await self.tick(subscription)

    def _cancel(self, subscription: Subscription) -> None:
        if subscription.cancelled:
            return
        subscription._cancelled = True
        subscription.state = SubscriptionState.CANCELLED
        if subscription._task is not None and not subscription._task.done():
            subscription._task.cancel()
        if self._subscriptions.get(subscription.thread_id) is subscription:
            del self._subscriptions[subscription.thread_id]
            self.engines.discard(subscription.thread_id)
        subscription.log.log_cancelled()

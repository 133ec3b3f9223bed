"""
In-flight submission flags, per operation kind and comment id.
"""
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict

from comment_sync.core.exceptions import DuplicateError


class SubmissionKind(str, Enum):
    """Mutations guarded against duplicate concurrent submission."""
    CREATE = "create"
    REPLY = "reply"
    EDIT = "edit"
    DELETE = "delete"
    LIKE = "like"


class SubmissionTracker:
    """
    Tracks which submissions are in flight.

    ``create`` is keyed by thread id, ``reply`` by parent comment id and the
    other kinds by the target comment id. The tracker only answers and
    rejects; it never retries or queues.
    """

    def __init__(self):
        self._in_flight: Dict[SubmissionKind, Dict[str, bool]] = {kind: {} for kind in SubmissionKind}

    def is_submitting(self, kind: SubmissionKind, key: str) -> bool:
        return self._in_flight[kind].get(key, False)

    def begin(self, kind: SubmissionKind, key: str) -> None:
        """
        Mark a submission as in flight.

        Raises:
            DuplicateError: If the same kind is already in flight for ``key``
        """
        if self.is_submitting(kind, key):
            raise DuplicateError(f"A {kind.value} submission for {key} is already in progress")
        self._in_flight[kind][key] = True

    def end(self, kind: SubmissionKind, key: str) -> None:
        self._in_flight[kind].pop(key, None)

    @asynccontextmanager
    async def track(self, kind: SubmissionKind, key: str) -> AsyncIterator[None]:
        self.begin(kind, key)
        try:
            yield
        finally:
            self.end(kind, key)

    def snapshot(self) -> Dict[str, Dict[str, bool]]:
        """Copy of every in-flight flag, keyed by kind value."""
        return {kind.value: dict(flags) for kind, flags in self._in_flight.items() if flags}

    def clear(self) -> None:
        for flags in self._in_flight.values():
            flags.clear()

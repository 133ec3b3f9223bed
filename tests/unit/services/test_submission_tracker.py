"""
Unit tests for SubmissionTracker.
"""
import pytest

from comment_sync.core.exceptions import DuplicateError
from comment_sync.services.submission import SubmissionKind, SubmissionTracker


@pytest.mark.unit
class TestSubmissionTracker:
    """Test cases for SubmissionTracker."""

    @pytest.fixture
    def tracker(self):
        return SubmissionTracker()

    def test_begin_and_end(self, tracker):
        tracker.begin(SubmissionKind.EDIT, "c1")

        assert tracker.is_submitting(SubmissionKind.EDIT, "c1")
        assert not tracker.is_submitting(SubmissionKind.DELETE, "c1")
        assert not tracker.is_submitting(SubmissionKind.EDIT, "c2")

        tracker.end(SubmissionKind.EDIT, "c1")

        assert not tracker.is_submitting(SubmissionKind.EDIT, "c1")

    def test_duplicate_begin_is_rejected(self, tracker):
        tracker.begin(SubmissionKind.LIKE, "c1")

        with pytest.raises(DuplicateError):
            tracker.begin(SubmissionKind.LIKE, "c1")

    def test_end_without_begin_is_noop(self, tracker):
        tracker.end(SubmissionKind.REPLY, "c1")

        assert tracker.snapshot() == {}

    @pytest.mark.asyncio
    async def test_track_clears_flag_on_error(self, tracker):
        with pytest.raises(RuntimeError):
            async with tracker.track(SubmissionKind.CREATE, "listing-1"):
                assert tracker.is_submitting(SubmissionKind.CREATE, "listing-1")
                raise RuntimeError("boom")

        assert not tracker.is_submitting(SubmissionKind.CREATE, "listing-1")

    def test_snapshot_and_clear(self, tracker):
        tracker.begin(SubmissionKind.CREATE, "listing-1")
        tracker.begin(SubmissionKind.DELETE, "c3")

        assert tracker.snapshot() == {"create": {"listing-1": True}, "delete": {"c3": True}}

        tracker.clear()

        assert tracker.snapshot() == {}

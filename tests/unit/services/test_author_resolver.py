"""
Unit tests for AuthorResolver.
"""
import logging
from unittest.mock import AsyncMock

import pytest

from comment_sync.core.exceptions import NetworkError, NotFoundError
from comment_sync.schemas.comment import AuthorInfo
from comment_sync.services.authors import AuthorResolver
from conftest import OTHER_ACTOR_ID, CommentFactory


@pytest.mark.unit
class TestAuthorResolver:
    """Test cases for AuthorResolver."""

    @pytest.fixture
    def mock_directory(self):
        directory = AsyncMock()
        directory.get_user.return_value = AuthorInfo(id=OTHER_ACTOR_ID, name="Seller")
        return directory

    @pytest.fixture
    def resolver(self, mock_directory):
        return AuthorResolver(mock_directory)

    @pytest.mark.asyncio
    async def test_resolve_caches_per_user(self, resolver, mock_directory):
        first = await resolver.resolve(OTHER_ACTOR_ID)
        second = await resolver.resolve(OTHER_ACTOR_ID)

        assert first.name == "Seller"
        assert second is first
        mock_directory.get_user.assert_called_once_with(OTHER_ACTOR_ID)

    @pytest.mark.asyncio
    async def test_failed_lookup_is_logged_and_not_cached(self, resolver, mock_directory, caplog):
        mock_directory.get_user.side_effect = NetworkError("Timed out")

        with caplog.at_level(logging.WARNING, logger="comment_sync.services.authors"):
            assert await resolver.resolve(OTHER_ACTOR_ID) is None

        assert "Failed to resolve author user-2" in caplog.text
        assert resolver.cached(OTHER_ACTOR_ID) is None

        mock_directory.get_user.side_effect = None
        author = await resolver.resolve(OTHER_ACTOR_ID)

        assert author.name == "Seller"
        assert mock_directory.get_user.call_count == 2

    @pytest.mark.asyncio
    async def test_unknown_user_resolves_to_none(self, resolver, mock_directory):
        mock_directory.get_user.side_effect = NotFoundError("User ghost not found")

        assert await resolver.resolve("ghost") is None

    @pytest.mark.asyncio
    async def test_embedded_authors_are_remembered(self, resolver, mock_directory):
        reply = CommentFactory.create_comment(
            comment_id="r1", parent_id="c1", author_id="user-3",
            author=AuthorInfo(id="user-3", name="Buyer")
        )
        parent = CommentFactory.create_comment(comment_id="c1", replies=[reply])

        resolver.remember_embedded([parent])
        author = await resolver.resolve("user-3")

        assert author.name == "Buyer"
        mock_directory.get_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_forgets_cache(self, resolver, mock_directory):
        await resolver.resolve(OTHER_ACTOR_ID)
        resolver.clear()
        await resolver.resolve(OTHER_ACTOR_ID)

        assert mock_directory.get_user.call_count == 2

"""
Author lookup for comments that carry only a user id.
"""
import logging
from typing import Dict, Iterable, Optional, Protocol

from comment_sync.schemas.comment import AuthorInfo, Comment

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    """Source of public user profiles."""

    async def get_user(self, user_id: str) -> AuthorInfo: ...


class AuthorResolver:
    """
    Resolves author ids to display information, caching per user id.

    A failed lookup is logged and not cached, so the next comment by the
    same user asks the directory again.
    """

    def __init__(self, directory: UserDirectory):
        self.directory = directory
        self._cache: Dict[str, AuthorInfo] = {}

    def cached(self, user_id: str) -> Optional[AuthorInfo]:
        return self._cache.get(user_id)

    def remember(self, author: AuthorInfo) -> None:
        self._cache[author.id] = author

    def remember_embedded(self, comments: Iterable[Comment]) -> None:
        """Cache authors already embedded in a loaded tree."""
        for comment in comments:
            if comment.author is not None:
                self.remember(comment.author)
            self.remember_embedded(comment.replies)

    async def resolve(self, user_id: str) -> Optional[AuthorInfo]:
        """
        Display information for ``user_id``.

        Returns:
            The cached or freshly fetched author, or None if the lookup failed
        """
        author = self._cache.get(user_id)
        if author is not None:
            return author

        try:
            author = await self.directory.get_user(user_id)
        except Exception as e:
            logger.warning(f"Failed to resolve author {user_id}: {str(e)}")
            return None

        self._cache[user_id] = author
        return author

    def clear(self) -> None:
        self._cache.clear()

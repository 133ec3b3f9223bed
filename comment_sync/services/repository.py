"""
Thread repository: the remote comment API consumed by the sync engine.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from comment_sync.core.config import settings
from comment_sync.core.exceptions import (
    ForbiddenError, NetworkError, NotFoundError, ServerError, ServiceException,
    UnauthenticatedError, ValidationError
)
from comment_sync.schemas.comment import (
    AuthorInfo, Comment, CommentCreate, CommentReply, CommentUpdate, LikeResult
)

logger = logging.getLogger(__name__)


class ThreadRepository(Protocol):
    """Request/response access to comment threads. Nothing is pushed."""

    async def list_top_level(self, thread_id: str) -> List[Comment]: ...

    async def list_replies(self, comment_id: str) -> List[Comment]: ...

    async def create(self, thread_id: str, content: str) -> Comment: ...

    async def reply(self, parent_id: str, content: str) -> Comment: ...

    async def edit(self, comment_id: str, content: str) -> Comment: ...

    async def delete(self, comment_id: str) -> None: ...

    async def like(self, comment_id: str) -> LikeResult: ...

    async def unlike(self, comment_id: str) -> LikeResult: ...


class HttpThreadRepository:
    """ThreadRepository over the marketplace REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.token = token if token is not None else settings.API_TOKEN
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.HTTP_TIMEOUT_SECONDS)
        self._session = session

    async def list_top_level(self, thread_id: str) -> List[Comment]:
        """
        List top-level comments of a thread.

        Args:
            thread_id: Listing (product) ID

        Returns:
            Top-level comments as returned by the API

        Raises:
            NotFoundError: If the listing does not exist
            NetworkError: If the API cannot be reached
        """
        data = await self._request("GET", f"/comments/product/{thread_id}")
        if not isinstance(data, list):
            return []
        return [
            Comment.model_validate(item)
            for item in data
            if isinstance(item, dict) and not item.get("parent")
        ]

    async def list_replies(self, comment_id: str) -> List[Comment]:
        """
        List replies of a top-level comment.

        Raises:
            NotFoundError: If the parent comment does not exist
            NetworkError: If the API cannot be reached
        """
        data = await self._request("GET", f"/comments/{comment_id}/replies")
        if not isinstance(data, list):
            return []
        return [Comment.model_validate(item) for item in data if isinstance(item, dict)]

    async def create(self, thread_id: str, content: str) -> Comment:
        payload = CommentCreate(thread_id=thread_id, content=content).model_dump(by_alias=True)
        data = await self._request("POST", "/comments", payload, authenticated=True)
        return self._unwrap(data, "comment")

    async def reply(self, parent_id: str, content: str) -> Comment:
        payload = CommentReply(content=content).model_dump()
        data = await self._request("POST", f"/comments/{parent_id}/replies", payload, authenticated=True)
        return self._unwrap(data, "reply")

    async def edit(self, comment_id: str, content: str) -> Comment:
        payload = CommentUpdate(content=content).model_dump()
        data = await self._request("PUT", f"/comments/{comment_id}", payload, authenticated=True)
        return self._unwrap(data, "comment")

    async def delete(self, comment_id: str) -> None:
        await self._request("DELETE", f"/comments/{comment_id}", authenticated=True)

    async def like(self, comment_id: str) -> LikeResult:
        data = await self._request("POST", f"/comments/{comment_id}/like", authenticated=True)
        return self._like_result(comment_id, True, data)

    async def unlike(self, comment_id: str) -> LikeResult:
        data = await self._request("DELETE", f"/comments/{comment_id}/like", authenticated=True)
        return self._like_result(comment_id, False, data)

    async def get_user(self, user_id: str) -> AuthorInfo:
        """
        Look up the public profile of a user.

        Raises:
            NotFoundError: If the user does not exist
            ServerError: If the API returns no profile
        """
        data = await self._request("GET", f"/users/{user_id}")
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        if not isinstance(data, dict):
            raise ServerError(f"User API returned no profile for {user_id}")
        return AuthorInfo.model_validate(data)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        authenticated: bool = False
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            if not self.token:
                raise UnauthenticatedError("Login required to modify comments")
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}{path}"
        try:
            if self._session is not None:
                return await self._send(self._session, method, url, payload, headers)
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                return await self._send(session, method, url, payload, headers)
        except ServiceException:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error calling {method} {url}: {e}")
            raise NetworkError(f"Failed to reach comment API: {e}")

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]],
        headers: Dict[str, str]
    ) -> Any:
        async with session.request(
            method,
            url,
            json=payload,
            headers=headers,
            timeout=self.timeout
        ) as response:
            data = self._decode(await response.text())
            if response.status >= 400:
                raise self._error_for(response.status, data)
            return data

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return None

    @staticmethod
    def _error_for(status_code: int, data: Any) -> ServiceException:
        message = data.get("message") if isinstance(data, dict) else None
        if status_code == 400:
            return ValidationError(message or "Invalid comment content")
        if status_code == 401:
            return UnauthenticatedError(message or "Login required")
        if status_code == 403:
            return ForbiddenError(message or "Not allowed to modify this comment")
        if status_code == 404:
            return NotFoundError(message or "Comment or listing not found")
        return ServerError(message or f"Comment API returned {status_code}", status_code)

    @staticmethod
    def _unwrap(data: Any, key: str) -> Comment:
        if isinstance(data, dict) and isinstance(data.get(key), dict):
            data = data[key]
        if not isinstance(data, dict):
            raise ServerError("Comment API returned an empty body")
        return Comment.model_validate(data)

    @staticmethod
    def _like_result(comment_id: str, liked: bool, data: Any) -> LikeResult:
        comment = None
        like_count = None
        if isinstance(data, dict):
            raw_comment = data.get("comment")
            if isinstance(raw_comment, dict):
                comment = Comment.model_validate(raw_comment)
            if data.get("likeCount") is not None:
                like_count = data["likeCount"]
            elif comment is not None:
                like_count = comment.like_count
        return LikeResult(comment_id=comment_id, liked=liked, like_count=like_count, comment=comment)

"""TwitterAPI.io client exposing the directional page-fetch capability."""
import logging
from typing import Optional

import httpx
import tenacity

from .config import settings
from .schemas import PageResult, UserRecord


logger = logging.getLogger(__name__)


class TwitterAPIError(Exception):
    """Twitter API error."""
    def __init__(self, status_code: int, message: str, response: dict = None):
        self.status_code = status_code
        self.message = message
        self.response = response or {}
        super().__init__(f"Twitter API {status_code}: {message}")


class MissingCredentialsError(Exception):
    """No API key configured."""
    pass


class UserNotFoundError(Exception):
    """The target account cannot be resolved upstream."""
    def __init__(self, username: str, reason: str = ""):
        self.username = username
        self.reason = reason
        super().__init__(f"Could not resolve Twitter user @{username}" + (f": {reason}" if reason else ""))


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, TwitterAPIError) and exc.status_code == 429


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


# Account lookup only; page requests never retry
lookup_retry = tenacity.retry(
    stop=tenacity.stop_after_attempt(3),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=30),
    retry=tenacity.retry_if_exception(_is_rate_limited),
    before_sleep=_log_retry,
    reraise=True,
)


class TwitterClient:
    """TwitterAPI.io client with single-page following/followers requests."""

    BASE_URL = "https://api.twitterapi.io"

    def __init__(self, api_key: str = None, timeout: float = None):
        self.api_key = api_key or settings.twitter_api_key
        if not self.api_key:
            raise MissingCredentialsError("CONNECTION_TRACKER_TWITTER_API_KEY not set")
        self.client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers={"x-api-key": self.api_key},
            timeout=timeout or settings.request_timeout_seconds
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None
    ) -> dict:
        """Make API request, return response data."""
        response = await self.client.request(method, endpoint, params=params)

        if response.status_code == 429:
            raise TwitterAPIError(429, "Rate limited")

        if response.status_code != 200:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"error": response.text}
            raise TwitterAPIError(response.status_code, str(error_data), error_data)

        return response.json()

    @lookup_retry
    async def get_user_by_username(self, username: str) -> UserRecord:
        """Resolve a handle to its user record."""
        username = username.lstrip("@")
        try:
            data = await self._request("GET", "/twitter/user/info", params={"userName": username})
        except TwitterAPIError as e:
            if e.status_code in (404, 403):
                raise UserNotFoundError(username, e.message) from e
            raise

        user_data = data.get("data") or {}
        if not user_data.get("id"):
            raise UserNotFoundError(username, data.get("msg", "empty response"))
        return self._normalize_user(user_data)

    async def _fetch_page(
        self,
        endpoint: str,
        list_key: str,
        user_id: str,
        page_size: int,
        cursor: Optional[str],
    ) -> PageResult:
        params = {
            "userId": user_id,
            "pageSize": page_size,
        }
        if cursor:
            params["cursor"] = cursor

        try:
            data = await self._request("GET", endpoint, params)
        except (TwitterAPIError, httpx.HTTPError) as e:
            return PageResult(success=False, error=str(e) or type(e).__name__)
        except ValueError as e:
            return PageResult(success=False, error=f"Invalid JSON from {endpoint}: {e}")

        if not isinstance(data, dict):
            return PageResult(success=False, error=f"Unexpected {type(data).__name__} body from {endpoint}")

        raw_users = data.get(list_key) or []
        if not isinstance(raw_users, list):
            return PageResult(success=False, error=f"Unexpected '{list_key}' in {endpoint} response")
        next_cursor = data.get("next_cursor") or None
        if data.get("has_next_page") is False:
            next_cursor = None

        return PageResult(
            success=True,
            users=[self._normalize_user(u) for u in raw_users if isinstance(u, dict) and u.get("id")],
            next_cursor=next_cursor,
        )

    async def fetch_following_page(
        self,
        user_id: str,
        page_size: int,
        cursor: Optional[str] = None
    ) -> PageResult:
        """One page of accounts ``user_id`` follows."""
        return await self._fetch_page(
            "/twitter/user/followings", "followings", user_id, page_size, cursor
        )

    async def fetch_followers_page(
        self,
        user_id: str,
        page_size: int,
        cursor: Optional[str] = None
    ) -> PageResult:
        """One page of accounts following ``user_id``."""
        return await self._fetch_page(
            "/twitter/user/followers", "followers", user_id, page_size, cursor
        )

    def _normalize_user(self, user: dict) -> UserRecord:
        """Normalize twitterapi.io user format."""
        return UserRecord(
            id=str(user.get("id")),
            username=user.get("userName") or "",
            name=user.get("name") or "",
            description=user.get("description") or None,
            followers_count=user.get("followers"),
            following_count=user.get("following"),
            is_blue_verified=user.get("isBlueVerified"),
            profile_image_url=user.get("profilePicture"),
        )

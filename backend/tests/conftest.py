"""Shared test doubles."""
from typing import Optional

import pytest

from connection_tracker.schemas import PageResult, UserRecord


def make_user(user_id: str, **kwargs) -> UserRecord:
    kwargs.setdefault("username", f"user_{user_id}")
    kwargs.setdefault("name", f"User {user_id}")
    return UserRecord(id=user_id, **kwargs)


def make_page(ids, next_cursor: Optional[str] = None, **user_kwargs) -> PageResult:
    return PageResult(
        success=True,
        users=[make_user(i, **user_kwargs) for i in ids],
        next_cursor=next_cursor,
    )


def chain_pages(*id_groups) -> list[PageResult]:
    """Pages linked by cursors c1, c2, ...; the last page has no cursor."""
    pages = []
    for n, ids in enumerate(id_groups, start=1):
        cursor = f"c{n}" if n < len(id_groups) else None
        pages.append(make_page(ids, cursor))
    return pages


class ScriptedPages:
    """Async page-fetch capability that replays a fixed list of responses."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.calls: list[tuple[str, int, Optional[str]]] = []

    async def __call__(self, user_id: str, page_size: int, cursor: Optional[str] = None) -> PageResult:
        self.calls.append((user_id, page_size, cursor))
        index = len(self.calls) - 1
        if index >= len(self.pages):
            raise AssertionError(f"Unexpected request for page {index + 1}")
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        return page


class FakeTwitterClient:
    """Stands in for TwitterClient with scripted following/followers pages."""

    def __init__(self, following=(), followers=(), user: UserRecord = None):
        self.user = user or make_user("ego", username="ego")
        self.fetch_following_page = ScriptedPages(following)
        self.fetch_followers_page = ScriptedPages(followers)
        self.lookups: list[str] = []
        self.closed = False

    async def get_user_by_username(self, username: str) -> UserRecord:
        self.lookups.append(username)
        return self.user

    async def close(self):
        self.closed = True


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep

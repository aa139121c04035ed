"""Paginated connection fetching with early termination."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .schemas import Direction, PageResult, UserRecord


logger = logging.getLogger(__name__)


PAGE_SIZE = 100
PAGE_DELAY_SECONDS = 1.5
REQUEST_TIMEOUT_SECONDS = 30.0
EARLY_STOP_THRESHOLD = 3
TERMINAL_CURSOR_PREFIX = "0|"


FetchPageFn = Callable[[str, int, Optional[str]], Awaitable[PageResult]]


class TransientFetchError(Exception):
    """A single page request failed (network, upstream 5xx, timeout)."""
    pass


def should_stop(consecutive_known_pages: int, threshold: int = EARLY_STOP_THRESHOLD) -> bool:
    """True once enough consecutive pages held nothing new."""
    return consecutive_known_pages >= threshold


def is_terminal_cursor(cursor: Optional[str]) -> bool:
    return not cursor or cursor.startswith(TERMINAL_CURSOR_PREFIX)


@dataclass
class FetchResult:
    """Accumulated output of one paginated crawl."""
    users: list[UserRecord] = field(default_factory=list)
    stopped_early: bool = False
    incomplete: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    pages_fetched: int = 0

    @property
    def ids(self) -> set[str]:
        return {u.id for u in self.users}


class PagedFetcher:
    """
    Drives cursor pagination for one direction.

    With ``known_ids`` supplied, paging halts after ``EARLY_STOP_THRESHOLD``
    consecutive pages that contributed no identifier outside that set. Without
    it every page is fetched. A failed page ends the crawl with ``incomplete``
    set; ``stopped_early`` is reserved for the heuristic.
    """

    def __init__(
        self,
        fetch_page: FetchPageFn,
        direction: Direction,
        page_delay: float = PAGE_DELAY_SECONDS,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetch_page = fetch_page
        self.direction = direction
        self.page_delay = page_delay
        self.request_timeout = request_timeout
        self._sleep = sleep

    async def _fetch(self, user_id: str, cursor: Optional[str]) -> PageResult:
        """Issue one page request; every failure mode comes back as success=False."""
        try:
            return await asyncio.wait_for(
                self.fetch_page(user_id, PAGE_SIZE, cursor),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            return PageResult(
                success=False,
                error=f"timed out after {self.request_timeout}s",
            )
        except TransientFetchError as e:
            return PageResult(success=False, error=str(e))
        except Exception as e:
            logger.warning(
                f"{self.direction.value}: page request raised {type(e).__name__}: {e}",
                extra={"event": "page_failed", "direction": self.direction.value},
            )
            return PageResult(success=False, error=str(e) or type(e).__name__)

    async def run(
        self,
        user_id: str,
        known_ids: Optional[set[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        if not user_id:
            raise ValueError("user_id must be non-empty")

        label = self.direction.value
        result = FetchResult()
        seen_ids: set[str] = set()
        consecutive_known = 0
        cursor: Optional[str] = None

        while True:
            if result.pages_fetched > 0:
                await self._sleep(self.page_delay)
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(
                        f"{label}: cancelled after {result.pages_fetched} pages",
                        extra={"event": "crawl_cancelled", "direction": label},
                    )
                    result.cancelled = True
                    result.incomplete = True
                    break

            page = await self._fetch(user_id, cursor)
            result.pages_fetched += 1

            if not page.success:
                logger.warning(
                    f"{label}: page {result.pages_fetched} failed: {page.error}",
                    extra={"event": "page_failed", "direction": label},
                )
                result.incomplete = True
                result.error = page.error
                break

            if not page.users:
                break

            new_count = 0
            for user in page.users:
                if user.id in seen_ids:
                    continue
                seen_ids.add(user.id)
                result.users.append(user)
                if known_ids is not None and user.id not in known_ids:
                    new_count += 1

            logger.debug(
                f"{label}: page {result.pages_fetched} got {len(page.users)} users "
                f"({new_count} new, total {len(result.users)})",
                extra={"event": "page_fetched", "direction": label},
            )

            if known_ids is not None:
                consecutive_known = consecutive_known + 1 if new_count == 0 else 0
                if should_stop(consecutive_known):
                    logger.info(
                        f"{label}: {consecutive_known} consecutive known pages, "
                        f"stopping after page {result.pages_fetched}",
                        extra={"event": "early_stop_triggered", "direction": label},
                    )
                    result.stopped_early = True
                    break

            if is_terminal_cursor(page.next_cursor):
                break
            cursor = page.next_cursor

        return result

"""Crawl cycle orchestration - fetch, reconcile, stamp, analyze, diff, persist."""
import asyncio
import json
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional
from sqlalchemy.orm import Session

from .config import settings
from .fetcher import EARLY_STOP_THRESHOLD, PAGE_SIZE, FetchResult, PagedFetcher
from .first_seen import FirstSeenIndex
from .graph import SnapshotDiff, analyze_connections, diff_snapshots, merge_connections
from .models import Run, SnapshotSummary
from .schemas import Direction, Snapshot, UserRecord, utc_now
from .signals import SocialChange, detect_social_signals
from .storage import SnapshotStore
from .twitter_client import TwitterClient


logger = logging.getLogger(__name__)


class CollectorError(Exception):
    """Collector-specific error."""
    pass


class CrawlCancelledError(CollectorError):
    """The cycle was cancelled between pages; nothing was persisted."""
    pass


# Entries vanish once no cycle holds or awaits the lock
_account_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def account_lock(account_id: str) -> asyncio.Lock:
    """Lock serializing crawl cycles for one account within this process."""
    lock = _account_locks.get(account_id)
    if lock is None:
        lock = asyncio.Lock()
        _account_locks[account_id] = lock
    return lock


@dataclass
class CycleResult:
    """Everything one crawl cycle produced."""
    snapshot: Snapshot
    following_fetch: FetchResult
    followers_fetch: FetchResult
    snapshot_path: Path
    previous: Optional[Snapshot] = None
    diff: Optional[SnapshotDiff] = None
    signals: list[SocialChange] = field(default_factory=list)
    run_id: Optional[int] = None

    @property
    def is_baseline(self) -> bool:
        return self.previous is None

    def summary(self) -> dict:
        snapshot = self.snapshot
        return {
            "run_id": self.run_id,
            "account_id": snapshot.account_id,
            "username": snapshot.username,
            "captured_at": snapshot.captured_at.isoformat(),
            "snapshot_file": self.snapshot_path.name,
            "kind": snapshot.kind,
            "following_count": len(snapshot.following),
            "follower_count": len(snapshot.followers),
            "mutual_count": len(snapshot.mutual),
            "following_stopped_early": self.following_fetch.stopped_early,
            "followers_stopped_early": self.followers_fetch.stopped_early,
            "following_incomplete": self.following_fetch.incomplete,
            "followers_incomplete": self.followers_fetch.incomplete,
            "is_baseline": self.is_baseline,
            "diff": self.diff.summary() if self.diff else None,
            "signals": [s.to_dict() for s in self.signals],
        }


def assemble_snapshot(
    account_id: str,
    username: Optional[str],
    captured_at: datetime,
    following: list[UserRecord],
    followers: list[UserRecord],
    following_fetch: FetchResult,
    followers_fetch: FetchResult,
) -> Snapshot:
    sets = analyze_connections(following, followers)
    return Snapshot(
        account_id=account_id,
        username=username,
        captured_at=captured_at,
        following=following,
        followers=followers,
        mutual=sets.mutual,
        following_only=sets.following_only,
        followers_only=sets.followers_only,
        following_stopped_early=following_fetch.stopped_early,
        followers_stopped_early=followers_fetch.stopped_early,
        following_incomplete=following_fetch.incomplete,
        followers_incomplete=followers_fetch.incomplete,
    )


def reconcile(
    direction: Direction,
    fetch: FetchResult,
    previous: Optional[Snapshot],
) -> list[UserRecord]:
    """
    Merge a direction's fetch with the prior snapshot.

    A failed crawl is merged the same way as an early stop: its unfetched
    tail is carried forward instead of being reported as removed.
    """
    if previous is None:
        return fetch.users
    carry_forward = fetch.stopped_early or fetch.incomplete
    return merge_connections(fetch.users, previous.records(direction), carry_forward)


class Collector:
    """
    Runs crawl cycles:
    1. Resolves the account
    2. Fetches following, then followers, paging only as far as needed
    3. Reconciles with the previous snapshot and stamps first-seen times
    4. Diffs against the previous snapshot and detects signals
    5. Commits snapshot + first-seen index, then records a summary row
    """

    def __init__(
        self,
        store: SnapshotStore = None,
        twitter_client: TwitterClient = None,
        db: Session = None,
        monitored_handles: Iterable[str] = (),
        page_delay: float = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store or SnapshotStore(settings.data_dir)
        self.twitter = twitter_client
        self.db = db
        self.monitored_handles = list(monitored_handles)
        self.page_delay = settings.page_delay_seconds if page_delay is None else page_delay
        self._sleep = sleep
        self._clock = clock
        self._owns_client = False
        self.run: Optional[Run] = None

    async def __aenter__(self):
        if not self.twitter:
            self.twitter = TwitterClient()
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.twitter and self._owns_client:
            await self.twitter.close()

    def _start_run(self) -> Optional[Run]:
        """Create a new run record."""
        if self.db is None:
            return None

        config_snapshot = {
            "page_size": PAGE_SIZE,
            "page_delay_seconds": self.page_delay,
            "early_stop_threshold": EARLY_STOP_THRESHOLD,
        }

        self.run = Run(
            started_at=utc_now(),
            status="running",
            config_version=settings.config_version,
            config_json=json.dumps(config_snapshot)
        )
        self.db.add(self.run)
        self.db.commit()
        self.db.refresh(self.run)
        return self.run

    def _finish_run(self, status: str = "completed", notes: str = None):
        """Finish the run record."""
        if self.run:
            self.run.finished_at = utc_now()
            self.run.status = status
            self.run.notes = notes
            self.db.commit()

    def _record_summary(self, snapshot: Snapshot, diff: Optional[SnapshotDiff], path: Path):
        """Write the snapshot's counts to the summary table."""
        if self.run is None:
            return

        summary = SnapshotSummary(
            run_id=self.run.run_id,
            account_id=snapshot.account_id,
            captured_at=snapshot.captured_at,
            kind=snapshot.kind,
            snapshot_file=path.name,
            following_count=len(snapshot.following),
            follower_count=len(snapshot.followers),
            mutual_count=len(snapshot.mutual),
            following_stopped_early=snapshot.following_stopped_early,
            followers_stopped_early=snapshot.followers_stopped_early,
            following_incomplete=snapshot.following_incomplete,
            followers_incomplete=snapshot.followers_incomplete,
        )
        if diff:
            summary.following_added = len(diff.following.added)
            summary.following_removed = len(diff.following.removed)
            summary.followers_added = len(diff.followers.added)
            summary.followers_removed = len(diff.followers.removed)
            summary.new_mutual_count = len(diff.new_mutual)
        self.db.add(summary)
        self.db.commit()

    def _fetcher(self, direction: Direction) -> PagedFetcher:
        if direction == Direction.FOLLOWING:
            fetch_page = self.twitter.fetch_following_page
        else:
            fetch_page = self.twitter.fetch_followers_page

        return PagedFetcher(
            fetch_page,
            direction,
            page_delay=self.page_delay,
            request_timeout=settings.request_timeout_seconds,
            sleep=self._sleep,
        )

    async def fetch_direction(
        self,
        direction: Direction,
        user_id: str,
        previous: Optional[Snapshot],
        force_full: bool = False,
        cancel_event: asyncio.Event = None,
    ) -> FetchResult:
        """Crawl one direction; early stop needs a previous snapshot to merge with."""
        known_ids = None
        if previous is not None and not force_full:
            known_ids = previous.ids(direction)

        logger.info(
            f"Fetching {direction.value} for {user_id} "
            f"({'full crawl' if known_ids is None else f'{len(known_ids)} known'})"
        )
        result = await self._fetcher(direction).run(user_id, known_ids, cancel_event)
        logger.info(
            f"Fetched {len(result.users)} {direction.value} in {result.pages_fetched} pages "
            f"(stopped_early={result.stopped_early}, incomplete={result.incomplete})"
        )

        if result.cancelled:
            raise CrawlCancelledError(f"Crawl of {direction.value} for {user_id} cancelled")
        return result

    async def _run_cycle(
        self,
        user_id: str,
        username: Optional[str],
        force_full: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> CycleResult:
        captured_at = self._clock()

        # Corrupt state fails the cycle before any API call
        previous = self.store.load_latest(user_id)
        index: FirstSeenIndex = self.store.load_first_seen(user_id)

        following_fetch = await self.fetch_direction(
            Direction.FOLLOWING, user_id, previous, force_full, cancel_event
        )
        followers_fetch = await self.fetch_direction(
            Direction.FOLLOWERS, user_id, previous, force_full, cancel_event
        )

        following = reconcile(Direction.FOLLOWING, following_fetch, previous)
        followers = reconcile(Direction.FOLLOWERS, followers_fetch, previous)

        following = index.stamp(Direction.FOLLOWING, following, captured_at)
        followers = index.stamp(Direction.FOLLOWERS, followers, captured_at)

        snapshot = assemble_snapshot(
            user_id, username, captured_at,
            following, followers,
            following_fetch, followers_fetch,
        )

        diff = diff_snapshots(previous, snapshot) if previous else None
        signals = detect_social_signals(
            snapshot,
            previous,
            diff,
            notable_threshold=settings.notable_follower_threshold,
            monitored_handles=self.monitored_handles,
        )

        path = self.store.commit(snapshot, index)
        self._record_summary(snapshot, diff, path)

        return CycleResult(
            snapshot=snapshot,
            following_fetch=following_fetch,
            followers_fetch=followers_fetch,
            snapshot_path=path,
            previous=previous,
            diff=diff,
            signals=signals,
            run_id=self.run.run_id if self.run else None,
        )

    async def run_collection(
        self,
        user_id: str = None,
        username: str = None,
        force_full: bool = False,
        cancel_event: asyncio.Event = None,
    ) -> CycleResult:
        """
        Run one crawl cycle for an account.

        ``force_full`` ignores the previous snapshot when paging so that
        every removal is detected, at the cost of a full crawl.
        """
        if not user_id and not username:
            raise CollectorError("Either user_id or username is required")

        self._start_run()

        try:
            if not user_id:
                user = await self.twitter.get_user_by_username(username)
                user_id = user.id
                username = user.username or username.lstrip("@")
                logger.info(f"Resolved @{username} to {user_id}")

            if self.run:
                self.run.account_id = user_id
                self.db.commit()

            async with account_lock(user_id):
                result = await self._run_cycle(user_id, username, force_full, cancel_event)

            notes = None
            if result.snapshot.kind == "partial":
                notes = "partial snapshot: unfollow detection incomplete"
            self._finish_run("completed", notes)
            return result

        except CrawlCancelledError as e:
            self._finish_run("cancelled", str(e))
            raise
        except Exception as e:
            self._finish_run("failed", str(e))
            raise

    def get_latest_snapshot(self, account_id: str) -> Optional[Snapshot]:
        """Get the most recent snapshot for an account."""
        return self.store.load_latest(account_id)

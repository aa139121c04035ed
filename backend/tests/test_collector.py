"""Test crawl cycle orchestration."""
import asyncio
import gc
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from connection_tracker.collector import (
    Collector, CollectorError, CrawlCancelledError, _account_locks, account_lock, reconcile
)
from connection_tracker.database import Base
from connection_tracker.fetcher import FetchResult
from connection_tracker.models import Run, SnapshotSummary
from connection_tracker.schemas import Direction, PageResult
from connection_tracker.storage import CorruptPersistedStateError, SnapshotStore
from connection_tracker.twitter_client import UserNotFoundError

from conftest import FakeTwitterClient, chain_pages, make_page, make_user


T0 = datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=1)
T2 = T0 + timedelta(days=2)

FOLLOWER_PAGES = (["b1"], ["b2"], ["b3"], ["b4"], ["b5"])


@pytest.fixture
def db_session():
    """Create in-memory database session for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "data")


def ids_of(records):
    return [u.id for u in records]


async def run_cycle(store, twitter, at, no_sleep, db=None, **kwargs):
    collector = Collector(
        store=store,
        twitter_client=twitter,
        db=db,
        sleep=no_sleep,
        clock=lambda: at,
    )
    kwargs.setdefault("user_id", "42")
    return await collector.run_collection(**kwargs)


async def baseline(store, no_sleep, db=None):
    twitter = FakeTwitterClient(
        following=chain_pages(["a1", "b1"]),
        followers=chain_pages(*FOLLOWER_PAGES),
    )
    return await run_cycle(store, twitter, T0, no_sleep, db=db)


class TestReconcile:
    """Test per-direction merge decisions."""

    def test_no_previous_returns_fetched(self):
        fetch = FetchResult(users=[make_user("A")], stopped_early=True)
        assert ids_of(reconcile(Direction.FOLLOWING, fetch, None)) == ["A"]


@pytest.mark.asyncio
class TestBaselineCycle:
    """First crawl of an account."""

    async def test_baseline_snapshot(self, store, no_sleep, db_session):
        result = await baseline(store, no_sleep, db=db_session)
        snapshot = result.snapshot

        assert result.is_baseline
        assert result.diff is None
        assert result.signals == []
        assert ids_of(snapshot.following) == ["a1", "b1"]
        assert ids_of(snapshot.followers) == ["b1", "b2", "b3", "b4", "b5"]
        assert snapshot.mutual == ["b1"]
        assert snapshot.following_only == ["a1"]
        assert set(snapshot.followers_only) == {"b2", "b3", "b4", "b5"}
        assert snapshot.kind == "full"
        assert snapshot.captured_at == T0

    async def test_baseline_is_persisted(self, store, no_sleep):
        result = await baseline(store, no_sleep)

        assert store.load_latest("42") == result.snapshot
        assert result.snapshot_path.exists()
        index = store.load_first_seen("42")
        assert index.get(Direction.FOLLOWERS, "b5") == T0
        assert index.get(Direction.FOLLOWING, "a1") == T0

    async def test_records_are_stamped(self, store, no_sleep):
        result = await baseline(store, no_sleep)

        assert all(u.first_seen_following == T0 for u in result.snapshot.following)
        assert all(u.first_seen_follower == T0 for u in result.snapshot.followers)

    async def test_following_crawled_before_followers(self, store, no_sleep):
        twitter = FakeTwitterClient(following=chain_pages(["a"]), followers=chain_pages(["b"]))
        await run_cycle(store, twitter, T0, no_sleep)

        assert len(twitter.fetch_following_page.calls) == 1
        assert len(twitter.fetch_followers_page.calls) == 1

    async def test_run_and_summary_recorded(self, store, no_sleep, db_session):
        result = await baseline(store, no_sleep, db=db_session)

        run = db_session.query(Run).filter(Run.run_id == result.run_id).one()
        assert run.status == "completed"
        assert run.account_id == "42"
        assert run.finished_at is not None

        summary = db_session.query(SnapshotSummary).filter(
            SnapshotSummary.run_id == result.run_id
        ).one()
        assert summary.following_count == 2
        assert summary.follower_count == 5
        assert summary.mutual_count == 1
        assert summary.kind == "full"
        assert summary.snapshot_file == result.snapshot_path.name

    async def test_resolves_username(self, store, no_sleep):
        twitter = FakeTwitterClient(
            following=chain_pages(["a"]),
            followers=chain_pages(["b"]),
            user=make_user("42", username="ego"),
        )
        result = await run_cycle(store, twitter, T0, no_sleep, user_id=None, username="@ego")

        assert twitter.lookups == ["@ego"]
        assert result.snapshot.account_id == "42"
        assert result.snapshot.username == "ego"

    async def test_requires_target(self, store, no_sleep):
        with pytest.raises(CollectorError):
            await run_cycle(store, FakeTwitterClient(), T0, no_sleep, user_id=None)


@pytest.mark.asyncio
class TestIncrementalCycle:
    """Cycles that follow an existing snapshot."""

    async def test_idempotent_full_crawl(self, store, no_sleep):
        first = await baseline(store, no_sleep)
        twitter = FakeTwitterClient(
            following=chain_pages(["a1", "b1"]),
            followers=chain_pages(*FOLLOWER_PAGES),
        )
        second = await run_cycle(store, twitter, T1, no_sleep, force_full=True)

        for attr in ("mutual", "following_only", "followers_only"):
            assert set(getattr(first.snapshot, attr)) == set(getattr(second.snapshot, attr))
        assert first.snapshot.ids(Direction.FOLLOWING) == second.snapshot.ids(Direction.FOLLOWING)
        assert first.snapshot.ids(Direction.FOLLOWERS) == second.snapshot.ids(Direction.FOLLOWERS)
        assert second.diff.summary()["followers_added"] == 0
        assert second.diff.summary()["followers_removed"] == 0

    async def test_early_stop_merges_previous_tail(self, store, no_sleep, db_session):
        await baseline(store, no_sleep)
        followers = [
            make_page(["n1"], "c1"),
            make_page(["b1"], "c2"),
            make_page(["b2"], "c3"),
            make_page(["b3"], "c4"),
        ]
        twitter = FakeTwitterClient(following=chain_pages(["a1", "b1"]), followers=followers)

        result = await run_cycle(store, twitter, T1, no_sleep, db=db_session)

        assert result.followers_fetch.stopped_early
        assert len(twitter.fetch_followers_page.calls) == 4
        assert ids_of(result.snapshot.followers) == ["n1", "b1", "b2", "b3", "b4", "b5"]
        assert ids_of(result.diff.followers.added) == ["n1"]
        assert result.diff.followers.removed == []
        assert result.snapshot.followers_stopped_early
        assert result.snapshot.kind == "partial"
        assert not result.diff.followers_removals_reliable
        run = db_session.query(Run).filter(Run.run_id == result.run_id).one()
        assert "partial" in run.notes

    async def test_fetch_failure_carries_forward_without_early_flag(self, store, no_sleep):
        await baseline(store, no_sleep)
        followers = [make_page(["b1"], "c1"), PageResult(success=False, error="upstream 503")]
        twitter = FakeTwitterClient(following=chain_pages(["a1", "b1"]), followers=followers)

        result = await run_cycle(store, twitter, T1, no_sleep)

        assert result.followers_fetch.incomplete
        assert not result.followers_fetch.stopped_early
        assert not result.snapshot.followers_stopped_early
        assert result.snapshot.followers_incomplete
        assert result.diff.followers.removed == []
        assert result.snapshot.ids(Direction.FOLLOWERS) == {"b1", "b2", "b3", "b4", "b5"}

    async def test_force_full_detects_unfollows(self, store, no_sleep):
        await baseline(store, no_sleep)
        twitter = FakeTwitterClient(
            following=chain_pages(["a1", "b1"]),
            followers=chain_pages(["b1"], ["b3"]),
        )

        result = await run_cycle(store, twitter, T1, no_sleep, force_full=True)

        assert not result.followers_fetch.stopped_early
        assert set(ids_of(result.diff.followers.removed)) == {"b2", "b4", "b5"}
        assert result.diff.followers_removals_reliable

    async def test_first_seen_survives_across_cycles(self, store, no_sleep):
        await baseline(store, no_sleep)
        twitter = FakeTwitterClient(
            following=chain_pages(["a1", "b1"]),
            followers=chain_pages(["n1", "b1"], *FOLLOWER_PAGES[1:]),
        )

        result = await run_cycle(store, twitter, T1, no_sleep, force_full=True)

        stamps = {u.id: u.first_seen_follower for u in result.snapshot.followers}
        assert stamps["b1"] == T0
        assert stamps["n1"] == T1
        assert store.load_first_seen("42").get(Direction.FOLLOWERS, "b1") == T0

    async def test_new_mutual_connection(self, store, no_sleep):
        await baseline(store, no_sleep)
        twitter = FakeTwitterClient(
            following=chain_pages(["a1", "b1", "b2"]),
            followers=chain_pages(*FOLLOWER_PAGES),
        )

        result = await run_cycle(store, twitter, T1, no_sleep, force_full=True)

        assert ids_of(result.diff.following.added) == ["b2"]
        assert ids_of(result.diff.new_mutual) == ["b2"]

    async def test_summary_payload(self, store, no_sleep):
        await baseline(store, no_sleep)
        twitter = FakeTwitterClient(
            following=chain_pages(["b1"]),
            followers=chain_pages(*FOLLOWER_PAGES),
        )
        result = await run_cycle(store, twitter, T1, no_sleep, force_full=True)

        summary = result.summary()
        assert summary["account_id"] == "42"
        assert summary["is_baseline"] is False
        assert summary["diff"]["following_removed"] == 1
        assert summary["kind"] == "full"


@pytest.mark.asyncio
class TestCycleFailures:
    """Fatal errors leave persisted state untouched."""

    async def test_user_not_found_writes_nothing(self, store, no_sleep, db_session):
        twitter = FakeTwitterClient()

        async def not_found(username):
            raise UserNotFoundError(username, "suspended")

        twitter.get_user_by_username = not_found
        collector = Collector(store=store, twitter_client=twitter, db=db_session, sleep=no_sleep)

        with pytest.raises(UserNotFoundError):
            await collector.run_collection(username="ghost")

        assert not store.data_dir.exists()
        assert collector.run.status == "failed"

    async def test_corrupt_index_aborts_before_fetching(self, store, no_sleep, db_session):
        await baseline(store, no_sleep)
        path = store.first_seen_path("42")
        path.write_text("garbage")
        twitter = FakeTwitterClient(following=chain_pages(["a1"]), followers=chain_pages(["b1"]))

        with pytest.raises(CorruptPersistedStateError):
            await run_cycle(store, twitter, T1, no_sleep, db=db_session)

        assert twitter.fetch_following_page.calls == []
        assert path.read_text() == "garbage"
        assert len(store.list_snapshots("42")) == 1
        assert db_session.query(Run).order_by(Run.run_id.desc()).first().status == "failed"

    async def test_cancelled_cycle_writes_nothing(self, store, no_sleep, db_session):
        cancel = asyncio.Event()
        cancel.set()
        twitter = FakeTwitterClient(
            following=chain_pages(["a1"]),
            followers=chain_pages(["b1"], ["b2"]),
        )

        with pytest.raises(CrawlCancelledError):
            await run_cycle(store, twitter, T0, no_sleep, db=db_session, cancel_event=cancel)

        assert store.list_snapshots("42") == []
        assert not store.first_seen_path("42").exists()
        assert db_session.query(Run).one().status == "cancelled"


@pytest.mark.asyncio
class TestAccountLock:
    """Concurrent cycles for one account are serialized."""

    async def test_second_cycle_sees_first_snapshot(self, store, no_sleep):
        class YieldingTwitter(FakeTwitterClient):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                self._following = self.fetch_following_page
                self.fetch_following_page = self._yielding_following

            async def _yielding_following(self, user_id, page_size, cursor=None):
                await asyncio.sleep(0)
                return await self._following(user_id, page_size, cursor)

        def client():
            return YieldingTwitter(following=chain_pages(["a"]), followers=chain_pages(["b"]))

        first, second = await asyncio.gather(
            run_cycle(store, client(), T1, no_sleep, user_id="lock-test"),
            run_cycle(store, client(), T2, no_sleep, user_id="lock-test"),
        )

        assert first.is_baseline
        assert not second.is_baseline
        assert second.previous.captured_at == T1
        assert len(store.list_snapshots("lock-test")) == 2


@pytest.mark.asyncio
class TestFetchErrors:
    """A page that raises ends only its own direction."""

    async def test_raising_page_still_commits_cycle(self, store, no_sleep):
        await baseline(store, no_sleep)
        followers = [make_page(["b1"], "c1"), httpx.ConnectError("reset")]
        twitter = FakeTwitterClient(following=chain_pages(["a1", "b1", "b9"]), followers=followers)

        result = await run_cycle(store, twitter, T1, no_sleep)

        assert result.snapshot.followers_incomplete
        assert ids_of(result.diff.following.added) == ["b9"]
        assert result.snapshot.ids(Direction.FOLLOWERS) == {"b1", "b2", "b3", "b4", "b5"}
        assert len(store.list_snapshots("42")) == 2


class TestAccountLockMap:
    def test_same_lock_while_referenced(self):
        lock = account_lock("held")
        assert account_lock("held") is lock

    def test_unreferenced_locks_are_dropped(self):
        lock = account_lock("transient")
        del lock
        gc.collect()
        assert "transient" not in _account_locks

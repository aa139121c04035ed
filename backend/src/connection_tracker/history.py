"""Read-side views over stored snapshots: connection listings and recent changes."""
import logging
from datetime import datetime
from typing import Iterator, Literal, Optional

from pydantic import BaseModel

from .graph import diff_connections
from .schemas import Direction, Snapshot, UserRecord
from .storage import SnapshotStore


logger = logging.getLogger(__name__)


ConnectionFilter = Literal["following", "follower", "mutual"]


class ConnectionChange(BaseModel):
    """A connection that appeared or disappeared, with when it happened."""
    change_type: Literal["added", "removed"]
    direction: Direction
    timestamp: datetime
    user: UserRecord


def _follower_sort_key(user: UserRecord) -> int:
    return user.followers_count if user.followers_count is not None else -1


def list_connections(
    snapshot: Snapshot,
    direction: Optional[ConnectionFilter] = None,
    notable_only: bool = False,
    notable_threshold: int = 10_000,
    limit: int = 50,
) -> list[UserRecord]:
    """
    Connections from one snapshot, largest accounts first.

    ``direction`` narrows to following, followers or mutual connections;
    without it every connection is listed once.
    """
    if direction == "following":
        users = list(snapshot.following)
    elif direction == "follower":
        users = list(snapshot.followers)
    elif direction == "mutual":
        mutual = set(snapshot.mutual)
        users = [u for u in snapshot.following if u.id in mutual]
    else:
        following_ids = snapshot.ids(Direction.FOLLOWING)
        users = list(snapshot.following) + [
            u for u in snapshot.followers if u.id not in following_ids
        ]

    if notable_only:
        users = [u for u in users if u.is_notable(notable_threshold)]

    users.sort(key=_follower_sort_key, reverse=True)
    return users[:limit]


def _first_seen(user: UserRecord, direction: Direction) -> Optional[datetime]:
    if direction == Direction.FOLLOWING:
        return user.first_seen_following
    return user.first_seen_follower


def _recently_added(snapshot: Snapshot, limit: int) -> list[ConnectionChange]:
    added = []
    for direction in Direction:
        for user in snapshot.records(direction):
            first_seen = _first_seen(user, direction)
            if first_seen is None:
                continue
            added.append(ConnectionChange(
                change_type="added",
                direction=direction,
                timestamp=first_seen,
                user=user,
            ))
    added.sort(key=lambda c: c.timestamp, reverse=True)
    return added[:limit]


def _iter_snapshot_pairs(store: SnapshotStore, account_id: str) -> Iterator[tuple[Snapshot, Snapshot]]:
    """Yield (earlier, later) snapshot pairs, newest pair first."""
    names = store.list_snapshots(account_id)
    later = None
    for name in reversed(names):
        earlier = store.load(account_id, name)
        if later is not None:
            yield earlier, later
        later = earlier


def _recently_removed(
    store: SnapshotStore,
    account_id: str,
    latest: Snapshot,
    limit: int,
) -> list[ConnectionChange]:
    removed: list[ConnectionChange] = []
    reported: set[tuple[Direction, str]] = set()

    for earlier, later in _iter_snapshot_pairs(store, account_id):
        for direction in Direction:
            current_ids = latest.ids(direction)
            diff = diff_connections(earlier.records(direction), later.records(direction))
            for user in diff.removed:
                key = (direction, user.id)
                # Connections that came back are no longer removed
                if user.id in current_ids or key in reported:
                    continue
                reported.add(key)
                removed.append(ConnectionChange(
                    change_type="removed",
                    direction=direction,
                    timestamp=later.captured_at,
                    user=user,
                ))
        if len(removed) >= limit:
            break

    return removed[:limit]


def recent_changes(store: SnapshotStore, account_id: str, limit: int = 20) -> list[ConnectionChange]:
    """
    Most recent additions and removals for an account, newest first.

    Additions are dated by their first-seen stamp and removals by the capture
    time of the first snapshot they were missing from. Each side contributes
    at most half of ``limit`` (rounded up).
    """
    latest = store.load_latest(account_id)
    if latest is None:
        return []

    half_limit = -(-limit // 2)
    changes = _recently_added(latest, half_limit) + _recently_removed(
        store, account_id, latest, half_limit
    )
    changes.sort(key=lambda c: c.timestamp, reverse=True)

    logger.debug(
        f"{len(changes)} recent changes for {account_id}",
        extra={"event": "recent_changes_listed", "account_id": account_id},
    )
    return changes

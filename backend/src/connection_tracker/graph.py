"""Set operations over connection lists: merge, analysis and diff."""
import logging
from dataclasses import dataclass, field

from .schemas import Direction, Snapshot, UserRecord


logger = logging.getLogger(__name__)


@dataclass
class ConnectionSets:
    """Identifier sets derived from one following/followers pair."""
    mutual: list[str] = field(default_factory=list)
    following_only: list[str] = field(default_factory=list)
    followers_only: list[str] = field(default_factory=list)


@dataclass
class ConnectionDiff:
    """Added and removed records for one direction."""
    added: list[UserRecord] = field(default_factory=list)
    removed: list[UserRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "added": [{"id": u.id, "username": u.username} for u in self.added],
            "removed": [{"id": u.id, "username": u.username} for u in self.removed],
        }


@dataclass
class SnapshotDiff:
    """Change events between two consecutive snapshots."""
    following: ConnectionDiff
    followers: ConnectionDiff
    new_mutual: list[UserRecord] = field(default_factory=list)
    following_removals_reliable: bool = True
    followers_removals_reliable: bool = True

    def for_direction(self, direction: Direction) -> ConnectionDiff:
        if direction == Direction.FOLLOWING:
            return self.following
        return self.followers

    def summary(self) -> dict:
        return {
            "following_added": len(self.following.added),
            "following_removed": len(self.following.removed),
            "followers_added": len(self.followers.added),
            "followers_removed": len(self.followers.removed),
            "new_mutual": len(self.new_mutual),
            "following_removals_reliable": self.following_removals_reliable,
            "followers_removals_reliable": self.followers_removals_reliable,
        }


def merge_connections(
    fetched: list[UserRecord],
    previous: list[UserRecord],
    stopped_early: bool,
) -> list[UserRecord]:
    """
    Reconcile a freshly fetched list with the previous snapshot's list.

    An exhaustive crawl is authoritative and returned as-is. After an early
    stop the unfetched tail is carried forward from ``previous`` (in its
    original order), so removals beyond the fetched pages go undetected.
    """
    if not stopped_early:
        return fetched

    fetched_ids = {u.id for u in fetched}
    carried = [u for u in previous if u.id not in fetched_ids]
    logger.info(
        f"Merged {len(fetched)} fetched with {len(carried)} carried-over records",
        extra={"event": "merge_performed"},
    )
    return fetched + carried


def analyze_connections(
    following: list[UserRecord],
    followers: list[UserRecord],
) -> ConnectionSets:
    """Split identifiers into mutual / following-only / followers-only."""
    following_ids = {u.id for u in following}
    follower_ids = {u.id for u in followers}

    return ConnectionSets(
        mutual=[u.id for u in following if u.id in follower_ids],
        following_only=[u.id for u in following if u.id not in follower_ids],
        followers_only=[u.id for u in followers if u.id not in following_ids],
    )


def diff_connections(
    previous: list[UserRecord],
    current: list[UserRecord],
) -> ConnectionDiff:
    """Identifier set-difference in both directions.

    Removed entries are the previous-side records since the current state of
    a removed account is unknown.
    """
    previous_ids = {u.id for u in previous}
    current_ids = {u.id for u in current}

    return ConnectionDiff(
        added=[u for u in current if u.id not in previous_ids],
        removed=[u for u in previous if u.id not in current_ids],
    )


def new_mutual_connections(
    previous_mutual: list[str],
    current_mutual: list[str],
) -> list[str]:
    """Identifiers mutual now that were not mutual before."""
    before = set(previous_mutual)
    return [uid for uid in current_mutual if uid not in before]


def diff_snapshots(previous: Snapshot, current: Snapshot) -> SnapshotDiff:
    """Compare a new snapshot against the one immediately preceding it."""
    following = diff_connections(previous.following, current.following)
    followers = diff_connections(previous.followers, current.followers)

    # Computed last, from the merged and analyzed mutual lists
    new_mutual_ids = set(new_mutual_connections(previous.mutual, current.mutual))
    new_mutual = [u for u in current.following if u.id in new_mutual_ids]

    diff = SnapshotDiff(
        following=following,
        followers=followers,
        new_mutual=new_mutual,
        following_removals_reliable=current.removals_reliable(Direction.FOLLOWING),
        followers_removals_reliable=current.removals_reliable(Direction.FOLLOWERS),
    )
    logger.info(
        f"Diff for {current.account_id}: "
        f"+{len(following.added)}/-{len(following.removed)} following, "
        f"+{len(followers.added)}/-{len(followers.removed)} followers, "
        f"{len(new_mutual)} new mutual",
        extra={"event": "diff_computed", "account_id": current.account_id},
    )
    return diff

"""Social signal detection over snapshot diffs.

Turns the raw added/removed/new-mutual sets into a short list of changes
worth telling someone about. Explanations are template strings.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from .graph import SnapshotDiff
from .schemas import Snapshot


logger = logging.getLogger(__name__)


NOTABLE_FOLLOWER_THRESHOLD = 10_000
FOLLOWER_CHANGE_RATIO = 1.2
FOLLOWING_SPIKE_RATIO = 1.3

FOLLOWER_SPIKE = "follower_spike"
FOLLOWER_DROP = "follower_drop"
FOLLOWING_SPIKE = "following_spike"
NOTABLE_FOLLOWER_GAINED = "notable_follower_gained"
NOTABLE_FOLLOWER_LOST = "notable_follower_lost"
NEW_MUTUAL_CONNECTION = "new_mutual_connection"


@dataclass
class SocialChange:
    """A detected change with a human-readable explanation."""
    type: str
    dimension: str
    before_value: Optional[Union[int, str]]
    after_value: Union[int, str]
    metadata: dict[str, Any] = field(default_factory=dict)
    explanation: str = ""

    @property
    def title(self) -> str:
        return generate_title(self.type, self.dimension)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "dimension": self.dimension,
            "title": self.title,
            "explanation": self.explanation,
            "before_value": self.before_value,
            "after_value": self.after_value,
            "metadata": self.metadata,
        }


def _percent(numerator: int, denominator: int) -> int:
    return round(numerator / denominator * 100)


def detect_count_changes(current: Snapshot, previous: Snapshot) -> list[SocialChange]:
    """Follower spike/drop (>20%) and following spike (>30%)."""
    changes = []

    prev_followers = len(previous.followers)
    curr_followers = len(current.followers)
    if prev_followers > 0:
        if curr_followers > prev_followers * FOLLOWER_CHANGE_RATIO:
            changes.append(SocialChange(
                type=FOLLOWER_SPIKE,
                dimension="count",
                before_value=prev_followers,
                after_value=curr_followers,
                metadata={"percent_change": _percent(curr_followers - prev_followers, prev_followers)},
            ))
        if prev_followers > curr_followers * FOLLOWER_CHANGE_RATIO:
            changes.append(SocialChange(
                type=FOLLOWER_DROP,
                dimension="count",
                before_value=prev_followers,
                after_value=curr_followers,
                metadata={"percent_change": _percent(prev_followers - curr_followers, prev_followers)},
            ))

    prev_following = len(previous.following)
    curr_following = len(current.following)
    if prev_following > 0 and curr_following > prev_following * FOLLOWING_SPIKE_RATIO:
        changes.append(SocialChange(
            type=FOLLOWING_SPIKE,
            dimension="count",
            before_value=prev_following,
            after_value=curr_following,
            metadata={"percent_change": _percent(curr_following - prev_following, prev_following)},
        ))

    return changes


def _user_metadata(user) -> dict:
    return {
        "user_id": user.id,
        "username": user.username,
        "name": user.name,
        "followers_count": user.followers_count,
        "is_blue_verified": bool(user.is_blue_verified),
    }


def detect_notable_followers(diff: SnapshotDiff, threshold: int) -> list[SocialChange]:
    changes = []

    for user in diff.followers.added:
        if not user.is_notable(threshold):
            continue
        metadata = _user_metadata(user)
        metadata["verified_status"] = "verified" if user.is_blue_verified else "unverified"
        changes.append(SocialChange(
            type=NOTABLE_FOLLOWER_GAINED,
            dimension=f"@{user.username}",
            before_value=None,
            after_value=user.followers_count or 0,
            metadata=metadata,
        ))

    # Only an exhaustive followers crawl can prove an unfollow
    if diff.followers_removals_reliable:
        for user in diff.followers.removed:
            if not user.is_notable(threshold):
                continue
            changes.append(SocialChange(
                type=NOTABLE_FOLLOWER_LOST,
                dimension=f"@{user.username}",
                before_value=user.followers_count or 0,
                after_value=0,
                metadata=_user_metadata(user),
            ))

    return changes


def detect_new_mutuals(
    diff: SnapshotDiff,
    threshold: int,
    monitored_handles: Iterable[str] = (),
) -> list[SocialChange]:
    monitored = {h.lstrip("@").lower() for h in monitored_handles}
    changes = []

    for user in diff.new_mutual:
        is_monitored = user.username.lower() in monitored
        if not (is_monitored or user.is_notable(threshold)):
            continue
        metadata = _user_metadata(user)
        metadata["is_monitored"] = is_monitored
        changes.append(SocialChange(
            type=NEW_MUTUAL_CONNECTION,
            dimension=f"@{user.username}",
            before_value=None,
            after_value="mutual",
            metadata=metadata,
        ))

    return changes


def generate_explanation(change: SocialChange) -> str:
    if change.type == FOLLOWER_SPIKE:
        return (
            f"Follower count increased from {change.before_value} to "
            f"{change.after_value} (+{change.metadata['percent_change']}%)"
        )
    if change.type == FOLLOWER_DROP:
        return (
            f"Follower count decreased from {change.before_value} to "
            f"{change.after_value} (-{change.metadata['percent_change']}%)"
        )
    if change.type == NOTABLE_FOLLOWER_GAINED:
        count = change.metadata.get("followers_count")
        follower_str = f"{count:,} followers" if count is not None else "unknown followers"
        return (
            f"{change.dimension} ({follower_str}, {change.metadata['verified_status']}) "
            f"started following this account"
        )
    if change.type == NOTABLE_FOLLOWER_LOST:
        return f"{change.dimension} unfollowed this account"
    if change.type == NEW_MUTUAL_CONNECTION:
        return f"New mutual connection established with {change.dimension}"
    if change.type == FOLLOWING_SPIKE:
        return (
            f"Following count increased from {change.before_value} to "
            f"{change.after_value}, suggesting active engagement"
        )
    return "Social connection change detected"


def generate_title(change_type: str, dimension: str) -> str:
    titles = {
        FOLLOWER_SPIKE: "Follower Surge",
        FOLLOWER_DROP: "Follower Loss",
        FOLLOWING_SPIKE: "Following Surge",
        NOTABLE_FOLLOWER_GAINED: f"Notable New Follower: {dimension}",
        NOTABLE_FOLLOWER_LOST: f"Lost Notable Follower: {dimension}",
        NEW_MUTUAL_CONNECTION: f"New Mutual Connection: {dimension}",
    }
    return titles.get(change_type, f"Social Change: {dimension}")


def detect_social_signals(
    current: Snapshot,
    previous: Optional[Snapshot],
    diff: Optional[SnapshotDiff],
    notable_threshold: int = NOTABLE_FOLLOWER_THRESHOLD,
    monitored_handles: Iterable[str] = (),
) -> list[SocialChange]:
    """
    Detect notable changes between two snapshots.

    Returns an empty list for a baseline cycle (no previous snapshot).
    """
    if previous is None or diff is None:
        return []

    changes = []
    changes.extend(detect_count_changes(current, previous))
    changes.extend(detect_notable_followers(diff, notable_threshold))
    changes.extend(detect_new_mutuals(diff, notable_threshold, monitored_handles))

    for change in changes:
        change.explanation = generate_explanation(change)

    if changes:
        logger.info(
            f"Detected {len(changes)} social signals for {current.account_id}",
            extra={"event": "signals_detected", "account_id": current.account_id},
        )
    return changes


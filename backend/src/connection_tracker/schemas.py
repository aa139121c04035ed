"""Versioned record schemas for observed users, snapshots and page results.

Everything that is written to disk goes through these models so that a file
either validates against a known ``schema_version`` or is rejected outright.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


SCHEMA_VERSION = 1


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    """Which side of the connection graph a list describes."""
    FOLLOWING = "following"
    FOLLOWERS = "followers"


class UserRecord(BaseModel):
    """One observed account. ``id`` is the key; ``username`` can change over time."""
    id: str
    username: str = ""
    name: str = ""
    description: Optional[str] = None
    followers_count: Optional[int] = None
    following_count: Optional[int] = None
    is_blue_verified: Optional[bool] = None
    profile_image_url: Optional[str] = None
    first_seen_following: Optional[datetime] = None
    first_seen_follower: Optional[datetime] = None

    def is_notable(self, threshold: int) -> bool:
        """Blue-verified or above the follower-count threshold."""
        if self.is_blue_verified:
            return True
        return self.followers_count is not None and self.followers_count > threshold


class PageResult(BaseModel):
    """Response of one page request against a directional listing."""
    success: bool
    users: list[UserRecord] = Field(default_factory=list)
    error: Optional[str] = None
    next_cursor: Optional[str] = None


class Snapshot(BaseModel):
    """Point-in-time observation of an account's following and followers.

    Immutable once built; a crawl cycle creates it wholesale.
    """
    model_config = ConfigDict(frozen=True)

    schema_version: int = SCHEMA_VERSION
    account_id: str
    username: Optional[str] = None
    captured_at: datetime
    following: list[UserRecord] = Field(default_factory=list)
    followers: list[UserRecord] = Field(default_factory=list)
    mutual: list[str] = Field(default_factory=list)
    following_only: list[str] = Field(default_factory=list)
    followers_only: list[str] = Field(default_factory=list)

    # Diagnostics for consumers: a direction that stopped early or failed
    # mid-crawl cannot be trusted for unfollow detection.
    following_stopped_early: bool = False
    followers_stopped_early: bool = False
    following_incomplete: bool = False
    followers_incomplete: bool = False

    @property
    def kind(self) -> str:
        if (
            self.following_stopped_early or self.followers_stopped_early
            or self.following_incomplete or self.followers_incomplete
        ):
            return "partial"
        return "full"

    def records(self, direction: Direction) -> list[UserRecord]:
        if direction == Direction.FOLLOWING:
            return self.following
        return self.followers

    def ids(self, direction: Direction) -> set[str]:
        return {u.id for u in self.records(direction)}

    def removals_reliable(self, direction: Direction) -> bool:
        if direction == Direction.FOLLOWING:
            return not (self.following_stopped_early or self.following_incomplete)
        return not (self.followers_stopped_early or self.followers_incomplete)


class FirstSeenDocument(BaseModel):
    """On-disk layout of an account's first-seen index."""
    schema_version: int = SCHEMA_VERSION
    account_id: str
    following: dict[str, datetime] = Field(default_factory=dict)
    followers: dict[str, datetime] = Field(default_factory=dict)

"""First-seen index: write-once map of identifier to first observation time."""
import logging
from datetime import datetime
from typing import Optional

from .schemas import Direction, FirstSeenDocument, UserRecord


logger = logging.getLogger(__name__)


_STAMP_FIELD = {
    Direction.FOLLOWING: "first_seen_following",
    Direction.FOLLOWERS: "first_seen_follower",
}


class FirstSeenIndex:
    """
    Per-account, per-direction record of when each identifier was first seen.

    Keys are write-once: stamping an identifier that is already present keeps
    its original timestamp, even if it dropped out of an intermediate snapshot.
    """

    def __init__(
        self,
        account_id: str,
        following: Optional[dict[str, datetime]] = None,
        followers: Optional[dict[str, datetime]] = None,
    ):
        self.account_id = account_id
        self._entries: dict[Direction, dict[str, datetime]] = {
            Direction.FOLLOWING: dict(following or {}),
            Direction.FOLLOWERS: dict(followers or {}),
        }

    @classmethod
    def from_document(cls, document: FirstSeenDocument) -> "FirstSeenIndex":
        return cls(
            account_id=document.account_id,
            following=document.following,
            followers=document.followers,
        )

    def to_document(self) -> FirstSeenDocument:
        return FirstSeenDocument(
            account_id=self.account_id,
            following=dict(self._entries[Direction.FOLLOWING]),
            followers=dict(self._entries[Direction.FOLLOWERS]),
        )

    def get(self, direction: Direction, user_id: str) -> Optional[datetime]:
        return self._entries[direction].get(user_id)

    def known_ids(self, direction: Direction) -> set[str]:
        return set(self._entries[direction])

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def stamp(
        self,
        direction: Direction,
        records: list[UserRecord],
        now: datetime,
    ) -> list[UserRecord]:
        """Record unseen identifiers at ``now`` and return stamped copies of ``records``."""
        entries = self._entries[direction]
        stamp_field = _STAMP_FIELD[direction]
        stamped = []
        added = 0

        for record in records:
            if record.id not in entries:
                entries[record.id] = now
                added += 1
            stamped.append(record.model_copy(update={stamp_field: entries[record.id]}))

        logger.debug(
            f"{direction.value}: stamped {len(records)} records, {added} first seen now",
            extra={"event": "first_seen_stamped", "account_id": self.account_id},
        )
        return stamped

"""SQLAlchemy models for crawl runs and snapshot summaries.

Snapshot contents live in the file store; these tables hold the per-cycle
bookkeeping and counts that reporting queries need.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import utc_now


class Run(Base):
    """One crawl cycle for one account."""
    __tablename__ = "runs"

    run_id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="running")  # running, completed, failed, cancelled
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config_version: Mapped[str] = mapped_column(String(20))
    config_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    snapshot_summaries: Mapped[list["SnapshotSummary"]] = relationship(back_populates="run")


class SnapshotSummary(Base):
    """Counts and change totals for a committed snapshot."""
    __tablename__ = "snapshot_summaries"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("runs.run_id"), index=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime)
    kind: Mapped[str] = mapped_column(String(20))  # "full" or "partial"
    snapshot_file: Mapped[str] = mapped_column(String(255))

    following_count: Mapped[int] = mapped_column(Integer, default=0)
    follower_count: Mapped[int] = mapped_column(Integer, default=0)
    mutual_count: Mapped[int] = mapped_column(Integer, default=0)

    following_added: Mapped[int] = mapped_column(Integer, default=0)
    following_removed: Mapped[int] = mapped_column(Integer, default=0)
    followers_added: Mapped[int] = mapped_column(Integer, default=0)
    followers_removed: Mapped[int] = mapped_column(Integer, default=0)
    new_mutual_count: Mapped[int] = mapped_column(Integer, default=0)

    following_stopped_early: Mapped[bool] = mapped_column(Boolean, default=False)
    followers_stopped_early: Mapped[bool] = mapped_column(Boolean, default=False)
    following_incomplete: Mapped[bool] = mapped_column(Boolean, default=False)
    followers_incomplete: Mapped[bool] = mapped_column(Boolean, default=False)

    # Relationships
    run: Mapped["Run"] = relationship(back_populates="snapshot_summaries")


Index("ix_snapshot_summaries_account_captured", SnapshotSummary.account_id, SnapshotSummary.captured_at)

"""FastAPI application for Connection Tracker."""
from datetime import datetime, timedelta
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db, init_db
from .models import Run, SnapshotSummary as SnapshotSummaryRow
from .collector import Collector, CollectorError
from .history import ConnectionChange, ConnectionFilter, list_connections, recent_changes
from .schemas import Snapshot, UserRecord, utc_now
from .storage import CorruptPersistedStateError, SnapshotStore
from .twitter_client import MissingCredentialsError, TwitterClient, UserNotFoundError


app = FastAPI(
    title="Connection Tracker API",
    description="Follower/following snapshots and change detection",
    version="0.1.0"
)


# =============================================================================
# Startup
# =============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()


# =============================================================================
# Dependencies
# =============================================================================

def get_store() -> SnapshotStore:
    return SnapshotStore(settings.data_dir)


async def get_twitter_client():
    """Yields a TwitterClient, closed after the request."""
    try:
        client = TwitterClient()
    except MissingCredentialsError as e:
        raise HTTPException(status_code=503, detail=str(e))
    try:
        yield client
    finally:
        await client.close()


# =============================================================================
# Schemas
# =============================================================================

class CollectionRequest(BaseModel):
    """Request to run a crawl cycle."""
    username: Optional[str] = None
    user_id: Optional[str] = None
    force_full: bool = False
    monitored_handles: list[str] = []


class RunSummary(BaseModel):
    """Summary of a crawl run."""
    run_id: int
    account_id: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    status: str
    notes: Optional[str]


class SnapshotListing(BaseModel):
    """Stored snapshot files for an account."""
    account_id: str
    snapshots: list[str]


class ConnectionStats(BaseModel):
    """Counts from the latest snapshot."""
    account_id: str
    captured_at: datetime
    kind: str
    following: int
    followers: int
    mutual: int
    following_only: int
    followers_only: int
    total_snapshots: int
    last_fetched_at: datetime


class ChartPoint(BaseModel):
    """Connection counts at one capture time."""
    captured_at: datetime
    follower_count: int
    following_count: int
    mutual_count: int


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/")
async def root():
    """Health check."""
    return {
        "service": "connection-tracker",
        "status": "healthy",
        "version": "0.1.0"
    }


@app.post("/collect")
async def run_collection(
    request: CollectionRequest,
    db: Session = Depends(get_db),
    store: SnapshotStore = Depends(get_store),
    twitter: TwitterClient = Depends(get_twitter_client),
):
    """
    Run a crawl cycle.
    Fetches following and followers, diffs against the previous snapshot.
    """
    collector = Collector(
        store=store,
        twitter_client=twitter,
        db=db,
        monitored_handles=request.monitored_handles,
    )
    try:
        result = await collector.run_collection(
            user_id=request.user_id,
            username=request.username,
            force_full=request.force_full
        )
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CorruptPersistedStateError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except CollectorError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.summary()


@app.get("/runs", response_model=list[RunSummary])
async def list_runs(
    limit: int = 10,
    db: Session = Depends(get_db)
):
    """List recent crawl runs."""
    runs = db.query(Run).order_by(Run.started_at.desc()).limit(limit).all()
    return [
        RunSummary(
            run_id=r.run_id,
            account_id=r.account_id,
            started_at=r.started_at,
            finished_at=r.finished_at,
            status=r.status,
            notes=r.notes
        )
        for r in runs
    ]


@app.get("/runs/{run_id}/summary")
async def get_run_summary(run_id: int, db: Session = Depends(get_db)):
    """Snapshot counts recorded by a run."""
    row = db.query(SnapshotSummaryRow).filter(SnapshotSummaryRow.run_id == run_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Summary not found")
    return {
        "run_id": row.run_id,
        "account_id": row.account_id,
        "captured_at": row.captured_at,
        "kind": row.kind,
        "snapshot_file": row.snapshot_file,
        "following_count": row.following_count,
        "follower_count": row.follower_count,
        "mutual_count": row.mutual_count,
        "following_added": row.following_added,
        "following_removed": row.following_removed,
        "followers_added": row.followers_added,
        "followers_removed": row.followers_removed,
        "new_mutual_count": row.new_mutual_count,
    }


@app.get("/accounts/{account_id}/snapshots", response_model=SnapshotListing)
async def list_snapshots(account_id: str, store: SnapshotStore = Depends(get_store)):
    """List stored snapshot files, oldest first."""
    return SnapshotListing(account_id=account_id, snapshots=store.list_snapshots(account_id))


def _latest_or_404(store: SnapshotStore, account_id: str) -> Snapshot:
    try:
        snapshot = store.load_latest(account_id)
    except CorruptPersistedStateError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No snapshots for account")
    return snapshot


@app.get("/accounts/{account_id}/snapshots/latest", response_model=Snapshot)
async def get_latest_snapshot(account_id: str, store: SnapshotStore = Depends(get_store)):
    """The most recent snapshot."""
    return _latest_or_404(store, account_id)


@app.get("/accounts/{account_id}/stats", response_model=ConnectionStats)
async def get_connection_stats(account_id: str, store: SnapshotStore = Depends(get_store)):
    """Connection counts from the most recent snapshot."""
    snapshot = _latest_or_404(store, account_id)
    return ConnectionStats(
        account_id=account_id,
        captured_at=snapshot.captured_at,
        kind=snapshot.kind,
        following=len(snapshot.following),
        followers=len(snapshot.followers),
        mutual=len(snapshot.mutual),
        following_only=len(snapshot.following_only),
        followers_only=len(snapshot.followers_only),
        total_snapshots=len(store.list_snapshots(account_id)),
        last_fetched_at=snapshot.captured_at,
    )


@app.get("/accounts/{account_id}/connections", response_model=list[UserRecord])
async def get_connections(
    account_id: str,
    direction: Optional[ConnectionFilter] = None,
    notable_only: bool = False,
    limit: int = Query(default=50, ge=1, le=1000),
    store: SnapshotStore = Depends(get_store),
):
    """Connections from the latest snapshot, largest accounts first."""
    snapshot = _latest_or_404(store, account_id)
    return list_connections(
        snapshot,
        direction=direction,
        notable_only=notable_only,
        notable_threshold=settings.notable_follower_threshold,
        limit=limit,
    )


@app.get("/accounts/{account_id}/changes", response_model=list[ConnectionChange])
async def get_recent_changes(
    account_id: str,
    limit: int = Query(default=20, ge=1, le=500),
    store: SnapshotStore = Depends(get_store),
):
    """Recently added and removed connections, newest first."""
    try:
        return recent_changes(store, account_id, limit)
    except CorruptPersistedStateError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/accounts/{account_id}/chart", response_model=list[ChartPoint])
async def get_follower_chart(
    account_id: str,
    days: int = Query(default=30, ge=1),
    db: Session = Depends(get_db),
):
    """Follower, following and mutual counts over the last ``days`` days."""
    cutoff = utc_now() - timedelta(days=days)
    rows = db.query(SnapshotSummaryRow).filter(
        SnapshotSummaryRow.account_id == account_id,
        SnapshotSummaryRow.captured_at > cutoff
    ).order_by(SnapshotSummaryRow.captured_at).all()
    return [
        ChartPoint(
            captured_at=r.captured_at,
            follower_count=r.follower_count,
            following_count=r.following_count,
            mutual_count=r.mutual_count,
        )
        for r in rows
    ]

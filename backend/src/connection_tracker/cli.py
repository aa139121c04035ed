"""CLI for connection tracking."""
import asyncio
import argparse
import logging
import sys
import json

from .config import settings
from .database import init_db, SessionLocal
from .collector import Collector
from .models import Run, SnapshotSummary
from .history import recent_changes
from .storage import SnapshotStore


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


async def cmd_crawl_async(args):
    """Run one crawl cycle."""
    init_db()
    db = SessionLocal()
    store = SnapshotStore(args.data_dir or settings.data_dir)

    try:
        async with Collector(store=store, db=db, monitored_handles=args.monitor or ()) as collector:
            if not args.json:
                print("Starting crawl...")
                if args.username:
                    print(f"  Target user: @{args.username.lstrip('@')}")
                else:
                    print(f"  Target user ID: {args.user_id}")
                if args.force_full:
                    print("  Mode: full crawl (known connections ignored)")

            result = await collector.run_collection(
                user_id=args.user_id,
                username=args.username,
                force_full=args.force_full
            )
            summary = result.summary()

            if args.json:
                print(json.dumps(summary, indent=2))
                return result

            print(f"\nCrawl completed!")
            print(f"  Run ID: {summary['run_id']}")
            print(f"  Account ID: {summary['account_id']}")
            print(f"  Snapshot: {summary['snapshot_file']} ({summary['kind']})")
            print(f"  Following: {summary['following_count']}")
            print(f"  Followers: {summary['follower_count']}")
            print(f"  Mutual: {summary['mutual_count']}")

            for direction in ("following", "followers"):
                if summary[f"{direction}_stopped_early"]:
                    print(f"  Note: {direction} stopped early; unfollows beyond fetched pages not detected")
                if summary[f"{direction}_incomplete"]:
                    print(f"  Warning: {direction} crawl failed part-way; unfollows not detected")

            diff = summary["diff"]
            if diff is None:
                print(f"\n  First snapshot - no diff computed")
            else:
                print(f"\n  Following changes:")
                print(f"    New: +{diff['following_added']}")
                print(f"    Lost: -{diff['following_removed']}")
                print(f"\n  Follower changes:")
                print(f"    New: +{diff['followers_added']}")
                print(f"    Lost: -{diff['followers_removed']}")
                print(f"\n  New mutual connections: {diff['new_mutual']}")

            if result.signals:
                print(f"\n  Signals:")
                for signal in result.signals:
                    print(f"    - {signal.title}: {signal.explanation}")

            return result

    except Exception as e:
        print(f"\nCrawl failed: {e}", file=sys.stderr)
        raise
    finally:
        db.close()


def cmd_crawl(args):
    """Run one crawl cycle (sync wrapper)."""
    return asyncio.run(cmd_crawl_async(args))


def cmd_snapshots(args):
    """List stored snapshots for an account."""
    store = SnapshotStore(args.data_dir or settings.data_dir)
    names = store.list_snapshots(args.account_id)

    if not names:
        print(f"No snapshots found for {args.account_id}")
        return

    print(f"Snapshots for {args.account_id} (latest {args.limit}):")
    print("-" * 70)
    for name in reversed(names[-args.limit:]):
        snapshot = store.load(args.account_id, name)
        print(f"  {name} [{snapshot.kind}]")
        print(f"    Following: {len(snapshot.following)}  "
              f"Followers: {len(snapshot.followers)}  "
              f"Mutual: {len(snapshot.mutual)}")


def cmd_changes(args):
    """Show recently added and removed connections."""
    store = SnapshotStore(args.data_dir or settings.data_dir)
    changes = recent_changes(store, args.account_id, args.limit)

    if not changes:
        print(f"No changes recorded for {args.account_id}")
        return

    print(f"Recent changes for {args.account_id}:")
    print("-" * 70)
    for change in changes:
        sign = "+" if change.change_type == "added" else "-"
        handle = change.user.username or change.user.id
        print(f"  {sign} {change.direction.value:<9} @{handle}  {change.timestamp.isoformat()}")


def cmd_runs(args):
    """List crawl runs."""
    init_db()
    db = SessionLocal()

    try:
        runs = db.query(Run).order_by(Run.started_at.desc()).limit(args.limit).all()

        if not runs:
            print("No runs found")
            return

        print(f"Recent runs (limit {args.limit}):")
        print("-" * 70)
        for run in runs:
            duration = ""
            if run.finished_at:
                delta = run.finished_at - run.started_at
                duration = f" ({delta.total_seconds():.1f}s)"

            print(f"  #{run.run_id}: {run.status}{duration}")
            print(f"    Account: {run.account_id}")
            print(f"    Started: {run.started_at}")
            if run.notes:
                print(f"    Notes: {run.notes}")
            print()
    finally:
        db.close()


def cmd_stats(args):
    """Show database statistics."""
    init_db()
    db = SessionLocal()

    try:
        total_runs = db.query(Run).count()
        completed_runs = db.query(Run).filter(Run.status == "completed").count()
        total_summaries = db.query(SnapshotSummary).count()

        print("Connection Tracker Statistics")
        print("=" * 40)
        print(f"Runs: {total_runs} ({completed_runs} completed)")
        print(f"Snapshots: {total_summaries}")

        latest = db.query(SnapshotSummary).order_by(
            SnapshotSummary.captured_at.desc()
        ).first()

        if latest:
            print(f"\nLatest snapshot:")
            print(f"  Account: {latest.account_id}")
            print(f"  Kind: {latest.kind}")
            print(f"  Following: {latest.following_count}")
            print(f"  Followers: {latest.follower_count}")
            print(f"  Mutual: {latest.mutual_count}")
            print(f"  Time: {latest.captured_at}")
    finally:
        db.close()


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("connection_tracker.api:app", host=args.host, port=args.port, reload=args.reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Connection Tracker - follower/following snapshots and diffs"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--data-dir", help="Snapshot data directory")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # crawl
    crawl_parser = subparsers.add_parser("crawl", help="Run one crawl cycle")
    target = crawl_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--username", "-u", help="Twitter handle to crawl")
    target.add_argument("--user-id", help="Twitter user ID to crawl")
    crawl_parser.add_argument("--force-full", action="store_true",
                              help="Fetch every page, ignoring known connections")
    crawl_parser.add_argument("--monitor", action="append",
                              help="Handle of another monitored account (repeatable)")
    crawl_parser.add_argument("--json", action="store_true", help="Output full summary as JSON")
    crawl_parser.set_defaults(func=cmd_crawl)

    # snapshots
    snapshots_parser = subparsers.add_parser("snapshots", help="List stored snapshots")
    snapshots_parser.add_argument("account_id", help="Twitter user ID")
    snapshots_parser.add_argument("--limit", type=int, default=10, help="Number of snapshots")
    snapshots_parser.set_defaults(func=cmd_snapshots)

    # changes
    changes_parser = subparsers.add_parser("changes", help="Show recently added/removed connections")
    changes_parser.add_argument("account_id", help="Twitter user ID")
    changes_parser.add_argument("--limit", type=int, default=20, help="Number of changes")
    changes_parser.set_defaults(func=cmd_changes)

    # runs
    runs_parser = subparsers.add_parser("runs", help="List crawl runs")
    runs_parser.add_argument("--limit", type=int, default=10, help="Number of runs")
    runs_parser.set_defaults(func=cmd_runs)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    args.func(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())

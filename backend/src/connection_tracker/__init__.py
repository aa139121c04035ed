"""Connection Tracker - incremental follower/following snapshots and diffs."""

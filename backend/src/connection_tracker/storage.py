"""File-backed snapshot store.

Layout, one directory per monitored account::

    <data_dir>/<account_id>/first_seen.json
    <data_dir>/<account_id>/snapshots/<YYYYMMDDTHHMMSSffffffZ>.json

Snapshot names sort lexicographically in capture order, so the last name is
the most recent snapshot.
"""
import json
import logging
import os
import tempfile
from datetime import timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .first_seen import FirstSeenIndex
from .schemas import SCHEMA_VERSION, FirstSeenDocument, Snapshot


logger = logging.getLogger(__name__)


FIRST_SEEN_FILENAME = "first_seen.json"
SNAPSHOT_DIRNAME = "snapshots"
SNAPSHOT_SUFFIX = ".json"


class CorruptPersistedStateError(Exception):
    """A snapshot or first-seen file exists but cannot be parsed."""
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt persisted state in {path}: {reason}")


class PersistenceError(Exception):
    """Writing a crawl cycle's files failed; nothing was committed."""
    pass


def snapshot_filename(snapshot: Snapshot) -> str:
    captured = snapshot.captured_at.astimezone(timezone.utc)
    return captured.strftime("%Y%m%dT%H%M%S%fZ") + SNAPSHOT_SUFFIX


def _read_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptPersistedStateError(path, str(e)) from e
    if not isinstance(data, dict):
        raise CorruptPersistedStateError(path, "expected a JSON object")
    version = data.get("schema_version")
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise CorruptPersistedStateError(path, f"unsupported schema_version {version!r}")
    return data


def _write_temp(directory: Path, payload: str) -> Path:
    """Write ``payload`` to a durable temp file in ``directory`` and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=SNAPSHOT_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return Path(tmp_name)


class SnapshotStore:
    """Persists snapshots and first-seen indexes under a data directory."""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)

    def account_dir(self, account_id: str) -> Path:
        if not account_id or "/" in account_id or account_id in (".", ".."):
            raise ValueError(f"Invalid account id: {account_id!r}")
        return self.data_dir / account_id

    def snapshot_dir(self, account_id: str) -> Path:
        return self.account_dir(account_id) / SNAPSHOT_DIRNAME

    def first_seen_path(self, account_id: str) -> Path:
        return self.account_dir(account_id) / FIRST_SEEN_FILENAME

    def list_snapshots(self, account_id: str) -> list[str]:
        """Snapshot file names for an account, oldest first."""
        directory = self.snapshot_dir(account_id)
        if not directory.exists():
            return []
        return sorted(
            p.name for p in directory.iterdir()
            if p.suffix == SNAPSHOT_SUFFIX and not p.name.startswith(".")
        )

    def load(self, account_id: str, name: str) -> Snapshot:
        path = self.snapshot_dir(account_id) / name
        data = _read_json(path)
        try:
            return Snapshot.model_validate(data)
        except ValidationError as e:
            raise CorruptPersistedStateError(path, str(e)) from e

    def load_latest(self, account_id: str) -> Optional[Snapshot]:
        names = self.list_snapshots(account_id)
        if not names:
            return None
        return self.load(account_id, names[-1])

    def load_first_seen(self, account_id: str) -> FirstSeenIndex:
        """Load the index, or an empty one if the account has never been crawled."""
        path = self.first_seen_path(account_id)
        if not path.exists():
            return FirstSeenIndex(account_id)
        data = _read_json(path)
        try:
            document = FirstSeenDocument.model_validate(data)
        except ValidationError as e:
            raise CorruptPersistedStateError(path, str(e)) from e
        return FirstSeenIndex.from_document(document)

    def commit(self, snapshot: Snapshot, index: FirstSeenIndex) -> Path:
        """
        Persist a cycle's snapshot and first-seen index together.

        Both documents are staged to temp files first. The index is swapped in
        before the snapshot, so a crash between the two swaps leaves the index
        ahead of the latest snapshot, never behind it. If the snapshot cannot
        be swapped in, the previous index is restored so the account's state
        is exactly what it was before the cycle.
        """
        if index.account_id != snapshot.account_id:
            raise PersistenceError(
                f"Index for {index.account_id} cannot be committed with "
                f"snapshot for {snapshot.account_id}"
            )

        snapshot_path = self.snapshot_dir(snapshot.account_id) / snapshot_filename(snapshot)
        index_path = self.first_seen_path(snapshot.account_id)
        if snapshot_path.exists():
            raise PersistenceError(f"Snapshot already exists: {snapshot_path}")

        staged: list[Path] = []
        try:
            snapshot_tmp = _write_temp(snapshot_path.parent, snapshot.model_dump_json(indent=2))
            staged.append(snapshot_tmp)
            index_tmp = _write_temp(index_path.parent, index.to_document().model_dump_json(indent=2))
            staged.append(index_tmp)
            backup_tmp = None
            if index_path.exists():
                backup_tmp = _write_temp(index_path.parent, index_path.read_text(encoding="utf-8"))
                staged.append(backup_tmp)

            os.replace(index_tmp, index_path)
            staged.remove(index_tmp)
            try:
                os.replace(snapshot_tmp, snapshot_path)
                staged.remove(snapshot_tmp)
            except OSError:
                if backup_tmp is None:
                    index_path.unlink(missing_ok=True)
                else:
                    os.replace(backup_tmp, index_path)
                    staged.remove(backup_tmp)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to commit cycle for {snapshot.account_id}: {e}") from e
        finally:
            for tmp in staged:
                tmp.unlink(missing_ok=True)

        logger.info(
            f"Committed snapshot {snapshot_path.name} for {snapshot.account_id}",
            extra={"event": "cycle_committed", "account_id": snapshot.account_id},
        )
        return snapshot_path

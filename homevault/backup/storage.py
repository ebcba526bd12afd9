"""
On-device storage of backup sets.

Layout:
    {backup_root}/{scope}/{set_id}/            finalized set
    {backup_root}/{scope}/.{set_id}.partial/   set being written

Set ids are UTC timestamps (YYYYmmdd_HHMMSS) with an optional _NN suffix
when several sets are started within the same second.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .errors import BackupError

logger = logging.getLogger(__name__)

SET_ID_FORMAT = '%Y%m%d_%H%M%S'
_SET_ID_RE = re.compile(r'^(\d{8}_\d{6})(?:_(\d{2,}))?$')
_STAGING_RE = re.compile(r'^\.(\d{8}_\d{6}(?:_\d{2,})?)\.partial$')


class StorageError(BackupError):
    """Raised when a backup set cannot be created, finalized or removed."""
    pass


class RetentionDeleteRace(StorageError):
    """A set disappeared between listing and deletion; never surfaced."""
    pass


@dataclass(frozen=True, order=True)
class SetId:
    """Strictly ordered backup-set identifier."""
    timestamp: datetime
    seq: int = 0

    def __str__(self) -> str:
        base = self.timestamp.strftime(SET_ID_FORMAT)
        return f"{base}_{self.seq:02d}" if self.seq else base

    @classmethod
    def parse(cls, name: str) -> Optional['SetId']:
        """Parse a directory name; anything that is not a set id yields None."""
        match = _SET_ID_RE.match(name)
        if not match:
            return None
        try:
            timestamp = datetime.strptime(match.group(1), SET_ID_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return None
        return cls(timestamp, int(match.group(2) or 0))


def next_set_id(existing: Iterable[SetId], now: Optional[datetime] = None) -> SetId:
    """
    Generate an id strictly greater than every existing one.

    Within the same second (or if the clock went backwards) the newest id's
    timestamp is reused with the next sequence number.
    """
    now = now or datetime.now(timezone.utc)
    candidate = SetId(now.astimezone(timezone.utc).replace(microsecond=0))
    newest = max(existing, default=None)

    if newest is None or candidate.timestamp > newest.timestamp:
        return candidate
    return SetId(newest.timestamp, newest.seq + 1)


@dataclass(frozen=True)
class BackupSetInfo:
    scope: str
    set_id: SetId
    path: Path


class BackupSetStore:
    """
    Handler for backup sets under the backup root of the data device.
    """

    def __init__(self, backup_root):
        self.backup_root = Path(backup_root)

    def scope_dir(self, scope: str) -> Path:
        return self.backup_root / scope

    def _scan(self, scope: str, pattern) -> List[BackupSetInfo]:
        scope_dir = self.scope_dir(scope)
        if not scope_dir.is_dir():
            return []

        sets = []
        try:
            for entry in scope_dir.iterdir():
                match = pattern.match(entry.name)
                if not match or not entry.is_dir():
                    continue
                set_id = SetId.parse(match.group(1) if pattern is _STAGING_RE else entry.name)
                if set_id:
                    sets.append(BackupSetInfo(scope, set_id, entry))
        except OSError as e:
            raise StorageError(f"Failed to list backup sets in {scope_dir}: {e}")

        return sorted(sets, key=lambda s: s.set_id)

    def list_sets(self, scope: str) -> List[BackupSetInfo]:
        """Finalized sets of a scope, oldest first."""
        return self._scan(scope, _SET_ID_RE)

    def list_staging(self, scope: str) -> List[BackupSetInfo]:
        """Unfinished (staging) sets of a scope, oldest first."""
        return self._scan(scope, _STAGING_RE)

    def list_scopes(self) -> List[str]:
        if not self.backup_root.is_dir():
            return []
        return sorted(p.name for p in self.backup_root.iterdir() if p.is_dir() and not p.name.startswith('.'))

    def latest(self, scope: str) -> Optional[BackupSetInfo]:
        sets = self.list_sets(scope)
        return sets[-1] if sets else None

    def get(self, scope: str, set_id: str) -> Optional[BackupSetInfo]:
        parsed = SetId.parse(set_id)
        if parsed is None:
            return None
        path = self.scope_dir(scope) / str(parsed)
        if not path.is_dir():
            return None
        return BackupSetInfo(scope, parsed, path)

    def begin_set(self, scope: str, now: Optional[datetime] = None) -> Tuple[SetId, Path]:
        """
        Allocate a new set id and create its staging directory.

        The id is fixed here, before any artifact is written.

        Returns:
            (SetId, staging directory path)

        Raises:
            StorageError: If the staging directory cannot be created
        """
        scope_dir = self.scope_dir(scope)
        try:
            scope_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create {scope_dir}: {e}")

        existing = [s.set_id for s in self.list_sets(scope) + self.list_staging(scope)]

        while True:
            set_id = next_set_id(existing, now)
            staging = scope_dir / f'.{set_id}.partial'
            try:
                staging.mkdir()
                return set_id, staging
            except FileExistsError:
                existing.append(set_id)
            except OSError as e:
                raise StorageError(f"Failed to create staging directory {staging}: {e}")

    def finalize(self, scope: str, set_id: SetId, staging: Path) -> Path:
        """
        Atomically publish a staging directory under its final name.

        Raises:
            StorageError: If the final name is taken or the rename fails
        """
        final = self.scope_dir(scope) / str(set_id)
        if final.exists():
            raise StorageError(f"Backup set already exists: {final}")
        try:
            os.rename(staging, final)
        except OSError as e:
            raise StorageError(f"Failed to finalize backup set {final}: {e}")
        return final

    def delete(self, path) -> None:
        """
        Remove a set directory.

        Raises:
            RetentionDeleteRace: If the directory is already gone
            StorageError: If deletion fails
        """
        path = Path(path)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            raise RetentionDeleteRace(f"Already removed: {path}")
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")

"""
Retention policy enforcement for backup sets.

A set's age comes from the timestamp encoded in its directory name, not from
filesystem metadata, so copied or restored sets keep their age.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from homevault.config import Settings
from .storage import BackupSetStore, RetentionDeleteRace, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Maximum age per backup scope."""
    windows: Mapping[str, timedelta]

    @classmethod
    def from_days(cls, days: Mapping[str, int]) -> 'RetentionPolicy':
        return cls(MappingProxyType({scope: timedelta(days=n) for scope, n in days.items()}))


class RetentionManager:
    """
    Deletes backup sets older than their scope's retention window.
    """

    def __init__(self, store: BackupSetStore, policy: RetentionPolicy):
        """
        Initialize retention manager.

        Args:
            store: Backup-set store to sweep
            policy: Retention windows; scopes not listed are never touched
        """
        self.store = store
        self.policy = policy
        self.logs = []

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce the policy for every scope it lists.

        Returns:
            Dict with summary of cleanup operations:
            {
                'scopes_processed': int,
                'deleted': List[str],   # scope/set_id
                'kept': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        now = now or datetime.now(timezone.utc)
        self._log("Starting retention sweep")

        summary = {
            'scopes_processed': 0,
            'deleted': [],
            'kept': 0,
            'errors': []
        }

        for scope, window in self.policy.windows.items():
            try:
                result = self.sweep_scope(scope, window, now)
                summary['scopes_processed'] += 1
                summary['deleted'].extend(f"{scope}/{set_id}" for set_id in result['deleted'])
                summary['kept'] += result['kept']
                summary['errors'].extend(result['errors'])
            except StorageError as e:
                error_msg = f"Failed to sweep scope {scope}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention sweep complete. "
            f"Scopes: {summary['scopes_processed']}, "
            f"Deleted: {len(summary['deleted'])}, "
            f"Kept: {summary['kept']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def sweep_scope(self, scope: str, window: timedelta, now: datetime) -> Dict[str, Any]:
        """
        Delete the sets of one scope older than window.

        Unfinished (staging) sets older than the window are removed too.

        Returns:
            Dict: {'deleted': List[str], 'kept': int, 'errors': List[str]}

        Raises:
            StorageError: If the scope cannot be listed
        """
        self._log(f"Scope {scope}: keeping {window.days} days")
        result = {'deleted': [], 'kept': 0, 'errors': []}

        candidates = self.store.list_sets(scope) + self.store.list_staging(scope)
        for info in candidates:
            age = now - info.set_id.timestamp
            if age <= window:
                result['kept'] += 1
                continue

            try:
                self.store.delete(info.path)
                result['deleted'].append(str(info.set_id))
                self._log(f"Deleted {scope}/{info.path.name} (age {age.days} days)")
            except RetentionDeleteRace:
                logger.debug("Set %s already removed", info.path)
            except StorageError as e:
                msg = f"Failed to delete {info.path}: {e}"
                self._log(msg)
                result['errors'].append(msg)

        return result

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def sweep_retention(settings: Settings, policy: Optional[RetentionPolicy] = None) -> Dict[str, Any]:
    """
    Apply the retention policy to the backup sets on the data device.

    This function is called by the CLI and the scheduler.

    Returns:
        Summary dict from RetentionManager.sweep()
    """
    policy = policy or RetentionPolicy.from_days(settings.retention_days)
    manager = RetentionManager(BackupSetStore(settings.backup_root), policy)
    return manager.sweep()

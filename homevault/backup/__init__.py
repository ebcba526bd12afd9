"""
Backup module for homevault.

This module handles the backup side of the data device:
- Scopes (full, per-dataset) and their artifacts
- Service pausing around capture
- Archives and database dumps
- Backup-set storage, manifests and verification
- Retention policy enforcement
"""

from .errors import BackupError
from .executor import BackupExecutor, RunSummary, execute_backup
from .manifest import ArtifactMissing, read_manifest, reverify, verify_set
from .retention import RetentionManager, RetentionPolicy, sweep_retention
from .scopes import available_scopes, build_scope, UnknownScope
from .storage import BackupSetStore, SetId

__all__ = [
    'BackupError',
    'BackupExecutor',
    'RunSummary',
    'execute_backup',
    'ArtifactMissing',
    'read_manifest',
    'reverify',
    'verify_set',
    'RetentionManager',
    'RetentionPolicy',
    'sweep_retention',
    'available_scopes',
    'build_scope',
    'UnknownScope',
    'BackupSetStore',
    'SetId',
]

"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create BackupRun record (status: running)
2. Check the data root is mounted
3. Allocate the set id and its staging directory
4. Pause the services writing the scope's data
5. Capture every artifact (archives, database dumps)
6. Resume services (always, even if capture raised)
7. Write the manifest, publish the set under its final name
8. Verify the published set
9. Update BackupRun (status: success/partial/failed)
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from homevault import db
from homevault.config import Settings
from homevault.models import BackupRun
from .compression import create_archive, CompressionError
from .dumps import ComposePostgresDumper, DatabaseDumper, DumpError
from .errors import BackupError
from .manifest import ArtifactMissing, Manifest, inspect_artifacts, verify_set, write_manifest
from .scopes import ArtifactSpec, build_scope
from .services import ComposeServiceControl, ServiceControl, paused_services
from .storage import BackupSetStore

logger = logging.getLogger(__name__)


class DataRootNotMounted(BackupError):
    """Raised when the data root is not a mount point."""
    pass


class CaptureError(BackupError):
    """Raised when an artifact cannot be captured."""
    pass


@dataclass
class RunSummary:
    """Outcome of one backup run."""
    scope: str
    set_id: str
    set_path: Path
    manifest: Manifest
    paused_services: List[str] = field(default_factory=list)
    warnings: List[ArtifactMissing] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings

    @property
    def status(self) -> str:
        return 'success' if self.ok else 'partial'


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one scope.
    """

    def __init__(
        self,
        settings: Settings,
        scope: str,
        services: Optional[ServiceControl] = None,
        dumper: Optional[DatabaseDumper] = None,
        store: Optional[BackupSetStore] = None,
        skip_artifacts: Iterable[str] = (),
    ):
        """
        Initialize backup executor.

        Args:
            settings: Resolved settings
            scope: Scope name ('full' or a dataset)
            services: Service control (docker compose by default)
            dumper: Database dumper (pg_dump in the container by default)
            store: Backup-set store (under the data root by default)
            skip_artifacts: Artifact names to leave out of this run

        Raises:
            UnknownScope: If the scope is not configured
        """
        self.settings = settings
        self.scope = build_scope(settings, scope)
        self.services = services or ComposeServiceControl(settings.compose_file, settings.compose_command)
        self.dumper = dumper or ComposePostgresDumper(settings.compose_file, settings.compose_command)
        self.store = store or BackupSetStore(settings.backup_root)
        self.skip_artifacts = set(skip_artifacts)

        self.run_record = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> RunSummary:
        """
        Execute the backup.

        Returns:
            RunSummary; non-fatal problems are listed in summary.warnings

        Raises:
            DataRootNotMounted, StorageError, ManifestError, ServiceControlError
            and any unexpected error; the run record is marked failed first
        """
        self.run_record = BackupRun(
            scope=self.scope.name,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()

        self._log(f"Starting {self.scope.name} backup")

        try:
            summary = self._execute_workflow()

            self.run_record.status = summary.status
            self.run_record.total_bytes = summary.manifest.total_bytes
            self.run_record.missing_artifacts = len(summary.warnings)
            self.run_record.completed_at = datetime.utcnow()
            self._log(
                f"Backup completed: {summary.set_id} "
                f"({summary.manifest.total_bytes / 1024 / 1024:.2f} MB, "
                f"{len(summary.warnings)} warning(s))"
            )

        except Exception as e:
            self.run_record.status = 'failed'
            self.run_record.completed_at = datetime.utcnow()
            self.run_record.error_message = str(e)
            self._log(f"Backup failed: {e}")
            raise

        finally:
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return summary

    def _execute_workflow(self) -> RunSummary:
        """Execute the main backup workflow steps."""
        mount_root = str(self.settings.mount_root)
        if self.settings.require_mounted_data_root and not os.path.ismount(mount_root):
            raise DataRootNotMounted(f"Data root is not mounted at {mount_root}")

        # Step 1: Fix the set id before anything is written
        set_id, staging = self.store.begin_set(self.scope.name)
        self.run_record.set_id = str(set_id)
        self._log(f"Backup set: {set_id}")
        self._flush_logs_to_db()

        # Step 2: Capture with the dependent services paused
        capture_errors: Dict[str, str] = {}
        with paused_services(self.services, self.scope.services) as paused:
            if paused:
                self._log(f"Paused services: {', '.join(paused)}")
            for artifact in self.scope.artifacts:
                if artifact.name in self.skip_artifacts:
                    self._log(f"Skipping {artifact.name}")
                    continue
                try:
                    self._capture(artifact, staging)
                    self._log(f"Captured {artifact.name}")
                except (CaptureError, CompressionError, DumpError, OSError) as e:
                    capture_errors[artifact.name] = str(e)
                    self._log(f"Warning: failed to capture {artifact.name}: {e}")
                self._flush_logs_to_db()
        self._log("Services resumed")

        # Step 3: Manifest is the last file of the set
        manifest = Manifest(
            scope=self.scope.name,
            set_id=str(set_id),
            captured_at=set_id.timestamp,
            artifacts=inspect_artifacts(staging, self.scope.artifact_names),
        )
        write_manifest(staging, manifest)

        # Step 4: Publish
        final = self.store.finalize(self.scope.name, set_id, staging)
        self.run_record.set_path = str(final)
        self._log(f"Backup set written: {final}")

        # Step 5: Verify
        report = verify_set(final, self.scope.artifact_names)
        warnings = []
        for failure in report.failures:
            if failure.artifact in self.skip_artifacts:
                failure = ArtifactMissing(failure.artifact, 'skipped')
            elif failure.artifact in capture_errors:
                failure = ArtifactMissing(failure.artifact, f"capture failed: {capture_errors[failure.artifact]}")
            warnings.append(failure)
            self._log(f"Warning: {failure}")

        return RunSummary(
            scope=self.scope.name,
            set_id=str(set_id),
            set_path=final,
            manifest=manifest,
            paused_services=list(paused),
            warnings=warnings,
        )

    def _capture(self, artifact: ArtifactSpec, staging: Path):
        """
        Write one artifact into the staging directory.

        Raises:
            CaptureError, CompressionError, DumpError
        """
        dest = staging / artifact.name

        if artifact.kind == 'dump':
            self.dumper.dump(artifact.db_service, artifact.db_name, artifact.db_user, str(dest))
            return

        sources = [p for p in artifact.sources if p.exists()]
        if artifact.allow_partial:
            if not sources:
                raise CaptureError(f"None of the sources exist: {', '.join(map(str, artifact.sources))}")
        elif len(sources) != len(artifact.sources):
            missing = [str(p) for p in artifact.sources if not p.exists()]
            raise CaptureError(f"Source not found: {', '.join(missing)}")

        create_archive([str(p) for p in sources], str(dest), self.settings.compression_format)

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record:
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup(settings: Settings, scope: str, **kwargs) -> RunSummary:
    """
    Execute a backup of one scope.

    Args:
        settings: Resolved settings
        scope: Scope name
        **kwargs: Passed to BackupExecutor (collaborators, skip_artifacts)

    Returns:
        RunSummary
    """
    executor = BackupExecutor(settings, scope, **kwargs)
    return executor.execute()

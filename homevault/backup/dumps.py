"""
Structured database dumps.

A dump taken by the database server itself is transactionally consistent, so
the database service keeps running while it is written.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Sequence

from .errors import BackupError

logger = logging.getLogger(__name__)


class DumpError(BackupError):
    """Raised when a database dump fails."""
    pass


class DatabaseDumper:
    """Interface: write a dump of one database to a file."""

    def dump(self, service: str, database: str, user: str, dest_path: str) -> str:
        raise NotImplementedError


class ComposePostgresDumper(DatabaseDumper):
    """
    Runs pg_dump inside the database container of a compose project.
    """

    def __init__(self, compose_file, command: Sequence[str] = ('docker', 'compose')):
        self.compose_file = Path(compose_file)
        self.command = list(command)

    def dump_command(self, service: str, database: str, user: str) -> List[str]:
        return self.command + [
            '-f', str(self.compose_file),
            'exec', '-T', service,
            'pg_dump', '-U', user, database,
        ]

    def dump(self, service: str, database: str, user: str, dest_path: str) -> str:
        """
        Stream pg_dump output into dest_path.

        Returns:
            dest_path

        Raises:
            DumpError: If pg_dump fails (the partial file is removed)
        """
        cmd = self.dump_command(service, database, user)
        logger.info("Dumping database %s from %s", database, service)

        try:
            with open(dest_path, 'wb') as out:
                subprocess.run(
                    cmd, stdout=out, stderr=subprocess.PIPE, check=True,
                    cwd=str(self.compose_file.parent)
                )
        except (OSError, subprocess.CalledProcessError) as e:
            if os.path.exists(dest_path):
                os.remove(dest_path)
            detail = e
            if isinstance(e, subprocess.CalledProcessError) and e.stderr:
                detail = e.stderr.decode(errors='replace').strip()
            raise DumpError(f"Dump of {database} from {service} failed: {detail}")

        return dest_path

"""
Persisted mount table (fstab format).

Records are appended once per mount path and never rewritten.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import MountTableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MountRecord:
    """One fstab line: device, mount path, filesystem type and options."""
    device: str
    mount_path: str
    fs_type: str
    options: str = 'defaults'
    dump: int = 0
    passno: int = 2

    def to_line(self) -> str:
        return f"{self.device} {self.mount_path} {self.fs_type} {self.options} {self.dump} {self.passno}"

    @classmethod
    def from_line(cls, line: str) -> Optional['MountRecord']:
        """Parse an fstab line; comments, blanks and short lines yield None."""
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            return None

        fields = stripped.split()
        if len(fields) < 3:
            return None

        def _int(index, default):
            try:
                return int(fields[index])
            except (IndexError, ValueError):
                return default

        return cls(
            device=fields[0],
            mount_path=fields[1],
            fs_type=fields[2],
            options=fields[3] if len(fields) > 3 else 'defaults',
            dump=_int(4, 0),
            passno=_int(5, 0),
        )


class FstabMountTable:
    """
    Append-only mount table stored in an fstab-format file.
    """

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> List[MountRecord]:
        """
        Read every record in the table.

        Returns:
            List of MountRecord (empty if the file does not exist)

        Raises:
            MountTableError: If the file cannot be read
        """
        if not self.path.exists():
            return []

        try:
            lines = self.path.read_text().splitlines()
        except OSError as e:
            raise MountTableError(f"Failed to read mount table {self.path}: {e}")

        records = []
        for line in lines:
            record = MountRecord.from_line(line)
            if record:
                records.append(record)
        return records

    def find(self, mount_path) -> Optional[MountRecord]:
        """Return the record for a mount path, if any."""
        wanted = str(Path(mount_path))
        for record in self.read():
            if str(Path(record.mount_path)) == wanted:
                return record
        return None

    def ensure(self, record: MountRecord) -> bool:
        """
        Append a record unless one already exists for its mount path.

        Args:
            record: MountRecord to persist

        Returns:
            True if the record was appended, False if the path was already recorded

        Raises:
            MountTableError: If the file cannot be written
        """
        existing = self.find(record.mount_path)
        if existing:
            if existing.device != record.device:
                logger.warning(
                    "Mount table already maps %s to %s (not %s); leaving it unchanged",
                    record.mount_path, existing.device, record.device
                )
            else:
                logger.info("Mount table already has an entry for %s", record.mount_path)
            return False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            prefix = ''
            if self.path.exists():
                content = self.path.read_text()
                if content and not content.endswith('\n'):
                    prefix = '\n'
            with open(self.path, 'a') as f:
                f.write(prefix + record.to_line() + '\n')
        except OSError as e:
            raise MountTableError(f"Failed to write mount table {self.path}: {e}")

        logger.info("Added %s to %s for automatic mounting", record.mount_path, self.path)
        return True

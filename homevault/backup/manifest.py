"""
Backup manifests and verification.

manifest.json:
    {
        "scope": "full",
        "setId": "20240115_020000",
        "capturedAt": "2024-01-15T02:00:00+00:00",
        "totalBytes": 1234,
        "artifacts": [{"name": "...", "bytes": 1234, "present": true}, ...]
    }
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import BackupError

MANIFEST_NAME = 'manifest.json'


class ManifestError(BackupError):
    """Raised when a manifest cannot be written or read."""
    pass


class ArtifactMissing(Exception):
    """
    Non-fatal: an expected artifact is absent or empty.

    Collected in run summaries, never raised out of a backup run.
    """

    def __init__(self, artifact: str, reason: str):
        super().__init__(f"{artifact}: {reason}")
        self.artifact = artifact
        self.reason = reason


@dataclass
class ArtifactStatus:
    name: str
    bytes: int
    present: bool

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'bytes': self.bytes, 'present': self.present}


@dataclass
class Manifest:
    scope: str
    set_id: str
    captured_at: datetime
    artifacts: List[ArtifactStatus] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(a.bytes for a in self.artifacts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope': self.scope,
            'setId': self.set_id,
            'capturedAt': self.captured_at.isoformat(),
            'totalBytes': self.total_bytes,
            'artifacts': [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        return cls(
            scope=data.get('scope', ''),
            set_id=data.get('setId', ''),
            captured_at=datetime.fromisoformat(data['capturedAt']),
            artifacts=[
                ArtifactStatus(a['name'], int(a['bytes']), bool(a['present']))
                for a in data.get('artifacts', [])
            ],
        )


def inspect_artifacts(set_dir, names: Iterable[str]) -> List[ArtifactStatus]:
    """Record presence and byte size of each expected artifact."""
    set_dir = Path(set_dir)
    statuses = []
    for name in names:
        path = set_dir / name
        if path.is_file():
            statuses.append(ArtifactStatus(name, path.stat().st_size, True))
        else:
            statuses.append(ArtifactStatus(name, 0, False))
    return statuses


def write_manifest(set_dir, manifest: Manifest) -> Path:
    """
    Write manifest.json into a set directory.

    The file is written under a temporary name and renamed into place.

    Raises:
        ManifestError: If the manifest cannot be written
    """
    set_dir = Path(set_dir)
    final = set_dir / MANIFEST_NAME
    tmp = set_dir / f'.{MANIFEST_NAME}.tmp'

    try:
        with open(tmp, 'w') as f:
            json.dump(manifest.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, final)
    except OSError as e:
        raise ManifestError(f"Failed to write manifest in {set_dir}: {e}")

    return final


def read_manifest(set_dir) -> Manifest:
    """
    Raises:
        ManifestError: If the manifest is missing or malformed
    """
    path = Path(set_dir) / MANIFEST_NAME
    try:
        with open(path, 'r') as f:
            return Manifest.from_dict(json.load(f))
    except FileNotFoundError:
        raise ManifestError(f"Manifest not found: {path}")
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ManifestError(f"Invalid manifest {path}: {e}")


@dataclass
class VerificationReport:
    set_dir: Path
    checked: List[ArtifactStatus] = field(default_factory=list)
    failures: List[ArtifactMissing] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def verify_set(set_dir, expected: Iterable[str]) -> VerificationReport:
    """
    Re-check every expected artifact of a set, plus its manifest.

    Missing and zero-byte artifacts are reported, not raised.
    """
    set_dir = Path(set_dir)
    report = VerificationReport(set_dir=set_dir)

    for status in inspect_artifacts(set_dir, expected):
        report.checked.append(status)
        if not status.present:
            report.failures.append(ArtifactMissing(status.name, 'missing'))
        elif status.bytes == 0:
            report.failures.append(ArtifactMissing(status.name, 'empty'))

    if not (set_dir / MANIFEST_NAME).is_file():
        report.failures.append(ArtifactMissing(MANIFEST_NAME, 'missing'))

    return report


def reverify(set_dir, fallback: Iterable[str]) -> Tuple[Optional[Manifest], VerificationReport]:
    """
    Verify a published set against the artifacts its manifest lists.

    When the manifest cannot be read, fallback names are checked instead and
    the missing manifest is reported by the verification itself.

    Returns:
        (manifest or None, VerificationReport)
    """
    try:
        manifest = read_manifest(set_dir)
    except ManifestError:
        return None, verify_set(set_dir, fallback)
    return manifest, verify_set(set_dir, [a.name for a in manifest.artifacts])

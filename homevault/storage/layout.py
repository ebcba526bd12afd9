"""
Directory layout on the provisioned device.

Creates the namespace tree (never deleting anything) and applies one
ownership/permission policy to everything under the mount root.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Iterable

from .errors import LayoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnershipPolicy:
    uid: int
    gid: int
    dir_mode: int = 0o755
    file_mode: int = 0o644


@dataclass
class LayoutReport:
    created: List[Path] = field(default_factory=list)
    existing: List[Path] = field(default_factory=list)


def declared_paths(mount_root, schema: Mapping[str, Iterable[str]]) -> List[Path]:
    """
    Expand a namespace schema into absolute paths.

    Every namespace directory is included, followed by its subpaths.
    """
    root = Path(mount_root)
    paths = []
    for namespace, subpaths in schema.items():
        paths.append(root / namespace)
        for subpath in subpaths:
            paths.append(root / namespace / subpath)
    return paths


def missing_paths(mount_root, schema: Mapping[str, Iterable[str]]) -> List[Path]:
    """Declared paths that do not exist yet; empty means provisioning is complete."""
    return [p for p in declared_paths(mount_root, schema) if not p.is_dir()]


def apply_ownership(root, policy: OwnershipPolicy):
    """
    Apply the ownership/permission policy to the whole tree under root.

    Symlinks are neither followed nor modified.

    Raises:
        LayoutError: If ownership or modes cannot be changed
    """
    root = Path(root)

    def _apply(path: Path, mode: int):
        if path.is_symlink():
            return
        os.chown(path, policy.uid, policy.gid, follow_symlinks=False)
        os.chmod(path, mode)

    try:
        _apply(root, policy.dir_mode)
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames:
                _apply(Path(dirpath) / name, policy.dir_mode)
            for name in filenames:
                _apply(Path(dirpath) / name, policy.file_mode)
    except PermissionError as e:
        raise LayoutError(f"Permission denied setting ownership under {root}: {e}")
    except OSError as e:
        raise LayoutError(f"Failed to set ownership under {root}: {e}")


def provision_layout(mount_root, schema: Mapping[str, Iterable[str]], policy: OwnershipPolicy) -> LayoutReport:
    """
    Create every declared path that is missing, then apply the ownership policy.

    Args:
        mount_root: Mounted data root
        schema: Namespace -> subpaths
        policy: Ownership and modes for the whole tree

    Returns:
        LayoutReport listing created and already existing paths

    Raises:
        LayoutError: If a path cannot be created or is blocked by a file
    """
    report = LayoutReport()

    for path in declared_paths(mount_root, schema):
        if path.is_dir():
            report.existing.append(path)
            continue
        if path.exists():
            raise LayoutError(f"Cannot create directory {path}: a file is in the way")
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LayoutError(f"Failed to create {path}: {e}")
        report.created.append(path)

    logger.info(
        "Directory layout ready under %s (%d created, %d already present)",
        mount_root, len(report.created), len(report.existing)
    )

    apply_ownership(mount_root, policy)
    logger.info("Ownership %d:%d applied under %s", policy.uid, policy.gid, mount_root)

    return report

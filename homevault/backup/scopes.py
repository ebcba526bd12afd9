"""
Backup scopes and the artifacts each one is expected to produce.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from homevault.config import Settings
from .compression import archive_name
from .errors import BackupError

FULL_SCOPE = 'full'

# Namespaces never captured by the full scope
EXCLUDED_NAMESPACES = ('backups',)


class UnknownScope(BackupError, ValueError):
    """Raised for a scope name that is neither 'full' nor a configured dataset."""
    pass


@dataclass(frozen=True)
class ArtifactSpec:
    """One expected file of a backup set."""
    name: str
    kind: str  # 'archive' or 'dump'
    sources: Tuple[Path, ...] = ()
    services: Tuple[str, ...] = ()
    allow_partial: bool = False
    db_service: Optional[str] = None
    db_name: Optional[str] = None
    db_user: Optional[str] = None


@dataclass(frozen=True)
class BackupScope:
    name: str
    artifacts: Tuple[ArtifactSpec, ...]

    @property
    def artifact_names(self) -> List[str]:
        return [a.name for a in self.artifacts]

    @property
    def services(self) -> List[str]:
        """Services whose data this scope reads, without duplicates, in declaration order."""
        seen = []
        for artifact in self.artifacts:
            for service in artifact.services:
                if service not in seen:
                    seen.append(service)
        return seen


def available_scopes(settings: Settings) -> List[str]:
    return [FULL_SCOPE] + sorted(settings.datasets.keys())


def _full_scope(settings: Settings) -> BackupScope:
    fmt = settings.compression_format
    artifacts = []

    if settings.config_paths:
        artifacts.append(ArtifactSpec(
            name=archive_name('config', fmt),
            kind='archive',
            sources=settings.config_paths,
            allow_partial=True,
        ))

    for namespace in settings.namespace_schema:
        if namespace in EXCLUDED_NAMESPACES:
            continue
        artifacts.append(ArtifactSpec(
            name=archive_name(f'{namespace}_data', fmt),
            kind='archive',
            sources=(settings.mount_root / namespace,),
            services=settings.service_dependencies.get(namespace, ()),
        ))

    return BackupScope(FULL_SCOPE, tuple(artifacts))


def _dataset_scope(settings: Settings, name: str) -> BackupScope:
    dataset = settings.datasets[name]
    fmt = settings.compression_format
    artifacts = []

    if dataset.db_service:
        artifacts.append(ArtifactSpec(
            name=f'{name}_database.sql',
            kind='dump',
            db_service=dataset.db_service,
            db_name=dataset.db_name,
            db_user=dataset.db_user,
        ))

    for subpath, services in dataset.archives.items():
        artifacts.append(ArtifactSpec(
            name=archive_name(f'{name}_{subpath}', fmt),
            kind='archive',
            sources=(settings.mount_root / dataset.namespace / subpath,),
            services=tuple(services),
        ))

    return BackupScope(name, tuple(artifacts))


def build_scope(settings: Settings, name: str) -> BackupScope:
    """
    Resolve a scope name to its expected artifacts.

    Raises:
        UnknownScope: If the scope is not configured
    """
    if name == FULL_SCOPE:
        return _full_scope(settings)
    if name in settings.datasets:
        return _dataset_scope(settings, name)
    raise UnknownScope(
        f"Unknown backup scope: {name}. Valid options: {available_scopes(settings)}"
    )

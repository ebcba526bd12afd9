import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


# Default on-device layout: namespace -> subdirectories it needs
DEFAULT_NAMESPACE_SCHEMA = {
    'immich': ['upload', 'postgres', 'redis'],
    'homeassistant': [],
    'adguard': ['work', 'conf'],
    'npm': ['data', 'letsencrypt', 'mysql'],
    'samba': ['data', 'config'],
    'stremio': ['config', 'data'],
    'transmission': ['config', 'downloads', 'watch'],
    'portainer': [],
    'media': ['movies', 'tv', 'music', 'photos', 'downloads'],
    'backups': ['full', 'photos'],
}

# Compose services writing into each namespace
DEFAULT_SERVICE_DEPENDENCIES = {
    'immich': ['immich-server', 'immich-postgres', 'immich-redis'],
    'homeassistant': ['homeassistant'],
    'adguard': ['adguard'],
    'npm': ['npm', 'npm-db'],
    'transmission': ['transmission'],
    'portainer': ['portainer'],
}

# Single high-value dataset scopes
DEFAULT_DATASETS = {
    'photos': {
        'namespace': 'immich',
        'database': {
            'service': 'immich-postgres',
            'name': 'immich',
            'user': 'immich',
        },
        'archives': {
            'upload': ['immich-server'],
            'redis': ['immich-redis'],
        },
    },
}


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'homevault-status-api'

    # Run history database (kept off the managed device)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////var/lib/homevault/homevault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_DIR = os.environ.get('HOMEVAULT_LOG_DIR') or '/var/log/homevault'

    # Device and mount
    DEVICE_CLASS = os.environ.get('HOMEVAULT_DEVICE_CLASS', 'nvme')
    MOUNT_ROOT = os.environ.get('HOMEVAULT_MOUNT_ROOT', '/mnt/nvme')
    FS_TYPE = os.environ.get('HOMEVAULT_FS_TYPE', 'ext4')
    MOUNT_OPTIONS = os.environ.get('HOMEVAULT_MOUNT_OPTIONS', 'defaults')
    FSTAB_PATH = os.environ.get('HOMEVAULT_FSTAB', '/etc/fstab')
    DECISION_ROUNDS = int(os.environ.get('HOMEVAULT_DECISION_ROUNDS', 3))

    # Ownership applied to the whole tree after provisioning
    OWNER_UID = int(os.environ.get('HOMEVAULT_OWNER_UID') or os.environ.get('SUDO_UID') or os.getuid())
    OWNER_GID = int(os.environ.get('HOMEVAULT_OWNER_GID') or os.environ.get('SUDO_GID') or os.getgid())
    DIR_MODE = 0o755
    FILE_MODE = 0o644

    # Optional JSON file overriding namespaces/datasets/service_dependencies
    LAYOUT_FILE = os.environ.get('HOMEVAULT_LAYOUT_FILE')
    NAMESPACE_SCHEMA = DEFAULT_NAMESPACE_SCHEMA
    SERVICE_DEPENDENCIES = DEFAULT_SERVICE_DEPENDENCIES
    DATASETS = DEFAULT_DATASETS

    # Service orchestrator
    COMPOSE_FILE = os.environ.get('HOMEVAULT_COMPOSE_FILE', '/opt/homelab/docker-compose.yml')
    COMPOSE_COMMAND = os.environ.get('HOMEVAULT_COMPOSE_COMMAND', 'docker compose')
    CONFIG_PATHS = [
        p for p in os.environ.get(
            'HOMEVAULT_CONFIG_PATHS',
            '/opt/homelab/docker-compose.yml:/opt/homelab/.env:/opt/homelab/scripts'
        ).split(':') if p
    ]

    # Backups
    COMPRESSION_FORMAT = os.environ.get('HOMEVAULT_COMPRESSION', 'tar.gz')
    RETENTION_DAYS = {
        'full': int(os.environ.get('HOMEVAULT_RETENTION_FULL_DAYS', 30)),
        'photos': int(os.environ.get('HOMEVAULT_RETENTION_PHOTOS_DAYS', 7)),
    }
    REQUIRE_MOUNTED_DATA_ROOT = True

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULES = {
        'photos': '0 2 * * *',
        'full': '0 3 * * *',
    }
    RETENTION_SCHEDULE = '0 4 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "homevault.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    MOUNT_ROOT = os.path.join(DATA_DIR, 'mnt')
    FSTAB_PATH = os.path.join(DATA_DIR, 'fstab')
    REQUIRE_MOUNTED_DATA_ROOT = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration; paths are supplied through create_app overrides"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    REQUIRE_MOUNTED_DATA_ROOT = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def _freeze_lists(mapping: Mapping) -> Mapping[str, Tuple[str, ...]]:
    return MappingProxyType({key: tuple(value) for key, value in mapping.items()})


@dataclass(frozen=True)
class DatasetSettings:
    """A single high-value dataset that can be backed up on its own."""
    name: str
    namespace: str
    archives: Mapping[str, Tuple[str, ...]]
    db_service: Optional[str] = None
    db_name: Optional[str] = None
    db_user: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    """
    Immutable runtime settings, resolved once from the Flask config.

    Every component receives this value explicitly instead of reading the
    environment itself.
    """
    mount_root: Path
    device_class: str
    fs_type: str
    mount_options: str
    fstab_path: Path
    decision_rounds: int
    owner_uid: int
    owner_gid: int
    dir_mode: int
    file_mode: int
    namespace_schema: Mapping[str, Tuple[str, ...]]
    service_dependencies: Mapping[str, Tuple[str, ...]]
    datasets: Mapping[str, DatasetSettings]
    compose_file: Path
    compose_command: Tuple[str, ...]
    config_paths: Tuple[Path, ...]
    compression_format: str
    retention_days: Mapping[str, int]
    require_mounted_data_root: bool = True
    backup_schedules: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    retention_schedule: Optional[str] = None
    scheduler_timezone: str = 'UTC'

    @property
    def backup_root(self) -> Path:
        return self.mount_root / 'backups'

    @classmethod
    def from_config(cls, app_config: Mapping) -> 'Settings':
        """
        Build settings from a Flask config mapping.

        Args:
            app_config: app.config (or any mapping with the same keys)

        Returns:
            Frozen Settings instance
        """
        schema = app_config['NAMESPACE_SCHEMA']
        dependencies = app_config['SERVICE_DEPENDENCIES']
        datasets = app_config['DATASETS']

        layout_file = app_config.get('LAYOUT_FILE')
        if layout_file:
            try:
                with open(layout_file, 'r') as f:
                    layout = json.load(f)
            except (OSError, ValueError) as e:
                raise ValueError(f"HOMEVAULT_LAYOUT_FILE {layout_file} could not be read: {e}")
            schema = layout.get('namespaces', schema)
            dependencies = layout.get('service_dependencies', dependencies)
            datasets = layout.get('datasets', datasets)

        dataset_settings = {}
        for name, definition in datasets.items():
            database = definition.get('database') or {}
            dataset_settings[name] = DatasetSettings(
                name=name,
                namespace=definition['namespace'],
                archives=_freeze_lists(definition.get('archives', {})),
                db_service=database.get('service'),
                db_name=database.get('name'),
                db_user=database.get('user'),
            )

        return cls(
            mount_root=Path(app_config['MOUNT_ROOT']),
            device_class=app_config['DEVICE_CLASS'],
            fs_type=app_config['FS_TYPE'],
            mount_options=app_config['MOUNT_OPTIONS'],
            fstab_path=Path(app_config['FSTAB_PATH']),
            decision_rounds=int(app_config['DECISION_ROUNDS']),
            owner_uid=int(app_config['OWNER_UID']),
            owner_gid=int(app_config['OWNER_GID']),
            dir_mode=int(app_config['DIR_MODE']),
            file_mode=int(app_config['FILE_MODE']),
            namespace_schema=_freeze_lists(schema),
            service_dependencies=_freeze_lists(dependencies),
            datasets=MappingProxyType(dataset_settings),
            compose_file=Path(app_config['COMPOSE_FILE']),
            compose_command=tuple(app_config['COMPOSE_COMMAND'].split()),
            config_paths=tuple(Path(p) for p in app_config['CONFIG_PATHS']),
            compression_format=app_config['COMPRESSION_FORMAT'],
            retention_days=MappingProxyType(dict(app_config['RETENTION_DAYS'])),
            require_mounted_data_root=bool(app_config.get('REQUIRE_MOUNTED_DATA_ROOT', True)),
            backup_schedules=MappingProxyType(dict(app_config.get('BACKUP_SCHEDULES') or {})),
            retention_schedule=app_config.get('RETENTION_SCHEDULE'),
            scheduler_timezone=app_config.get('SCHEDULER_TIMEZONE', 'UTC'),
        )


def get_settings(app=None) -> Settings:
    """Return the Settings resolved for the given (or current) Flask app."""
    if app is None:
        from flask import current_app
        app = current_app
    return app.extensions['homevault']

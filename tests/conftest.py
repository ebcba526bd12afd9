"""
Shared pytest fixtures for homevault tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Resolved settings pointing at a temporary data root
- Fake host (block devices, mounts, processes) for provisioning tests
- Fake service control and database dumper for backup tests
"""

import os
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import pytest

from homevault import create_app, db as _db
from homevault.backup.dumps import DatabaseDumper
from homevault.backup.services import ServiceControl, ServiceControlError
from homevault.config import get_settings
from homevault.storage.devices import BlockDevice, DeviceInventory
from homevault.storage.errors import FormatFailed, MountFailed
from homevault.storage.release import Mounter, ProcessReleaser


class FakeMounter(Mounter):
    """
    In-memory mounts; mounting creates the target directory.

    fail_format / fail_mount: number of upcoming calls that fail
    busy: path -> number of non-lazy unmounts that fail
    stuck: paths that cannot be unmounted at all
    """

    def __init__(self, fail_format=0, fail_mount=0, busy=None, stuck=()):
        self.mounts = {}
        self.fstypes = {}
        self.calls = []
        self.fail_format = fail_format
        self.fail_mount = fail_mount
        self.busy = dict(busy or {})
        self.stuck = set(stuck)

    @property
    def formatted(self):
        return [call[1] for call in self.calls if call[0] == 'format']

    def format(self, device, fs_type):
        self.calls.append(('format', device, fs_type))
        if self.fail_format:
            self.fail_format -= 1
            raise FormatFailed(f"Formatting {device} as {fs_type} failed: bad superblock")
        self.fstypes[device] = fs_type

    def mount(self, device, path, fs_type, options):
        self.calls.append(('mount', device, str(path), fs_type))
        if self.fail_mount:
            self.fail_mount -= 1
            raise MountFailed(f"Mounting {device} at {path} failed: wrong fs type")
        Path(path).mkdir(parents=True, exist_ok=True)
        self.mounts[str(Path(path))] = device

    def unmount(self, path, lazy=False):
        path = str(Path(path))
        self.calls.append(('umount', path, lazy))
        if path in self.stuck:
            return False
        if not lazy and self.busy.get(path, 0) > 0:
            self.busy[path] -= 1
            return False
        self.mounts.pop(path, None)
        return True

    def is_mounted(self, path):
        return str(Path(path)) in self.mounts

    def source_at(self, path):
        return self.mounts.get(str(Path(path)))


class FakeReleaser(ProcessReleaser):
    def __init__(self):
        self.released = []

    def force_release(self, path):
        self.released.append(str(path))
        return 1


class FakeInventory(DeviceInventory):
    """Devices whose filesystem and mountpoints follow the FakeMounter state."""

    def __init__(self, mounter, devices):
        self.mounter = mounter
        self.devices = list(devices)

    def _refresh(self, device):
        if device.path in self.mounter.fstypes:
            device = replace(device, fstype=self.mounter.fstypes[device.path], pttype=None, partitions=())
        points = tuple(p for p, source in self.mounter.mounts.items() if source == device.path)
        return replace(
            device,
            mountpoints=points,
            partitions=tuple(self._refresh(p) for p in device.partitions),
        )

    def list_devices(self):
        return [self._refresh(d) for d in self.devices]


class FakeServices(ServiceControl):
    """Service states in a dict; every stop/start is recorded in calls."""

    def __init__(self, running=(), fail_stop=(), fail_start=()):
        self.states = {name: 'running' for name in running}
        self.fail_stop = set(fail_stop)
        self.fail_start = set(fail_start)
        self.calls = []

    def status(self, name):
        return self.states.get(name, 'absent')

    def stop(self, name):
        self.calls.append(('stop', name))
        if name in self.fail_stop:
            raise ServiceControlError(f"stop {name} failed: timeout")
        self.states[name] = 'exited'

    def start(self, name):
        self.calls.append(('start', name))
        if name in self.fail_start:
            raise ServiceControlError(f"start {name} failed: port in use")
        self.states[name] = 'running'


class FakeDumper(DatabaseDumper):
    def __init__(self, content=b'-- PostgreSQL database dump\nCREATE TABLE assets ();\n', error=None):
        self.content = content
        self.error = error
        self.calls = []

    def dump(self, service, database, user, dest_path):
        self.calls.append((service, database, user))
        if self.error:
            raise self.error
        Path(dest_path).write_bytes(self.content)
        return dest_path


def nvme_disk(**kwargs):
    """A 500 GB NVMe disk; keyword arguments override fields."""
    fields = dict(name='nvme0n1', path='/dev/nvme0n1', transport='nvme', size=500107862016)
    fields.update(kwargs)
    return BlockDevice(**fields)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and a data root, fstab and compose project under
    tmp_path.
    """
    homelab = tmp_path / 'homelab'
    homelab.mkdir()
    compose_file = homelab / 'docker-compose.yml'
    compose_file.write_text('services:\n  immich-server:\n    image: immich\n')
    env_file = homelab / '.env'
    env_file.write_text('TZ=UTC\n')

    app = create_app('testing', overrides={
        'MOUNT_ROOT': str(tmp_path / 'mnt' / 'nvme'),
        'FSTAB_PATH': str(tmp_path / 'etc' / 'fstab'),
        'COMPOSE_FILE': str(compose_file),
        'CONFIG_PATHS': [str(compose_file), str(env_file)],
        'OWNER_UID': os.getuid(),
        'OWNER_GID': os.getgid(),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def settings(app):
    """Settings resolved by the app factory."""
    return get_settings(app)


@pytest.fixture
def mounter():
    return FakeMounter()


@pytest.fixture
def releaser():
    return FakeReleaser()


@pytest.fixture
def services():
    """All immich services running."""
    return FakeServices(running=['immich-server', 'immich-postgres', 'immich-redis'])


@pytest.fixture
def dumper():
    return FakeDumper()


@pytest.fixture
def photo_library(settings):
    """
    Photos dataset content under the data root.

    Creates:
    - immich/upload/library/IMG_0001.jpg
    - immich/upload/library/IMG_0002.jpg
    - immich/redis/dump.rdb
    """
    library = settings.mount_root / 'immich' / 'upload' / 'library'
    library.mkdir(parents=True)
    (library / 'IMG_0001.jpg').write_bytes(b'\xff\xd8\xff' + b'photo-1' * 200)
    (library / 'IMG_0002.jpg').write_bytes(b'\xff\xd8\xff' + b'photo-2' * 200)

    redis = settings.mount_root / 'immich' / 'redis'
    redis.mkdir(parents=True)
    (redis / 'dump.rdb').write_bytes(b'REDIS0009' + b'\x00' * 64)

    return settings.mount_root / 'immich'


@pytest.fixture
def fakes():
    """Fake collaborator classes, for tests that need custom instances."""
    return SimpleNamespace(
        Mounter=FakeMounter,
        Releaser=FakeReleaser,
        Inventory=FakeInventory,
        Services=FakeServices,
        Dumper=FakeDumper,
        nvme_disk=nvme_disk,
    )

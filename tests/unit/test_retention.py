"""
Unit tests for retention policy enforcement (homevault/backup/retention.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from homevault.backup.retention import RetentionManager, RetentionPolicy, sweep_retention
from homevault.backup.storage import BackupSetStore, RetentionDeleteRace, SetId, StorageError

NOW = datetime(2024, 3, 10, 2, 0, 0, tzinfo=timezone.utc)


def make_set(root, scope, age, staging=False):
    """Create a set directory whose id lies `age` before NOW."""
    set_id = str(SetId(NOW - age))
    name = f'.{set_id}.partial' if staging else set_id
    path = root / scope / name
    path.mkdir(parents=True)
    (path / 'manifest.json').write_text('{}')
    return path


@pytest.fixture
def store(tmp_path):
    return BackupSetStore(tmp_path / 'backups')


class TestRetentionPolicy:

    def test_from_days(self):
        policy = RetentionPolicy.from_days({'full': 30, 'photos': 7})

        assert policy.windows['full'] == timedelta(days=30)
        assert policy.windows['photos'] == timedelta(days=7)


class TestRetentionManager:
    """Test RetentionManager class."""

    def test_deletes_sets_older_than_window(self, store):
        paths = {
            days: make_set(store.backup_root, 'photos', timedelta(days=days))
            for days in (1, 8, 10, 40)
        }
        manager = RetentionManager(store, RetentionPolicy.from_days({'photos': 7}))

        summary = manager.sweep(NOW)

        assert paths[1].is_dir()
        assert not paths[8].exists()
        assert not paths[10].exists()
        assert not paths[40].exists()
        assert len(summary['deleted']) == 3
        assert summary['kept'] == 1
        assert summary['errors'] == []
        assert summary['scopes_processed'] == 1

    def test_boundary_is_kept(self, store):
        """Test a set exactly as old as the window survives."""
        exact = make_set(store.backup_root, 'photos', timedelta(days=7))
        over = make_set(store.backup_root, 'photos', timedelta(days=7, seconds=1))

        RetentionManager(store, RetentionPolicy.from_days({'photos': 7})).sweep(NOW)

        assert exact.is_dir()
        assert not over.exists()

    def test_removes_stale_staging(self, store):
        stale = make_set(store.backup_root, 'full', timedelta(days=40), staging=True)
        fresh = make_set(store.backup_root, 'full', timedelta(hours=1), staging=True)

        summary = RetentionManager(store, RetentionPolicy.from_days({'full': 30})).sweep(NOW)

        assert not stale.exists()
        assert fresh.is_dir()
        assert summary['deleted'] == [f"full/{SetId(NOW - timedelta(days=40))}"]

    def test_ignores_foreign_directories(self, store):
        junk = store.backup_root / 'photos' / 'lost+found'
        junk.mkdir(parents=True)
        (store.backup_root / 'photos' / 'README').write_text('do not delete')

        summary = RetentionManager(store, RetentionPolicy.from_days({'photos': 0})).sweep(NOW)

        assert junk.is_dir()
        assert (store.backup_root / 'photos' / 'README').is_file()
        assert summary['deleted'] == []

    def test_scope_outside_policy_untouched(self, store):
        other = make_set(store.backup_root, 'manual', timedelta(days=400))

        RetentionManager(store, RetentionPolicy.from_days({'photos': 7})).sweep(NOW)

        assert other.is_dir()

    def test_delete_race_is_ignored(self, store):
        make_set(store.backup_root, 'photos', timedelta(days=10))
        manager = RetentionManager(store, RetentionPolicy.from_days({'photos': 7}))

        with patch.object(store, 'delete', side_effect=RetentionDeleteRace('gone')):
            summary = manager.sweep(NOW)

        assert summary['errors'] == []
        assert summary['deleted'] == []

    def test_delete_errors_collected(self, store):
        """Test one failed deletion does not stop the sweep."""
        make_set(store.backup_root, 'photos', timedelta(days=10))
        make_set(store.backup_root, 'full', timedelta(days=40))
        manager = RetentionManager(store, RetentionPolicy.from_days({'photos': 7, 'full': 30}))
        real_delete = store.delete

        def delete(path):
            if 'photos' in str(path):
                raise StorageError('Permission denied')
            real_delete(path)

        with patch.object(store, 'delete', side_effect=delete):
            summary = manager.sweep(NOW)

        assert len(summary['errors']) == 1
        assert 'Permission denied' in summary['errors'][0]
        assert len(summary['deleted']) == 1
        assert summary['scopes_processed'] == 2

    def test_unlistable_scope_collected(self, store):
        manager = RetentionManager(store, RetentionPolicy.from_days({'photos': 7}))

        with patch.object(store, 'list_sets', side_effect=StorageError('I/O error')):
            summary = manager.sweep(NOW)

        assert summary['scopes_processed'] == 0
        assert 'Failed to sweep scope photos' in summary['errors'][0]

    def test_logs(self, store):
        manager = RetentionManager(store, RetentionPolicy.from_days({'photos': 7}))

        summary = manager.sweep(NOW)

        assert summary['logs'] is manager.logs
        assert any('Retention sweep complete' in line for line in summary['logs'])


class TestSweepRetention:
    """Test sweep_retention with configured windows."""

    @freeze_time('2024-03-10 02:00:00')
    def test_uses_configured_days(self, settings):
        old_photos = make_set(settings.backup_root, 'photos', timedelta(days=8))
        old_full = make_set(settings.backup_root, 'full', timedelta(days=8))

        summary = sweep_retention(settings)

        assert not old_photos.exists()
        assert old_full.is_dir()
        assert summary['scopes_processed'] == 2

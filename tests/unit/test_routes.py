"""
Unit tests for the status API (homevault/routes/).
"""

from datetime import datetime, timedelta

import pytest

from homevault.backup.executor import execute_backup
from homevault.models import BackupRun, ProvisionRun


@pytest.fixture
def photos_set(db, settings, services, dumper, photo_library):
    """One published photos set."""
    return execute_backup(settings, 'photos', services=services, dumper=dumper)


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestStatusRoutes:
    """Test /api/status."""

    def test_status_before_provisioning(self, client, db, settings):
        response = client.get('/api/status')

        assert response.status_code == 200
        data = response.get_json()
        assert data['mount_root'] == str(settings.mount_root)
        assert data['mounted'] is False
        assert data['source'] is None
        assert data['disk'] is None
        assert data['last_provision'] is None
        assert data['scopes']['photos'] == {
            'latest_set': None,
            'last_run_status': None,
            'retention_days': 7,
        }

    def test_status_with_backup(self, client, photos_set, db):
        db.session.add(ProvisionRun(
            device_class='nvme', device='/dev/nvme0n1', state='provisioned',
            formatted=True, completed_at=datetime.utcnow()
        ))
        db.session.commit()

        data = client.get('/api/status').get_json()

        assert data['disk']['total_bytes'] > 0
        assert data['last_provision']['device'] == '/dev/nvme0n1'
        assert data['last_provision']['completed_at'].endswith('Z')
        assert data['scopes']['photos']['latest_set'] == photos_set.set_id
        assert data['scopes']['photos']['last_run_status'] == 'success'
        assert data['scopes']['full']['latest_set'] is None


class TestBackupsRoutes:
    """Test /api/backups."""

    def test_list_empty(self, client, db):
        data = client.get('/api/backups/').get_json()

        assert set(data['scopes']) == {'full', 'photos'}
        assert data['scopes']['full'] == {'retention_days': 30, 'sets': []}

    def test_list_sets(self, client, photos_set, settings):
        broken = settings.backup_root / 'photos' / '20200101_000000'
        broken.mkdir()

        sets = client.get('/api/backups/').get_json()['scopes']['photos']['sets']

        assert [s['set_id'] for s in sets] == [photos_set.set_id, '20200101_000000']
        assert sets[0]['artifacts'] == 3
        assert sets[0]['missing'] == 0
        assert sets[0]['total_bytes'] == photos_set.manifest.total_bytes
        assert 'Manifest not found' in sets[1]['manifest_error']

    def test_detail(self, client, photos_set):
        response = client.get(f'/api/backups/photos/{photos_set.set_id}')

        assert response.status_code == 200
        data = response.get_json()
        assert data['manifest']['setId'] == photos_set.set_id
        assert data['verification']['ok'] is True
        assert len(data['verification']['checked']) == 3

    def test_detail_reports_missing_artifact(self, client, photos_set):
        (photos_set.set_path / 'photos_database.sql').unlink()

        data = client.get(f'/api/backups/photos/{photos_set.set_id}').get_json()

        assert data['verification']['ok'] is False
        assert data['verification']['failures'] == [
            {'artifact': 'photos_database.sql', 'reason': 'missing'}
        ]

    def test_detail_unknown_scope(self, client, db):
        response = client.get('/api/backups/music/20240310_020000')

        assert response.status_code == 404
        assert 'Unknown backup scope' in response.get_json()['error']

    def test_detail_unknown_set(self, client, db):
        response = client.get('/api/backups/photos/20240310_020000')

        assert response.status_code == 404


class TestHistoryRoutes:
    """Test /api/history."""

    @pytest.fixture
    def runs(self, db):
        now = datetime.utcnow()
        records = [
            BackupRun(scope='photos', status='success', started_at=now - timedelta(days=1),
                      set_id='20240309_020000', total_bytes=5 * 1024 * 1024, logs='[..] done'),
            BackupRun(scope='full', status='partial', started_at=now - timedelta(hours=2),
                      missing_artifacts=1),
            BackupRun(scope='full', status='failed', started_at=now - timedelta(days=20),
                      error_message='Data root is not mounted at /mnt/nvme'),
        ]
        db.session.add_all(records)
        db.session.commit()
        return records

    def test_list_newest_first(self, client, runs):
        data = client.get('/api/history/').get_json()

        assert data['total'] == 3
        assert [r['status'] for r in data['records']] == ['partial', 'success', 'failed']
        assert data['records'][1]['total_mb'] == 5.0
        assert data['records'][1]['has_logs'] is True
        assert data['records'][0]['started_at'].endswith('Z')

    def test_filters(self, client, runs):
        assert client.get('/api/history/?scope=full').get_json()['total'] == 2
        assert client.get('/api/history/?status=success').get_json()['total'] == 1
        assert client.get('/api/history/?days=7').get_json()['total'] == 2

    def test_pagination(self, client, runs):
        data = client.get('/api/history/?limit=1&offset=1').get_json()

        assert data['limit'] == 1
        assert data['offset'] == 1
        assert [r['status'] for r in data['records']] == ['success']

    def test_limit_capped(self, client, runs):
        assert client.get('/api/history/?limit=1000').get_json()['limit'] == 200

    def test_invalid_status(self, client, runs):
        response = client.get('/api/history/?status=done')

        assert response.status_code == 400

    def test_detail(self, client, runs):
        data = client.get(f'/api/history/{runs[0].id}').get_json()

        assert data['scope'] == 'photos'
        assert data['logs'] == '[..] done'
        assert data['duration_seconds'] is None

    def test_detail_not_found(self, client, db):
        assert client.get('/api/history/999').status_code == 404

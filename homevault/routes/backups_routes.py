"""
Backup set routes - Browse published backup sets and re-verify them.
"""

from flask import Blueprint, jsonify

from homevault.backup import BackupSetStore, UnknownScope, available_scopes, build_scope, reverify
from homevault.backup.manifest import ManifestError, read_manifest
from homevault.config import get_settings


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


@bp.route('/', methods=['GET'])
def list_backups():
    """
    List published backup sets per scope, newest first.

    Returns:
        JSON: {'scopes': {scope: {'retention_days': int, 'sets': [...]}}}
    """
    settings = get_settings()
    store = BackupSetStore(settings.backup_root)

    scopes = {}
    for scope in available_scopes(settings):
        sets = []
        for info in reversed(store.list_sets(scope)):
            entry = {'set_id': str(info.set_id), 'path': str(info.path)}
            try:
                manifest = read_manifest(info.path)
                entry.update({
                    'captured_at': manifest.captured_at.isoformat(),
                    'total_bytes': manifest.total_bytes,
                    'artifacts': len(manifest.artifacts),
                    'missing': sum(1 for a in manifest.artifacts if not a.present)
                })
            except ManifestError as e:
                entry['manifest_error'] = str(e)
            sets.append(entry)

        scopes[scope] = {
            'retention_days': settings.retention_days.get(scope),
            'sets': sets
        }

    return jsonify({'scopes': scopes})


@bp.route('/<scope>/<set_id>', methods=['GET'])
def get_backup(scope, set_id):
    """
    Get one backup set's manifest together with a fresh verification.

    Args:
        scope: Backup scope name
        set_id: Set id (directory name)
    """
    settings = get_settings()
    try:
        scope_def = build_scope(settings, scope)
    except UnknownScope as e:
        return jsonify({'error': str(e)}), 404

    info = BackupSetStore(settings.backup_root).get(scope, set_id)
    if info is None:
        return jsonify({'error': f'Backup set not found: {scope}/{set_id}'}), 404

    manifest, report = reverify(info.path, scope_def.artifact_names)

    return jsonify({
        'scope': scope,
        'set_id': str(info.set_id),
        'path': str(info.path),
        'manifest': manifest.to_dict() if manifest else None,
        'verification': {
            'ok': report.ok,
            'checked': [status.to_dict() for status in report.checked],
            'failures': [{'artifact': f.artifact, 'reason': f.reason} for f in report.failures]
        }
    })

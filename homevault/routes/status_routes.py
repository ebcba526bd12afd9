"""
Status routes - Data device mount state and disk usage.
"""

import os

import psutil
from flask import Blueprint, jsonify

from homevault.backup import BackupSetStore, available_scopes
from homevault.config import get_settings
from homevault.models import BackupRun, ProvisionRun
from homevault.storage.release import SystemMounter


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get data device overview.

    Returns:
        JSON with:
        - mount_root / mounted / source: mount state of the data root
        - disk: usage of the data root (null if it does not exist)
        - last_provision: most recent provisioning run
        - scopes: latest set and last run per backup scope
    """
    settings = get_settings()
    mount_root = str(settings.mount_root)
    mounter = SystemMounter()
    mounted = mounter.is_mounted(mount_root)

    disk = None
    if os.path.isdir(mount_root):
        usage = psutil.disk_usage(mount_root)
        disk = {
            'total_bytes': usage.total,
            'used_bytes': usage.used,
            'free_bytes': usage.free,
            'percent': usage.percent
        }

    last_provision = ProvisionRun.query.order_by(
        ProvisionRun.started_at.desc(), ProvisionRun.id.desc()
    ).first()

    last_provision_info = None
    if last_provision:
        last_provision_info = {
            'device': last_provision.device,
            'state': last_provision.state,
            'formatted': last_provision.formatted,
            'completed_at': last_provision.completed_at.isoformat() + 'Z' if last_provision.completed_at else None,
            'error_message': last_provision.error_message
        }

    store = BackupSetStore(settings.backup_root)
    scopes = {}
    for scope in available_scopes(settings):
        latest = store.latest(scope)
        last_run = BackupRun.query.filter_by(scope=scope).order_by(
            BackupRun.started_at.desc(), BackupRun.id.desc()
        ).first()
        scopes[scope] = {
            'latest_set': str(latest.set_id) if latest else None,
            'last_run_status': last_run.status if last_run else None,
            'retention_days': settings.retention_days.get(scope)
        }

    return jsonify({
        'mount_root': mount_root,
        'mounted': mounted,
        'source': mounter.source_at(mount_root) if mounted else None,
        'device_class': settings.device_class,
        'disk': disk,
        'last_provision': last_provision_info,
        'scopes': scopes
    })

"""
Backup history routes - View backup run history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from homevault.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/api/history')

RUN_STATUSES = ['running', 'success', 'partial', 'failed']


def _iso(value):
    return value.isoformat() + 'Z' if value else None


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failed)
        - scope: Filter by backup scope
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    # Parse query parameters
    status_filter = request.args.get('status')
    scope_filter = request.args.get('scope')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 50
    if offset < 0:
        offset = 0

    # Build query
    query = BackupRun.query

    # Apply filters
    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if scope_filter:
        query = query.filter(BackupRun.scope == scope_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    # Apply pagination and ordering
    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    history_data = []
    for record in records:
        history_data.append({
            'id': record.id,
            'scope': record.scope,
            'set_id': record.set_id,
            'status': record.status,
            'started_at': _iso(record.started_at),
            'completed_at': _iso(record.completed_at),
            'total_bytes': record.total_bytes,
            'total_mb': round(record.total_bytes / 1024 / 1024, 2) if record.total_bytes else None,
            'missing_artifacts': record.missing_artifacts,
            'set_path': record.set_path,
            'error_message': record.error_message,
            'has_logs': bool(record.logs)
        })

    return jsonify({
        'records': history_data,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """
    Get detailed information for a specific backup run, including logs.
    """
    record = BackupRun.query.get_or_404(run_id)

    # Calculate duration if completed
    duration_seconds = None
    if record.completed_at:
        duration = record.completed_at - record.started_at
        duration_seconds = int(duration.total_seconds())

    return jsonify({
        'id': record.id,
        'scope': record.scope,
        'set_id': record.set_id,
        'status': record.status,
        'started_at': _iso(record.started_at),
        'completed_at': _iso(record.completed_at),
        'duration_seconds': duration_seconds,
        'total_bytes': record.total_bytes,
        'missing_artifacts': record.missing_artifacts,
        'set_path': record.set_path,
        'error_message': record.error_message,
        'logs': record.logs
    })

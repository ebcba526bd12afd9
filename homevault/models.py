from datetime import datetime
from homevault import db


class BackupRun(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False)
    set_id = db.Column(db.String(32))  # Null if the run failed before allocating a set
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    total_bytes = db.Column(db.BigInteger)
    missing_artifacts = db.Column(db.Integer, default=0, nullable=False)
    set_path = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def __repr__(self):
        return f'<BackupRun scope={self.scope} set_id={self.set_id} status={self.status}>'


class ProvisionRun(db.Model):
    """Provisioning history"""
    __tablename__ = 'provision_runs'

    id = db.Column(db.Integer, primary_key=True)
    device_class = db.Column(db.String(32), nullable=False)
    device = db.Column(db.String(255))
    state = db.Column(db.String(32), nullable=False)  # provisioned, skipped, failed
    mount_path = db.Column(db.String(500))
    formatted = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)

    def __repr__(self):
        return f'<ProvisionRun device={self.device} state={self.state}>'

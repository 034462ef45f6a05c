import json
from datetime import datetime
from backvault import db


# Run and upload lifecycles. Each status maps to the statuses it may move to;
# terminal statuses map to nothing.
RUN_TRANSITIONS = {
    'pending': ('running', 'failed'),
    'running': ('completed', 'partial', 'failed'),
    'completed': (),
    'partial': (),
    'failed': (),
}
UPLOAD_TRANSITIONS = {
    'pending': ('uploading', 'failed'),
    'uploading': ('completed', 'failed'),
    'completed': (),
    'failed': (),
}

RUN_STATUSES = tuple(RUN_TRANSITIONS)
RUN_TERMINAL_STATUSES = ('completed', 'partial', 'failed')
UPLOAD_STATUSES = tuple(UPLOAD_TRANSITIONS)
UPLOAD_TERMINAL_STATUSES = ('completed', 'failed')

PROVIDERS = ('s3', 'b2', 'gdrive')


class InvalidStatusTransition(ValueError):
    """Raised when a run or upload would skip or reverse a lifecycle step."""
    pass


def _check_transition(current: str, new: str, transitions: dict):
    if new not in transitions:
        raise InvalidStatusTransition(f"Unknown status: {new}")
    allowed = transitions.get(current, ())
    if not allowed:
        raise InvalidStatusTransition(f"Cannot move from terminal status '{current}' to '{new}'")
    if new not in allowed:
        raise InvalidStatusTransition(f"Cannot move from '{current}' to '{new}'")


class AppSetting(db.Model):
    """Key/value application settings shared with the rest of the application"""
    __tablename__ = 'app_settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<AppSetting {self.key}>'


class BackupDestination(db.Model):
    """Named upload target with its own credentials"""
    __tablename__ = 'backup_destinations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    provider = db.Column(db.String(20), nullable=False)  # s3, b2, gdrive
    credentials_encrypted = db.Column(db.Text, nullable=False)  # Fernet token of the credential JSON
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    uploads = db.relationship('BackupUpload', back_populates='destination', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<BackupDestination {self.name} provider={self.provider} active={self.is_active}>'


class BackupRun(db.Model):
    """One attempt to produce and distribute a backup archive"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    triggered_by = db.Column(db.String(20), nullable=False)  # manual, scheduled
    user_id = db.Column(db.String(255))  # Initiating actor, NULL for scheduled runs
    user_name = db.Column(db.String(255))
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)
    file_name = db.Column(db.String(500))  # Remote key, identical on every destination
    file_size = db.Column(db.BigInteger)
    manifest = db.Column(db.Text)  # JSON copy of the archive manifest
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    uploads = db.relationship('BackupUpload', back_populates='run', cascade='all, delete-orphan',
                              order_by='BackupUpload.id')

    def advance_status(self, new_status: str):
        """Move the run to the next step of its lifecycle."""
        _check_transition(self.status, new_status, RUN_TRANSITIONS)
        self.status = new_status

    @property
    def manifest_data(self):
        if not self.manifest:
            return None
        try:
            return json.loads(self.manifest)
        except ValueError:
            return None

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status} triggered_by={self.triggered_by}>'


class BackupUpload(db.Model):
    """Delivery of one run's archive to one destination"""
    __tablename__ = 'backup_uploads'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id', ondelete='CASCADE'), nullable=False, index=True)
    destination_id = db.Column(db.Integer, db.ForeignKey('backup_destinations.id', ondelete='CASCADE'),
                               nullable=False, index=True)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, uploading, completed, failed
    error_message = db.Column(db.Text)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    run = db.relationship('BackupRun', back_populates='uploads')
    destination = db.relationship('BackupDestination', back_populates='uploads')

    def advance_status(self, new_status: str):
        _check_transition(self.status, new_status, UPLOAD_TRANSITIONS)
        self.status = new_status

    def __repr__(self):
        return f'<BackupUpload run_id={self.run_id} destination_id={self.destination_id} status={self.status}>'


class ActivityLog(db.Model):
    """Audit trail entry"""
    __tablename__ = 'activity_log'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255))
    user_display_name = db.Column(db.String(255), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(255))
    entity_label = db.Column(db.String(500))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<ActivityLog {self.action} {self.entity_type}:{self.entity_id}>'

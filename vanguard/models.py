import json
from datetime import datetime

from vanguard import db


class RemoteServer(db.Model):
    """Server that backups are taken from"""
    __tablename__ = 'remote_servers'

    id = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, default=22, nullable=False)
    username = db.Column(db.String(255), nullable=False)
    password_encrypted = db.Column(db.Text, nullable=True)  # Only when not using the app key pair
    database_username = db.Column(db.String(255), nullable=True)
    database_password_encrypted = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    tasks = db.relationship('BackupTask', back_populates='remote_server', lazy='dynamic')

    def __repr__(self):
        return f'<RemoteServer {self.label} {self.ip_address}:{self.port}>'


class BackupDestination(db.Model):
    """Storage backend that backups are uploaded to"""
    __tablename__ = 'backup_destinations'

    id = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False)  # local, s3, custom_s3, sftp
    config = db.Column(db.Text, nullable=False, default='{}')  # JSON string, no secrets
    secret_encrypted = db.Column(db.Text, nullable=True)  # S3 secret key or SFTP password
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def get_config(self) -> dict:
        return json.loads(self.config or '{}')

    def __repr__(self):
        return f'<BackupDestination {self.label} type={self.type}>'


class BackupTask(db.Model):
    """Backup task configuration and run state"""
    __tablename__ = 'backup_tasks'

    STATUS_READY = 'ready'
    STATUS_RUNNING = 'running'

    id = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False)  # file or database
    status = db.Column(db.String(20), default=STATUS_READY, nullable=False)
    remote_server_id = db.Column(db.Integer, db.ForeignKey('remote_servers.id'), nullable=False)
    backup_destination_id = db.Column(db.Integer, db.ForeignKey('backup_destinations.id'), nullable=False)
    source_path = db.Column(db.String(1000))
    store_path = db.Column(db.String(1000))
    database_name = db.Column(db.String(255))
    excluded_database_tables = db.Column(db.Text)  # Comma-separated
    excluded_directories = db.Column(db.Text)  # Comma-separated
    maximum_backups_to_keep = db.Column(db.Integer)  # null or 0 = no rotation
    paused_at = db.Column(db.DateTime)
    last_run_at = db.Column(db.DateTime)
    last_script_update_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    remote_server = db.relationship('RemoteServer', back_populates='tasks')
    backup_destination = db.relationship('BackupDestination')
    logs = db.relationship('BackupTaskLog', back_populates='task', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    @property
    def is_rotating_backups(self) -> bool:
        return bool(self.maximum_backups_to_keep and self.maximum_backups_to_keep > 0)

    def __repr__(self):
        return f'<BackupTask {self.label} type={self.type} status={self.status}>'


class BackupTaskLog(db.Model):
    """Output and result of one backup run"""
    __tablename__ = 'backup_task_logs'

    id = db.Column(db.Integer, primary_key=True)
    backup_task_id = db.Column(db.Integer, db.ForeignKey('backup_tasks.id'), nullable=False)
    output = db.Column(db.Text, default='')
    status = db.Column(db.String(20), default='running', nullable=False)  # running, succeeded, failed, declined
    size_bytes = db.Column(db.BigInteger)
    artifact = db.Column(db.String(1000))
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    finished_at = db.Column(db.DateTime)
    successful_at = db.Column(db.DateTime)

    task = db.relationship('BackupTask', back_populates='logs')

    def __repr__(self):
        return f'<BackupTaskLog task_id={self.backup_task_id} status={self.status}>'

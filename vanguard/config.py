import os


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/vanguard.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'

    # SSH key pair used to reach remote servers
    SSH_PRIVATE_KEY_PATH = os.environ.get('SSH_PRIVATE_KEY_PATH') or '/data/ssh/key'
    SSH_PUBLIC_KEY_PATH = os.environ.get('SSH_PUBLIC_KEY_PATH') or '/data/ssh/key.pub'
    SSH_PASSPHRASE = os.environ.get('SSH_PASSPHRASE')

    # Timeouts (seconds)
    SSH_CONNECT_TIMEOUT = int(os.environ.get('SSH_CONNECT_TIMEOUT', 30))
    REMOTE_COMMAND_TIMEOUT = int(os.environ.get('REMOTE_COMMAND_TIMEOUT', 3600))

    # Backup execution
    REMOTE_TEMP_DIR = os.environ.get('REMOTE_TEMP_DIR') or '/tmp'
    BACKUP_SIZE_LIMIT = int(os.environ.get('BACKUP_SIZE_LIMIT', 50 * 1024 * 1024 * 1024))  # 50GB

    # Secret store for stored credentials
    ENCRYPTION_PASSWORD = os.environ.get('ENCRYPTION_PASSWORD')
    ENCRYPTION_SALT = os.environ.get('ENCRYPTION_SALT')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "vanguard.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SSH_PRIVATE_KEY_PATH = os.path.join(DATA_DIR, 'ssh', 'key')
    SSH_PUBLIC_KEY_PATH = os.path.join(DATA_DIR, 'ssh', 'key.pub')


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    ENCRYPTION_PASSWORD = None
    ENCRYPTION_SALT = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}

import os


def _env(name, default):
    return os.environ.get(name) or default


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/vmkuper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backup store
    BACKUP_STORE_DIR = _env('BACKUP_STORE_DIR', '/data/vm_backups')
    STORE_LOG_SUBDIR = _env('STORE_LOG_SUBDIR', '_logs')
    LOCAL_LOG_DIR = _env('LOCAL_LOG_DIR', '/data/logs')

    # Retention: number of generations kept per machine
    RETAIN_COUNT = int(_env('RETAIN_COUNT', '3'))

    # Checkpoints
    CHECKPOINT_PREFIX = _env('CHECKPOINT_PREFIX', 'vmkuper-')
    RUN_DATE_FORMAT = _env('RUN_DATE_FORMAT', '%Y-%m-%d')

    # Cluster and remote hosts
    CLUSTER_HOST = _env('CLUSTER_HOST', 'localhost')
    REMOTE_STAGING_DIR = _env('REMOTE_STAGING_DIR', 'C:/VMBackupTemp')
    SSH_PORT = int(_env('SSH_PORT', '22'))
    SSH_USERNAME = _env('SSH_USERNAME', 'backup')
    SSH_PASSWORD = os.environ.get('SSH_PASSWORD')
    SSH_PRIVATE_KEY = _env('SSH_PRIVATE_KEY', '~/.ssh/id_rsa')
    SSH_TIMEOUT = int(_env('SSH_TIMEOUT', '30'))

    # Scheduler
    SCHEDULE_CRON = os.environ.get('SCHEDULE_CRON', '0 1 * * *')
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "vmkuper.db")}'
    BACKUP_STORE_DIR = os.path.join(DATA_DIR, 'vm_backups')
    LOCAL_LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    SSH_PASSWORD = 'test-password'
    SSH_PRIVATE_KEY = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def validate_config(app_config):
    """
    Validate settings the backup run depends on.

    Raises:
        ValueError: If a setting is out of range
    """
    retain_count = int(app_config['RETAIN_COUNT'])
    if retain_count < 1:
        raise ValueError(f"RETAIN_COUNT must be at least 1, got {retain_count}")

    if not app_config.get('CHECKPOINT_PREFIX'):
        raise ValueError("CHECKPOINT_PREFIX must not be empty")

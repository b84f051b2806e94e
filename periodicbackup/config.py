import os


class Config:
    """Base configuration"""

    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/periodicbackup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backup defaults (seed the settings row on first start)
    SERVER_ROOT = os.environ.get('SERVER_ROOT') or '/srv/server'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    DEFAULT_CRON = os.environ.get('BACKUP_CRON') or '0 2 * * *'
    DEFAULT_FILE_MANAGER = 'config_only'
    DEFAULT_ARCHIVE_FORMAT = 'tar.gz'

    # Logging (files go to DATA_DIR/logs)
    LOG_LEVEL = os.environ.get('LOG_LEVEL')
    LOG_FILE = 'periodicbackup.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024
    LOG_BACKUP_COUNT = 10

    # Object store
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'
    AWS_ENDPOINT_URL = os.environ.get('AWS_ENDPOINT_URL')

    # Runs (seconds after which a lease left by a dead process can be taken over)
    RUN_LEASE_TIMEOUT = int(os.environ.get('RUN_LEASE_TIMEOUT') or 6 * 3600)

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = 2
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 3 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "periodicbackup.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration (in-memory database, no scheduler)"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.environ.get('TEST_DATA_DIR') or os.path.join(BASE_DIR, 'data', 'test')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    SERVER_ROOT = os.path.join(DATA_DIR, 'server')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}

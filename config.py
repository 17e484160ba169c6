# QR Attendance Verification Engine Configuration

import logging
import os
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()

_DEV_SECRET_KEY = 'qr-attendance-secret-key-2025'
_DEV_TOKEN_SECRET = 'qr-attendance-token-secret-2025'


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or _DEV_SECRET_KEY
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # scan payloads are small

    # Database Configuration
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'attendance.db')
    DATABASE_TIMEOUT = 30.0

    # Token Configuration
    QR_TOKEN_SECRET = os.environ.get('QR_TOKEN_SECRET') or _DEV_TOKEN_SECRET
    QR_TOKEN_TTL_MINUTES = int(os.environ.get('QR_TOKEN_TTL_MINUTES') or 5)
    QR_TOKEN_GRACE_ON_REFRESH = _env_flag('QR_TOKEN_GRACE_ON_REFRESH', True)

    # QR Code Configuration
    QR_CODE_BOX_SIZE = 10
    QR_CODE_BORDER = 4
    QR_CODE_ERROR_CORRECT = 'M'  # Medium error correction

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Attendance Configuration
    ATTENDANCE_LATE_THRESHOLD_MINUTES = int(os.environ.get('ATTENDANCE_LATE_THRESHOLD_MINUTES') or 15)
    GEOFENCE_DEFAULT_RADIUS_METERS = float(os.environ.get('GEOFENCE_DEFAULT_RADIUS_METERS') or 50)

    # Anomaly Configuration
    ANOMALY_WINDOW_SECONDS = int(os.environ.get('ANOMALY_WINDOW_SECONDS') or 300)
    ANOMALY_SCAN_THRESHOLD = int(os.environ.get('ANOMALY_SCAN_THRESHOLD') or 3)

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = str(BASE_DIR / 'logs' / 'attendance.log')
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    DEBUG = _env_flag('DEBUG', False)
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        database_path = app.config['DATABASE_PATH']
        if database_path != ':memory:':
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'attendance_dev.db')

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Each test points this at its own temporary file
    DATABASE_PATH = str(BASE_DIR / 'database' / 'attendance_test.db')
    DATABASE_TIMEOUT = 5.0

    SECRET_KEY = 'testing-secret-key'
    QR_TOKEN_SECRET = 'testing-token-secret'
    QR_TOKEN_GRACE_ON_REFRESH = True

    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enhanced security for production
    SESSION_COOKIE_SECURE = True  # Requires HTTPS

    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'attendance_prod.db')

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)

        if not app.debug:
            log_file = Path(app.config['LOG_FILE'])
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=app.config['LOG_MAX_BYTES'],
                backupCount=app.config['LOG_BACKUP_COUNT']
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('QR Attendance Engine startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration class by name, falling back to FLASK_ENV"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, DevelopmentConfig)


def validate_config(settings):
    """
    Validate configuration settings.

    Args:
        settings: Mapping of configuration keys, usually app.config

    Returns:
        list: Problems found, empty when the configuration is usable
    """
    errors = []

    if not settings.get('QR_TOKEN_SECRET'):
        errors.append("QR_TOKEN_SECRET is required")
    elif not settings.get('DEBUG') and not settings.get('TESTING') \
            and settings.get('QR_TOKEN_SECRET') == _DEV_TOKEN_SECRET:
        errors.append("QR_TOKEN_SECRET must be set outside development")

    if not settings.get('SECRET_KEY'):
        errors.append("SECRET_KEY is required")

    if not settings.get('DATABASE_PATH'):
        errors.append("DATABASE_PATH is required")

    if settings.get('QR_TOKEN_TTL_MINUTES', 0) <= 0:
        errors.append("QR_TOKEN_TTL_MINUTES must be positive")
    if settings.get('ATTENDANCE_LATE_THRESHOLD_MINUTES', -1) < 0:
        errors.append("ATTENDANCE_LATE_THRESHOLD_MINUTES must not be negative")
    if settings.get('ANOMALY_WINDOW_SECONDS', 0) <= 0:
        errors.append("ANOMALY_WINDOW_SECONDS must be positive")
    if settings.get('ANOMALY_SCAN_THRESHOLD', -1) < 0:
        errors.append("ANOMALY_SCAN_THRESHOLD must not be negative")
    if settings.get('GEOFENCE_DEFAULT_RADIUS_METERS', 0) <= 0:
        errors.append("GEOFENCE_DEFAULT_RADIUS_METERS must be positive")

    return errors

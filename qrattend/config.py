# QR Attendance Gate Configuration

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv

# Base directory
BASE_DIR = Path(__file__).parent.parent.absolute()

load_dotenv(BASE_DIR / '.env')


def _env_bool(name, default):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'qr-attendance-secret-key-change-me'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = False

    # Database Configuration
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'attendance.db')
    ADMIN_DEFAULT_PASSWORD = os.environ.get('ADMIN_DEFAULT_PASSWORD')

    # Session token Configuration
    QR_SECRET = os.environ.get('QR_SECRET') or 'qr-token-secret-change-me'
    TOKEN_TTL_SECONDS = int(os.environ.get('TOKEN_TTL_SECONDS') or 90)
    TOKEN_ISSUER = os.environ.get('TOKEN_ISSUER') or 'qrattend'
    TOKEN_AUDIENCE = os.environ.get('TOKEN_AUDIENCE') or 'student-app'

    # Attendance Configuration
    LATE_THRESHOLD_MINUTES = int(os.environ.get('LATE_THRESHOLD_MINUTES') or 15)
    VELOCITY_COOLDOWN_MINUTES = int(os.environ.get('VELOCITY_COOLDOWN_MINUTES') or 5)
    RECENT_ATTENDEES_LIMIT = 10

    # Maintenance Configuration
    SESSION_RETENTION_MINUTES = int(os.environ.get('SESSION_RETENTION_MINUTES') or 60)
    ACTIVITY_RETENTION_DAYS = int(os.environ.get('ACTIVITY_RETENTION_DAYS') or 90)
    MAINTENANCE_INTERVAL_MINUTES = int(os.environ.get('MAINTENANCE_INTERVAL_MINUTES') or 5)
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')

    # Rate limiting
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI') or 'memory://'
    RATE_LIMIT_DEFAULT = '200 per hour'
    RATE_LIMIT_SCAN = os.environ.get('RATE_LIMIT_SCAN') or '10 per minute'
    RATE_LIMIT_SESSION_OPEN = os.environ.get('RATE_LIMIT_SESSION_OPEN') or '30 per minute'
    RATE_LIMIT_LOGIN = '20 per minute'

    # Email Configuration (for operator alerts)
    MAIL_SERVER = os.environ.get('MAIL_SERVER') or 'localhost'
    MAIL_PORT = int(os.environ.get('MAIL_PORT') or 587)
    MAIL_USE_TLS = _env_bool('MAIL_USE_TLS', 'true')
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER') or 'noreply@attendance.local'
    ALERT_RECIPIENT = os.environ.get('ALERT_RECIPIENT')
    ALERTS_ASYNC = True

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = os.environ.get('LOG_FILE') or str(BASE_DIR / 'logs' / 'attendance.log')
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    DEBUG = _env_bool('DEBUG', 'False')
    TESTING = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # MailHog default port
    MAIL_PORT = 1025
    MAIL_USE_TLS = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    SECRET_KEY = 'testing-secret-key'
    QR_SECRET = 'testing-qr-secret'
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    ALERTS_ASYNC = False
    ALERT_RECIPIENT = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SESSION_COOKIE_SECURE = True  # Requires HTTPS
    LOG_LEVEL = 'WARNING'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Resolve a configuration class by name, falling back to FLASK_ENV."""
    config_name = config_name or os.environ.get('FLASK_ENV') or 'default'
    return config.get(config_name, config['default'])


def configure_logging(app):
    """Set log levels and, outside debug and testing, a rotating log file."""
    level = getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )
    logging.getLogger('qrattend').setLevel(level)

    # Framework chatter
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    if not app.debug and not app.testing:
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
        file_handler.setLevel(level)
        logging.getLogger('qrattend').addHandler(file_handler)
        app.logger.addHandler(file_handler)
        app.logger.info('QR Attendance Gate startup')

# QR Check-in Attendance System Configuration

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_float(name, default=None):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


class QRCodeConfig:
    """QR code image rendering settings"""

    BOX_SIZE = 10
    BORDER = 4
    ERROR_CORRECTION = 'M'  # ~15% error correction
    FILL_COLOR = "black"
    BACK_COLOR = "white"


class Config:
    """Settings shared by every environment"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'qr-checkin-secret-key'

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'attendance.db'

    # QR Code Configuration
    QR_CODES_FOLDER = BASE_DIR / 'static' / 'qr_codes'
    QR_CODE = QRCodeConfig

    # Payload Configuration
    APP_BASE_URL = os.environ.get('APP_BASE_URL') or 'http://localhost:5000'
    ATTENDANCE_CHECK_PATH = '/attendance-check'
    APP_MARKER = 'qr-checkin'

    # Attendance Configuration
    SCAN_COOLDOWN_SECONDS = _env_float('SCAN_COOLDOWN_SECONDS', 5.0)
    # None keeps codes valid forever
    PAYLOAD_MAX_AGE_HOURS = _env_float('PAYLOAD_MAX_AGE_HOURS')
    CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX') or 0)

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Copy Flask settings onto the app and set the log level"""
        app.config.update({
            'SECRET_KEY': cls.SECRET_KEY,
            'TESTING': cls.TESTING,
            'DEBUG': cls.DEBUG,
        })
        app.logger.setLevel(cls.LOG_LEVEL)


class DevelopmentConfig(Config):
    """Local development: debug on, verbose logs"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_dev.db'

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Test runs: in-memory database, no scan cool-down"""
    TESTING = True
    DEBUG = True

    DATABASE_PATH = ':memory:'
    APP_BASE_URL = 'http://testserver'

    # Cool-down disabled so tests can re-scan immediately
    SCAN_COOLDOWN_SECONDS = 0.0
    PAYLOAD_MAX_AGE_HOURS = None


class ProductionConfig(Config):
    """Production: rotating log file, warnings and above"""
    DEBUG = False
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Setup file logging
        if not app.debug:
            cls.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('QR Check-in startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration based on name or the FLASK_ENV environment variable"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, DevelopmentConfig)


def validate_config(config_class):
    """Return a list of problems with the payload and scanning settings"""
    errors = []

    if not str(config_class.APP_BASE_URL).startswith(('http://', 'https://')):
        errors.append(f"APP_BASE_URL must be an absolute http(s) URL: {config_class.APP_BASE_URL}")

    if not config_class.ATTENDANCE_CHECK_PATH.startswith('/'):
        errors.append(f"ATTENDANCE_CHECK_PATH must start with '/': {config_class.ATTENDANCE_CHECK_PATH}")

    if config_class.SCAN_COOLDOWN_SECONDS < 0:
        errors.append("SCAN_COOLDOWN_SECONDS cannot be negative")

    max_age = config_class.PAYLOAD_MAX_AGE_HOURS
    if max_age is not None and max_age <= 0:
        errors.append("PAYLOAD_MAX_AGE_HOURS must be positive when set")

    return errors


def init_config(app, config_name=None):
    """Apply the named configuration to the app, refusing to start on invalid settings"""
    config_class = get_config(config_name)
    config_class.init_app(app)

    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError(f"Invalid configuration: {len(errors)} problem(s), see log")

    return config_class

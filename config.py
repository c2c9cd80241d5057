"""Application settings and logging setup."""
import logging
import logging.config
import os
import sys


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _engine_options(database_url, timeout):
    options = {'pool_pre_ping': True}
    if database_url.startswith('sqlite'):
        # A locked SQLite file fails after the timeout instead of hanging.
        options['connect_args'] = {'timeout': timeout, 'check_same_thread': False}
    else:
        options['pool_timeout'] = timeout
    return options


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-change-this')

    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///seating.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    STORE_TIMEOUT_SECONDS = float(os.environ.get('STORE_TIMEOUT_SECONDS', '10'))
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI, STORE_TIMEOUT_SECONDS)

    DEFAULT_ORG_ID = os.environ.get('DEFAULT_ORG_ID', 'default')
    LOCK_TIMEOUT_SECONDS = float(os.environ.get('LOCK_TIMEOUT_SECONDS', '5'))
    ALLOW_CANCEL_ON_HOLD = _env_bool('ALLOW_CANCEL_ON_HOLD')
    DUPLICATE_PHONE_MIN_LENGTH = int(os.environ.get('DUPLICATE_PHONE_MIN_LENGTH', '5'))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')


def setup_logging(level='INFO'):
    """Console logging for the app and the engine modules."""
    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'simple': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'simple',
                'stream': sys.stdout
            }
        },
        'root': {
            'level': level,
            'handlers': ['console']
        },
        'loggers': {
            'sqlalchemy.engine': {'level': 'WARNING'},
            'engineio': {'level': 'WARNING'},
            'socketio': {'level': 'WARNING'}
        }
    })

import os


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-prod')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Remote data service
    REMOTE_URL = os.getenv('REMOTE_URL', 'http://localhost:54321')
    REMOTE_API_KEY = os.getenv('REMOTE_API_KEY', '')
    REMOTE_TIMEOUT = float(os.getenv('REMOTE_TIMEOUT', '10'))
    OAUTH_REDIRECT_URI = os.getenv('OAUTH_REDIRECT_URI', 'courtster://auth/callback')

    # Durable local store
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'sql')
    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379')
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///session_client.db')
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTH_SESSION_KEY = os.getenv('AUTH_SESSION_KEY', 'AUTH_SESSION')

    # Offline queue
    QUEUE_KEY = os.getenv('QUEUE_KEY', 'OFFLINE_QUEUE')
    QUEUE_MAX_RETRIES = int(os.getenv('QUEUE_MAX_RETRIES', '3'))
    SYNC_IDLE_RESET_SECONDS = float(os.getenv('SYNC_IDLE_RESET_SECONDS', '3'))

    # Retry / backoff (linear: attempt * base delay)
    RETRY_BASE_DELAY = float(os.getenv('RETRY_BASE_DELAY', '1.0'))
    SIGNUP_COMPLETE_DELAY = float(os.getenv('SIGNUP_COMPLETE_DELAY', '0.5'))

    # Devices
    DEVICE_LIMIT = int(os.getenv('DEVICE_LIMIT', '3'))
    DEVICE_PLATFORM = os.getenv('DEVICE_PLATFORM', 'android')
    DEVICE_VENDOR_ID = os.getenv('DEVICE_VENDOR_ID', '')
    DEVICE_MODEL = os.getenv('DEVICE_MODEL', 'Unknown Device')
    DEVICE_OS_VERSION = os.getenv('DEVICE_OS_VERSION', 'Unknown')

    # Connectivity
    CONNECTIVITY_PROBE_URL = os.getenv('CONNECTIVITY_PROBE_URL', '')
    CONNECTIVITY_POLL_INTERVAL = float(os.getenv('CONNECTIVITY_POLL_INTERVAL', '5'))


class DevelopmentConfig(Config):
    DEBUG = True
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'sql')


class ProductionConfig(Config):
    DEBUG = False
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'redis')


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    STORE_BACKEND = 'memory'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    RETRY_BASE_DELAY = 0.0
    SIGNUP_COMPLETE_DELAY = 0.0
    SYNC_IDLE_RESET_SECONDS = 0.0
    CONNECTIVITY_PROBE_URL = ''
    CONNECTIVITY_POLL_INTERVAL = 0.0
    DEVICE_VENDOR_ID = 'test-vendor-id'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}

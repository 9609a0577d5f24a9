# config/settings.py
"""
Pipeline Configuration for the Newsletter Delivery Service
"""

import os
import secrets
from datetime import timedelta


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class PipelineConfig:
    """Base configuration shared by the web app, Celery workers and tests"""

    # Database
    DATABASE_URL = os.environ.get('DATABASE_URL') or 'sqlite:///newsletter_pipeline.db'
    DB_POOL_SIZE = int(os.environ.get('DB_POOL_SIZE', 10))
    DB_MAX_OVERFLOW = int(os.environ.get('DB_MAX_OVERFLOW', 20))
    SLOW_QUERY_THRESHOLD = 1.0  # seconds

    # Redis (statistics cache) and Celery
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/1')
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

    # Send queue
    CLAIM_LEASE_SECONDS = int(os.environ.get('CLAIM_LEASE_SECONDS', 300))
    DISPATCH_BATCH_SIZE = int(os.environ.get('DISPATCH_BATCH_SIZE', 100))
    DEFAULT_MAX_ATTEMPTS = int(os.environ.get('DEFAULT_MAX_ATTEMPTS', 5))
    RETRY_BASE_SECONDS = int(os.environ.get('RETRY_BASE_SECONDS', 30))
    RETRY_FACTOR = float(os.environ.get('RETRY_FACTOR', 2))
    RETRY_CAP_SECONDS = int(os.environ.get('RETRY_CAP_SECONDS', 3600))
    RETRY_JITTER = float(os.environ.get('RETRY_JITTER', 0.2))

    # Recipient policy
    REQUIRE_VERIFIED_SUBSCRIBERS = _env_bool('REQUIRE_VERIFIED_SUBSCRIBERS', True)
    HARD_BOUNCE_SUPPRESSES = _env_bool('HARD_BOUNCE_SUPPRESSES', True)

    # Webhooks, tracking and operator access
    WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET')
    TRACKING_SECRET = os.environ.get('TRACKING_SECRET')  # must match across web and worker processes
    TRACKING_BASE_URL = os.environ.get('TRACKING_BASE_URL')
    OPERATOR_API_KEY = os.environ.get('OPERATOR_API_KEY')

    # Reporting
    STATS_POLL_INTERVAL = int(os.environ.get('STATS_POLL_INTERVAL', 60))
    ENGAGEMENT_WINDOW = timedelta(days=30)

    # Outbound SMTP
    SMTP_HOST = os.environ.get('SMTP_HOST', 'localhost')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SMTP_USERNAME = os.environ.get('SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')
    SMTP_TIMEOUT = int(os.environ.get('SMTP_TIMEOUT', 60))
    SMTP_VALIDATE_CERTS = _env_bool('SMTP_VALIDATE_CERTS', True)
    MESSAGE_ID_DOMAIN = os.environ.get('MESSAGE_ID_DOMAIN', 'localhost')
    DEFAULT_FROM_ADDRESS = os.environ.get('DEFAULT_FROM_ADDRESS', 'noreply@localhost')

    # Templates
    CSS_INLINING = _env_bool('CSS_INLINING', True)

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024  # webhook payloads
    VERSION = os.environ.get('APP_VERSION', '1.0.0')

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
    }


class DevelopmentConfig(PipelineConfig):
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    REQUIRE_VERIFIED_SUBSCRIBERS = False


class TestingConfig(PipelineConfig):
    TESTING = True
    DATABASE_URL = 'sqlite://'
    REDIS_URL = None
    TRACKING_SECRET = 'test-tracking-secret'
    TRACKING_BASE_URL = 'https://track.example.com'
    WEBHOOK_SECRET = None
    OPERATOR_API_KEY = None
    CSS_INLINING = False
    RETRY_JITTER = 0.0


class ProductionConfig(PipelineConfig):
    LOG_FILE = os.environ.get('LOG_FILE', '/var/log/newsletter-pipeline/pipeline.log')


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: str = None):
    """Resolve a configuration class by environment name"""
    name = name or os.environ.get('PIPELINE_ENV', 'production')
    return CONFIGS.get(name, ProductionConfig)

import os
import secrets
from dotenv import load_dotenv

load_dotenv()


def _require_in_production(var_name, default):
    """Return env var value. In production, warn loudly if still using default."""
    value = os.environ.get(var_name, "")
    if value:
        return value
    env = os.environ.get("FLASK_ENV", "development")
    if env != "development" and default:
        import logging
        logging.getLogger(__name__).warning(
            "%s is using an insecure default. Set it via environment variable!", var_name
        )
    return default


def _database_url():
    url = os.environ.get("DATABASE_URL", "")
    if not url:
        return "sqlite:///lawnly.db"
    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = _require_in_production(
        'SECRET_KEY', 'dev-only-' + secrets.token_hex(16)
    )
    DEBUG = os.environ.get('FLASK_ENV', 'development') == 'development'
    TESTING = False
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    # JWT Authentication
    JWT_SECRET = _require_in_production(
        'JWT_SECRET', 'dev-only-' + secrets.token_hex(32)
    )
    JWT_EXPIRY_DAYS = int(os.environ.get('JWT_EXPIRY_DAYS', '30'))

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

    # Stripe (empty key = dev mode, processor ids are fabricated)
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    CURRENCY = os.environ.get('CURRENCY', 'aud')
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get('STRIPE_MAX_NETWORK_RETRIES', '2'))
    PLATFORM_COMMISSION = float(os.environ.get('PLATFORM_COMMISSION', '0.15'))

    # Email: Resend
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY', '')
    EMAIL_FROM = os.environ.get('EMAIL_FROM', 'bookings@lawnly.com.au')
    EMAIL_FROM_NAME = os.environ.get('EMAIL_FROM_NAME', 'Lawnly')
    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'https://app.lawnly.com.au')

    # Booking lifecycle
    REVIEW_WINDOW_HOURS = int(os.environ.get('REVIEW_WINDOW_HOURS', '48'))
    DISPUTE_WINDOW_DAYS = int(os.environ.get('DISPUTE_WINDOW_DAYS', '7'))
    PRICE_APPROVAL_DAYS = int(os.environ.get('PRICE_APPROVAL_DAYS', '7'))
    PRICE_CHANGE_TOLERANCE = float(os.environ.get('PRICE_CHANGE_TOLERANCE', '0.50'))
    MIN_COMPLETION_PHOTOS = int(os.environ.get('MIN_COMPLETION_PHOTOS', '4'))
    GST_RATE = float(os.environ.get('GST_RATE', '0.10'))

    # Background scheduler
    ENABLE_SCHEDULER = os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true'
    SCHEDULER_INTERVAL_MINUTES = int(os.environ.get('SCHEDULER_INTERVAL_MINUTES', '5'))

    # Rate limiting
    RATELIMIT_ENABLED = True

    # Server
    PORT = int(os.environ.get('PORT', '8080'))


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""

    TESTING = True
    DEBUG = False

    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///:memory:')

    JWT_SECRET = 'test-jwt-secret'
    SECRET_KEY = 'test-secret-key'

    # Dev-mode ledger unless a test patches the processor in
    STRIPE_SECRET_KEY = ''
    RESEND_API_KEY = ''

    ENABLE_SCHEDULER = False
    RATELIMIT_ENABLED = False

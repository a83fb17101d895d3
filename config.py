"""Configuration module for the storefront cart engine."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Session cookie (only carries the cart session id)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Remote storefront services (cart, product info, discounts)
    STOREFRONT_API_URL = os.getenv('STOREFRONT_API_URL', 'http://localhost:8080/api')
    HTTP_TIMEOUT = float(os.getenv('HTTP_TIMEOUT', '10'))

    # Persistent local store (cart snapshots survive restarts)
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///storefront.db')
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Ephemeral session store (notification ledger, coupon state)
    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
    SESSION_STORE_ENABLED = os.getenv('SESSION_STORE_ENABLED', 'true').lower() == 'true'
    SESSION_STORE_TTL = int(os.getenv('SESSION_STORE_TTL', '86400'))
    SESSION_STORE_PREFIX = os.getenv('SESSION_STORE_PREFIX', 'storefront')

    # Cart reconciliation
    CART_STORAGE_KEY = os.getenv('CART_STORAGE_KEY', 'cart')
    SYNC_MAX_ATTEMPTS = int(os.getenv('SYNC_MAX_ATTEMPTS', '3'))
    SYNC_BACKOFF_BASE = float(os.getenv('SYNC_BACKOFF_BASE', '1.0'))  # 1s, 2s, 4s...
    BACKGROUND_REFRESH_DELAY = float(os.getenv('BACKGROUND_REFRESH_DELAY', '1.0'))

    # Discounts
    DISCOUNT_MIN_INTERVAL = float(os.getenv('DISCOUNT_MIN_INTERVAL', '1.0'))
    COUPON_RECHECK_DELAY = float(os.getenv('COUPON_RECHECK_DELAY', '0.5'))

    # Notification dedup
    NOTIFICATION_TTL = int(os.getenv('NOTIFICATION_TTL', '86400'))  # 24 hours
    NOTIFICATION_SWEEP_INTERVAL = int(os.getenv('NOTIFICATION_SWEEP_INTERVAL', '3600'))  # hourly

    # Flask -> engine loop
    ENGINE_CALL_TIMEOUT = float(os.getenv('ENGINE_CALL_TIMEOUT', '30'))
    ENGINE_IDLE_TTL = int(os.getenv('ENGINE_IDLE_TTL', '3600'))


class TestingConfig(Config):
    """Configuration used by the test-suite."""

    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SESSION_STORE_ENABLED = False
    SYNC_BACKOFF_BASE = 0.0
    BACKGROUND_REFRESH_DELAY = 0.0
    DISCOUNT_MIN_INTERVAL = 0.0
    COUPON_RECHECK_DELAY = 0.0
    ENGINE_CALL_TIMEOUT = 5.0

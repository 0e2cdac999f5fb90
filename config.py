"""Configuration module for the checkout service."""
import os
from decimal import Decimal
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Session Configuration (cart lives in the signed session cookie)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'pos')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'pos')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'pos')

        DATABASE_URL = (
            f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Store identity used when the request does not carry one
    DEFAULT_STORE_ID = os.getenv('DEFAULT_STORE_ID', 'store-1')

    # Pricing
    TAX_RATE = Decimal(os.getenv('TAX_RATE', '0.08'))

    # Tender reconciliation: split tenders must sum to the total within this amount
    SPLIT_TENDER_TOLERANCE = Decimal(os.getenv('SPLIT_TENDER_TOLERANCE', '0.01'))

    # Commit unit retry policy (transient storage errors only)
    CHECKOUT_MAX_ATTEMPTS = int(os.getenv('CHECKOUT_MAX_ATTEMPTS', '3'))
    CHECKOUT_RETRY_BACKOFF = float(os.getenv('CHECKOUT_RETRY_BACKOFF', '0.05'))  # seconds

    # Re-read and retry a stock decrement this many times after a lost update
    STOCK_CONFLICT_RETRIES = int(os.getenv('STOCK_CONFLICT_RETRIES', '3'))

    # Loyalty: points earned per whole currency unit spent
    LOYALTY_POINTS_PER_UNIT = int(os.getenv('LOYALTY_POINTS_PER_UNIT', '1'))

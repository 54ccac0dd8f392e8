import os
from datetime import timedelta

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URI', 'sqlite:///clinic.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('SECRET_KEY', 'fallback_secret')
    PERMANENT_SESSION_LIFETIME = timedelta(days=1)

    CLINIC_TIMEZONE = os.environ.get('CLINIC_TIMEZONE', 'Asia/Kolkata')
    PHONE_REGION = os.environ.get('PHONE_REGION', 'IN')

    # Overlapping bookings for one doctor are advisory unless this is on
    ENFORCE_SLOT_EXCLUSIVITY = _env_flag('ENFORCE_SLOT_EXCLUSIVITY', False)

    DEFAULT_PAGE_SIZE = int(os.environ.get('DEFAULT_PAGE_SIZE', 20))
    MAX_PAGE_SIZE = int(os.environ.get('MAX_PAGE_SIZE', 100))
    LOW_STOCK_EXPIRY_WINDOW_DAYS = int(os.environ.get('LOW_STOCK_EXPIRY_WINDOW_DAYS', 30))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.environ.get('LOG_FORMAT', 'console')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SECRET_KEY = 'test-secret'
    CLINIC_TIMEZONE = 'UTC'
    LOG_LEVEL = 'WARNING'

# config.py
import logging
import os

from dotenv import load_dotenv

from kudimarket.errors import ConfigError

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///kudimarket.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_AS_ASCII = False
    TESTING = False

    # JWT sessions
    JWT_SECRET = os.getenv("JWT_SECRET")
    JWT_ALGO = os.getenv("JWT_ALGO", "HS256")
    JWT_EXPIRY_HOURS = _int("JWT_EXPIRY_HOURS", 24 * 7)

    # Paystack
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_CALLBACK_URL = os.getenv("PAYSTACK_CALLBACK_URL", "http://localhost:3000/payment/callback")
    PAYSTACK_TIMEOUT = float(os.getenv("PAYSTACK_TIMEOUT", "10"))
    PAYSTACK_MAX_RETRIES = _int("PAYSTACK_MAX_RETRIES", 3)

    # Money / orders
    CURRENCY = os.getenv("CURRENCY", "GHS")
    ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "KM")
    DELIVERY_FEE_REGIONAL = os.getenv("DELIVERY_FEE_REGIONAL", "10.00")
    DELIVERY_FEE_REMOTE = os.getenv("DELIVERY_FEE_REMOTE", "20.00")

    # Lifecycle timeouts (days)
    DELIVERY_INFERENCE_DAYS = _int("DELIVERY_INFERENCE_DAYS", 7)
    AUTO_CONFIRM_DAYS = _int("AUTO_CONFIRM_DAYS", 3)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def validate(self, logger: logging.Logger | None = None) -> None:
        """Fail fast on configuration the service cannot run without."""
        logger = logger or logging.getLogger(__name__)
        if not self.JWT_SECRET:
            raise ConfigError("JWT_SECRET environment variable is not set")
        if not self.SQLALCHEMY_DATABASE_URI:
            raise ConfigError("DATABASE_URL resolved to an empty value")
        if self.PAYSTACK_MAX_RETRIES < 1:
            raise ConfigError("PAYSTACK_MAX_RETRIES must be at least 1")
        if not self.PAYSTACK_SECRET_KEY:
            logger.warning("PAYSTACK_SECRET_KEY not set; payment features will not work")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    JWT_SECRET = "test-jwt-secret"
    PAYSTACK_SECRET_KEY = "sk_test_secret"
    PAYSTACK_CALLBACK_URL = "http://testserver/payment/callback"
    PAYSTACK_TIMEOUT = 2.0
    PAYSTACK_MAX_RETRIES = 2

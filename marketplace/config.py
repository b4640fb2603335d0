import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings:
    @staticmethod
    def _get_int(name: str, default: int) -> int:
        return int(os.getenv(name, str(default)))

    @staticmethod
    def _get_float(name: str, default: float) -> float:
        return float(os.getenv(name, str(default)))

    @staticmethod
    def _get_decimal(name: str, default: str) -> Decimal:
        return Decimal(os.getenv(name, default).strip() or default)

    @property
    def BASE_URL(self) -> str:
        return os.getenv("BASE_URL", "http://localhost:8000")

    @property
    def DATABASE_URL(self) -> str:
        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL is required")
        return database_url

    @property
    def DB_CONNECT_RETRIES(self) -> int:
        return self._get_int("DB_CONNECT_RETRIES", 10)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    @property
    def DB_LOCK_TIMEOUT_SECONDS(self) -> int:
        return self._get_int("DB_LOCK_TIMEOUT_SECONDS", 15)

    @property
    def JWT_SECRET(self) -> str:
        return os.getenv("JWT_SECRET", "change-me-in-production")

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv("JWT_ALGORITHM", "HS256")

    @property
    def STRIPE_SECRET_KEY(self) -> str:
        return os.getenv("STRIPE_SECRET_KEY", "")

    @property
    def STRIPE_WEBHOOK_SECRET(self) -> str:
        return os.getenv("STRIPE_WEBHOOK_SECRET", "")

    @property
    def CURRENCY(self) -> str:
        return os.getenv("CURRENCY", "usd").lower()

    @property
    def PLATFORM_FEE_RATE(self) -> Decimal:
        return self._get_decimal("PLATFORM_FEE_RATE", "0.05")

    @property
    def TAX_RATE(self) -> Decimal:
        """Tax rate in percent, e.g. 7.5 for 7.5%."""
        return self._get_decimal("TAX_RATE", "0")

    @property
    def SHIPPING_FLAT_FEE(self) -> Decimal:
        return self._get_decimal("SHIPPING_FLAT_FEE", "60")

    @property
    def FREE_SHIPPING_THRESHOLD(self) -> Decimal:
        return self._get_decimal("FREE_SHIPPING_THRESHOLD", "1000")

    @property
    def ORDER_TIMEOUT_SECONDS(self) -> float:
        return self._get_float("ORDER_TIMEOUT_SECONDS", 8.0)

    @property
    def EFFECTS_MAX_WORKERS(self) -> int:
        return self._get_int("EFFECTS_MAX_WORKERS", 4)

    @property
    def SMTP_HOST(self) -> str:
        return os.getenv("SMTP_HOST", "")

    @property
    def SMTP_PORT(self) -> int:
        return self._get_int("SMTP_PORT", 587)

    @property
    def SMTP_USER(self) -> str:
        return os.getenv("SMTP_USER", "")

    @property
    def SMTP_PASSWORD(self) -> str:
        return os.getenv("SMTP_PASSWORD", "")

    @property
    def SMTP_USE_TLS(self) -> bool:
        return os.getenv("SMTP_USE_TLS", "true").strip().lower() in {"1", "true", "yes"}

    @property
    def SMTP_FROM_EMAIL(self) -> str:
        return os.getenv("SMTP_FROM_EMAIL", "")

    @property
    def SMTP_FROM_NAME(self) -> str:
        return os.getenv("SMTP_FROM_NAME", "Marketplace")

    @property
    def ADMIN_EMAIL(self) -> str:
        return os.getenv("ADMIN_EMAIL", "")

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")


settings = Settings()

# Validate critical settings
if settings.JWT_SECRET == "change-me-in-production":
    import warnings
    warnings.warn("JWT_SECRET is using default value. Change it in production!", UserWarning)

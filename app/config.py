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

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

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
        return self._get_int("DB_CONNECT_RETRIES", 5)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    @property
    def JWT_SECRET(self) -> str:
        return os.getenv("JWT_SECRET", "change-me-in-production")

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv("JWT_ALGORITHM", "HS256")

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")

    # Solana

    @property
    def PLATFORM_WALLET_ADDRESS(self) -> str:
        return os.getenv("PLATFORM_WALLET_ADDRESS", "").strip()

    @property
    def SOLANA_RPC_URL(self) -> str:
        return os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")

    @property
    def SOLANA_RPC_CONNECT_TIMEOUT_SECONDS(self) -> float:
        return self._get_float("SOLANA_RPC_CONNECT_TIMEOUT_SECONDS", 10)

    @property
    def SOLANA_RPC_READ_TIMEOUT_SECONDS(self) -> float:
        return self._get_float("SOLANA_RPC_READ_TIMEOUT_SECONDS", 30)

    @property
    def VERIFY_MAX_RETRIES(self) -> int:
        return self._get_int("VERIFY_MAX_RETRIES", 3)

    @property
    def VERIFY_RETRY_DELAY_SECONDS(self) -> float:
        return self._get_float("VERIFY_RETRY_DELAY_SECONDS", 2)

    @property
    def VERIFY_INITIAL_DELAY_SECONDS(self) -> int:
        return self._get_int("VERIFY_INITIAL_DELAY_SECONDS", 10)

    @property
    def VERIFY_SIGNATURE_LIMIT(self) -> int:
        return self._get_int("VERIFY_SIGNATURE_LIMIT", 100)

    @property
    def NATIVE_AMOUNT_TOLERANCE(self) -> Decimal:
        return self._get_decimal("NATIVE_AMOUNT_TOLERANCE", "0.01")

    @property
    def SPL_AMOUNT_TOLERANCE(self) -> Decimal:
        return self._get_decimal("SPL_AMOUNT_TOLERANCE", "0.000001")

    @property
    def VERIFICATION_CACHE_TTL_SECONDS(self) -> int:
        return self._get_int("VERIFICATION_CACHE_TTL_SECONDS", 300)

    @property
    def VERIFY_RECHECK_INTERVAL_SECONDS(self) -> int:
        # A signature left pending by the last check is not looked up again sooner.
        return self._get_int("VERIFY_RECHECK_INTERVAL_SECONDS", 10)

    @property
    def CACHE_URL(self) -> str:
        return os.getenv("CACHE_URL", "").strip()

    # Vendor

    @property
    def VENDOR_URL(self) -> str:
        return os.getenv("VENDOR_URL", "").strip()

    @property
    def VENDOR_MERCHANT_ID(self) -> str:
        return os.getenv("VENDOR_MERCHANT_ID", "")

    @property
    def VENDOR_SECRET_KEY(self) -> str:
        return os.getenv("VENDOR_SECRET_KEY", "")

    @property
    def VENDOR_X_MERCHANT(self) -> str:
        return os.getenv("VENDOR_X_MERCHANT", "")

    @property
    def VENDOR_API_KEY(self) -> str:
        return os.getenv("VENDOR_API_KEY", "")

    @property
    def VENDOR_CALLBACK_KEY(self) -> str:
        return os.getenv("VENDOR_CALLBACK_KEY", "")

    @property
    def VENDOR_CONNECT_TIMEOUT_SECONDS(self) -> float:
        return self._get_float("VENDOR_CONNECT_TIMEOUT_SECONDS", 5)

    @property
    def VENDOR_READ_TIMEOUT_SECONDS(self) -> float:
        return self._get_float("VENDOR_READ_TIMEOUT_SECONDS", 20)

    @property
    def VENDOR_MAX_ATTEMPTS(self) -> int:
        return self._get_int("VENDOR_MAX_ATTEMPTS", 3)

    @property
    def VENDOR_MAINTENANCE_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("VENDOR_MAINTENANCE_RETRY_DELAY_SECONDS", 600)

    # Reconciliation

    @property
    def RECONCILE_BATCH_SIZE(self) -> int:
        return self._get_int("RECONCILE_BATCH_SIZE", 50)

    @property
    def RECONCILE_MIN_AGE_MINUTES(self) -> int:
        return self._get_int("RECONCILE_MIN_AGE_MINUTES", 5)

    @property
    def RECONCILE_INTERVAL_SECONDS(self) -> int:
        return self._get_int("RECONCILE_INTERVAL_SECONDS", 180)

    @property
    def RECONCILE_THROTTLE_SECONDS(self) -> float:
        return self._get_float("RECONCILE_THROTTLE_SECONDS", 0.5)

    # Worker pool

    @property
    def WORKER_ENABLED(self) -> bool:
        return self._get_bool("WORKER_ENABLED", True)

    @property
    def WORKER_CONCURRENCY(self) -> int:
        return self._get_int("WORKER_CONCURRENCY", 4)

    @property
    def WORKER_POLL_INTERVAL_SECONDS(self) -> float:
        return self._get_float("WORKER_POLL_INTERVAL_SECONDS", 1)

    @property
    def JOB_MAX_ATTEMPTS(self) -> int:
        return self._get_int("JOB_MAX_ATTEMPTS", 5)

    @property
    def JOB_RETRY_BASE_SECONDS(self) -> int:
        return self._get_int("JOB_RETRY_BASE_SECONDS", 15)

    @property
    def JOB_LEASE_SECONDS(self) -> int:
        return self._get_int("JOB_LEASE_SECONDS", 600)


settings = Settings()

# Validate critical settings
if settings.JWT_SECRET == "change-me-in-production":
    import warnings
    warnings.warn("JWT_SECRET is using default value. Change it in production!", UserWarning)

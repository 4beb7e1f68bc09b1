import logging
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from app.config import settings
from app.models.database import Base, _normalize_database_url, engine
from app.models import (  # noqa: F401 - register models
    AuditLog,
    BackgroundJob,
    CryptoTransaction,
    Order,
    User,
    VendorTransactionLog,
    VerificationCache,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def wait_for_db(retries: int, retry_delay_seconds: int) -> None:
    """Block until the database answers ``SELECT 1`` or retries run out."""
    last_error = None
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database reachable (attempt %s/%s)", attempt, retries)
            return
        except OperationalError as exc:
            last_error = exc
            logger.warning("Database not reachable (attempt %s/%s): %s", attempt, retries, exc)
            if attempt < retries:
                time.sleep(retry_delay_seconds)

    raise RuntimeError(
        f"Database is unreachable after {retries} attempts. "
        "Check DATABASE_URL; orders and background jobs cannot be stored without it."
    ) from last_error


def missing_tables() -> list[str]:
    existing = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in existing)


def init_db() -> None:
    wait_for_db(
        retries=settings.DB_CONNECT_RETRIES,
        retry_delay_seconds=settings.DB_CONNECT_RETRY_DELAY_SECONDS,
    )
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        return

    run_migrations()
    missing = missing_tables()
    if missing:
        # The job queue and the order tables must come from migrations on postgres.
        raise RuntimeError(f"Migrations left tables missing: {', '.join(missing)}")


def run_migrations() -> None:
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    script_location = PROJECT_ROOT / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        raise RuntimeError("Alembic configuration is missing (alembic.ini or alembic/ directory not found).")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", _normalize_database_url(settings.DATABASE_URL))
    logger.info("Applying migrations")
    command.upgrade(config, "head")

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import order
from app.config import settings
from app.db_init import init_db
from app.webhooks import vendor_callback
from app.worker.pool import WorkerPool

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("app.startup")

POSTGRES_SCHEMES = {"postgres", "postgresql", "postgresql+psycopg"}


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def _cors_origins(cors_raw: str) -> list[str]:
    return [origin.strip() for origin in cors_raw.split(",") if origin.strip()]


def _validate_database_url_for_runtime(database_url: str) -> None:
    parsed = urlparse(database_url)
    scheme = parsed.scheme

    if not scheme:
        raise RuntimeError("DATABASE_URL is missing URL scheme (expected postgresql:// or postgresql+psycopg://).")
    if scheme == "sqlite":
        return
    if scheme not in POSTGRES_SCHEMES:
        raise RuntimeError(
            f"DATABASE_URL has unsupported scheme '{scheme}' "
            "(expected postgresql:// or postgresql+psycopg://)."
        )
    if not parsed.hostname:
        raise RuntimeError("DATABASE_URL is missing host.")
    if not parsed.path.lstrip("/"):
        raise RuntimeError("DATABASE_URL is missing database name in path.")


def _db_url_diagnostics(database_url: str) -> str:
    parsed = urlparse(database_url)
    return (
        f"scheme={parsed.scheme or '<missing>'}, host={parsed.hostname or '<missing>'}, "
        f"port={parsed.port or '<missing>'}, database={parsed.path.lstrip('/') or '<missing>'}"
    )


def _validate_required_env_for_runtime() -> None:
    errors = []
    warnings = []

    if not settings.JWT_SECRET.strip():
        errors.append("JWT_SECRET is required.")

    if not _is_http_url(settings.BASE_URL.strip()):
        errors.append("BASE_URL must be an absolute http(s) URL; vendor callbacks are sent to it.")

    origins = _cors_origins(settings.CORS_ORIGINS)
    if not origins:
        errors.append("CORS_ORIGINS must contain at least one comma-separated origin URL.")
    else:
        invalid_origins = [origin for origin in origins if not _is_http_url(origin)]
        if invalid_origins:
            errors.append(f"CORS_ORIGINS contains invalid URL(s): {', '.join(invalid_origins)}")

    if not _is_http_url(settings.SOLANA_RPC_URL):
        errors.append("SOLANA_RPC_URL must be an absolute http(s) URL.")

    if settings.WORKER_ENABLED:
        if not settings.PLATFORM_WALLET_ADDRESS:
            errors.append("PLATFORM_WALLET_ADDRESS is required to verify payments.")
        if not (settings.VENDOR_URL and settings.VENDOR_MERCHANT_ID and settings.VENDOR_SECRET_KEY):
            warnings.append("Vendor credentials are incomplete; paid orders will fail at fulfillment.")

    if not settings.VENDOR_CALLBACK_KEY:
        warnings.append("VENDOR_CALLBACK_KEY is not set; vendor callbacks are accepted unauthenticated.")

    cache_url = settings.CACHE_URL
    if cache_url and not cache_url.startswith(("redis://", "rediss://", "unix://")):
        errors.append("CACHE_URL must be a redis:// URL or empty for the in-process cache.")

    if warnings:
        logger.warning("Startup environment warnings: %s", " | ".join(warnings))

    if errors:
        raise RuntimeError("Startup environment validation failed: " + " | ".join(errors))


@asynccontextmanager
async def lifespan(app: FastAPI):
    database_url = "<unavailable>"
    logger.info("Application startup initiated.")
    try:
        database_url = settings.DATABASE_URL
        logger.info("DATABASE_URL diagnostics at startup: %s", _db_url_diagnostics(database_url))
        _validate_database_url_for_runtime(database_url)
        _validate_required_env_for_runtime()
        init_db()
    except Exception as exc:
        diagnostics = (
            _db_url_diagnostics(database_url)
            if database_url != "<unavailable>"
            else "DATABASE_URL unavailable (missing or unreadable)."
        )
        logger.exception(
            "Database initialization failed: %s. DATABASE_URL diagnostics: %s",
            str(exc),
            diagnostics,
        )
        raise

    pool = None
    if settings.WORKER_ENABLED:
        pool = WorkerPool(
            concurrency=settings.WORKER_CONCURRENCY,
            poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
            reconcile_interval=settings.RECONCILE_INTERVAL_SECONDS,
        )
        await pool.start()
    else:
        logger.info("Background workers disabled (WORKER_ENABLED=false).")
    app.state.worker_pool = pool
    logger.info("Application startup completed successfully.")
    try:
        yield
    finally:
        if pool is not None:
            await pool.stop()


app = FastAPI(
    title="Game Credit Orders API",
    description=(
        "Game credit top-ups paid with Solana (SOL, USDC, USDT). "
        "Orders are verified on chain in the background and fulfilled through the game-credit vendor. "
        "Use **Authorize** with the wallet-auth access token for the Orders endpoints."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Orders", "description": "Create, list, inspect and cancel top-up orders (requires auth)."},
        {"name": "Webhooks", "description": "Called by the game-credit vendor."},
    ],
)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        **openapi_schema.get("components", {}).get("securitySchemes", {}),
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Access token from the wallet-auth service",
        },
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(settings.CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(order.router, prefix="/api/orders", tags=["Orders"])
app.include_router(vendor_callback.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
def root():
    return {"status": "ok", "service": "Game Credit Orders API"}


@app.get("/health")
def health():
    return {"status": "ok"}

import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace.api import cart, financial, order, payments
from marketplace.config import settings
from marketplace.db_init import init_db
from marketplace.services.errors import (
    ConflictError,
    MarketplaceError,
    NotFoundError,
    OrderTimeoutError,
    OrderValidationError,
    PaymentNotConfiguredError,
    PaymentProviderError,
    PermissionDeniedError,
)
from marketplace.webhooks import stripe_webhook

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("marketplace.startup")

# Checked in order; the first matching base class wins.
ERROR_STATUS_CODES: tuple[tuple[type[MarketplaceError], int], ...] = (
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (OrderValidationError, 400),
    (ConflictError, 409),
    (OrderTimeoutError, 504),
    (PaymentProviderError, 502),
    (PaymentNotConfiguredError, 503),
)


def _status_for(exc: MarketplaceError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _is_localhost(host: str | None) -> bool:
    return host in {"localhost", "127.0.0.1"}


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def _cors_origins(cors_raw: str) -> list[str]:
    return [origin.strip() for origin in cors_raw.split(",") if origin.strip()]


def _is_railway_runtime() -> bool:
    return any(
        os.getenv(env_name)
        for env_name in (
            "RAILWAY_PROJECT_ID",
            "RAILWAY_SERVICE_ID",
            "RAILWAY_ENVIRONMENT",
            "RAILWAY_ENVIRONMENT_NAME",
            "RAILWAY_PUBLIC_DOMAIN",
        )
    )


def _validate_database_url_for_runtime(database_url: str) -> None:
    parsed = urlparse(database_url)
    scheme = parsed.scheme
    host = parsed.hostname
    db_name = parsed.path.lstrip("/")

    if not scheme:
        raise RuntimeError("DATABASE_URL is missing URL scheme (expected postgresql:// or postgresql+psycopg://).")
    if scheme == "sqlite":
        return
    if scheme not in {"postgres", "postgresql", "postgresql+psycopg"}:
        raise RuntimeError(
            f"DATABASE_URL has unsupported scheme '{scheme}' "
            "(expected postgresql:// or postgresql+psycopg://)."
        )
    if not host:
        raise RuntimeError("DATABASE_URL is missing host.")
    if not db_name:
        raise RuntimeError("DATABASE_URL is missing database name in path.")
    if _is_railway_runtime() and _is_localhost(host):
        raise RuntimeError(
            f"Invalid DATABASE_URL for Railway runtime: host is {host}. "
            "Use the Postgres service reference, e.g. DATABASE_URL=${{Postgres.DATABASE_URL}}."
        )


def _db_url_diagnostics(database_url: str) -> str:
    parsed = urlparse(database_url)
    host = parsed.hostname or "<missing>"
    scheme = parsed.scheme or "<missing>"
    query = parsed.query or "<empty>"

    tips = []
    if _is_localhost(host):
        tips.append("Host points to localhost; a hosted runtime needs the database service address.")
    if "sslmode" not in query and scheme != "sqlite":
        tips.append("No sslmode in URL query; managed databases often require sslmode=require.")
    if not tips:
        tips.append("URL structure looks valid; check credentials and network access.")

    return (
        f"scheme={scheme}, host={host}, port={parsed.port or '<missing>'}, "
        f"database={parsed.path.lstrip('/') or '<missing>'}; tips={' | '.join(tips)}"
    )


def _validate_required_env_for_runtime() -> None:
    errors = []
    warnings = []
    is_railway = _is_railway_runtime()

    jwt_secret = settings.JWT_SECRET.strip()
    if not jwt_secret:
        errors.append("JWT_SECRET is required.")
    elif is_railway and jwt_secret == "change-me-in-production":
        errors.append("JWT_SECRET uses the insecure default value.")

    if not _is_http_url(settings.BASE_URL.strip()):
        errors.append("BASE_URL must be an absolute http(s) URL.")

    origins = _cors_origins(settings.CORS_ORIGINS)
    if not origins:
        errors.append("CORS_ORIGINS must contain at least one comma-separated origin URL.")
    else:
        invalid_origins = [origin for origin in origins if not _is_http_url(origin)]
        if invalid_origins:
            errors.append(f"CORS_ORIGINS contains invalid URL(s): {', '.join(invalid_origins)}")

    fee_rate = settings.PLATFORM_FEE_RATE
    if fee_rate < 0 or fee_rate >= 1:
        errors.append(f"PLATFORM_FEE_RATE must be in [0, 1), got {fee_rate}.")

    if settings.SHIPPING_FLAT_FEE < 0 or settings.FREE_SHIPPING_THRESHOLD < 0:
        errors.append("SHIPPING_FLAT_FEE and FREE_SHIPPING_THRESHOLD must not be negative.")

    timeout = settings.ORDER_TIMEOUT_SECONDS
    if timeout <= 0:
        errors.append("ORDER_TIMEOUT_SECONDS must be positive.")
    elif timeout >= settings.DB_LOCK_TIMEOUT_SECONDS:
        errors.append(
            f"ORDER_TIMEOUT_SECONDS ({timeout:g}) must be lower than DB_LOCK_TIMEOUT_SECONDS "
            f"({settings.DB_LOCK_TIMEOUT_SECONDS})."
        )

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY is not set; card payments are disabled.")
    elif not settings.STRIPE_WEBHOOK_SECRET:
        warnings.append("STRIPE_WEBHOOK_SECRET is not set; Stripe webhooks will be ignored.")
    if not settings.SMTP_HOST:
        warnings.append("SMTP_HOST is not set; transactional emails will fail and be logged.")

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
        logger.exception("Startup failed: %s. DATABASE_URL diagnostics: %s", exc, diagnostics)
        raise
    logger.info("Application startup completed successfully.")
    yield


app = FastAPI(
    title="Marketplace API",
    description=(
        "Order placement, payments and seller settlement for a multi-seller marketplace. "
        "Use **Authorize** with a bearer token issued by the identity service."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Orders", "description": "Place, track and cancel orders."},
        {"name": "Cart", "description": "Buyer cart lines."},
        {"name": "Payments", "description": "Payment status and refunds."},
        {"name": "Financial", "description": "Seller ledger, payouts and platform overview."},
        {"name": "Webhooks", "description": "Called by Stripe."},
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
        "bearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"},
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(settings.CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable},
    )


app.include_router(order.router, prefix="/api/orders", tags=["Orders"])
app.include_router(cart.router, prefix="/api/cart", tags=["Cart"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(financial.router, prefix="/api/financial", tags=["Financial"])
app.include_router(stripe_webhook.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
def root():
    return {"status": "ok", "service": "Marketplace API"}


@app.get("/health")
def health():
    return {"status": "ok"}

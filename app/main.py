"""WassyPay Intake & Claim Settlement - Main Application."""

import logging.config
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.deps import scheduled_scanner
from app.api.routes import claims, intake, payments
from app.core.config import settings
from app.core.database import Base, engine
from app.core.errors import PaymentError
from app.core.logging import setup_logging
from app.core.logging_config import LOGGING_CONFIG
from app.services.ingestion.scheduler import IntakeScheduler

# Configure logging before anything else
logging.config.dictConfig(LOGGING_CONFIG)
logger = setup_logging(settings.log_level)

# Create all tables on startup
logger.info("Creating database tables...")
Base.metadata.create_all(bind=engine)
logger.info("Database tables ready")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the interval scanner for the life of the process, if enabled."""
    scheduler = None
    if settings.scanner_enabled:
        scheduler = IntakeScheduler(scheduled_scanner, settings.scan_interval_minutes)
        scheduler.start()
    else:
        logger.info("Background scanner disabled (SCANNER_ENABLED=false)")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown()


# -- OpenAPI tag metadata for Swagger grouping --
tags_metadata = [
    {
        "name": "Health",
        "description": "Service health and readiness checks.",
    },
    {
        "name": "Payments",
        "description": (
            "Payment records detected in the feed, plus a manual ingestion "
            "path for posts the feed missed."
        ),
    },
    {
        "name": "Claims",
        "description": (
            "List payments addressed to a handle with the sender's live "
            "authorization, and claim them to a wallet."
        ),
    },
    {
        "name": "Intake",
        "description": "Trigger a feed scan and inspect the scan watermark.",
    },
]


app = FastAPI(
    title="WassyPay Intake & Claim Settlement",
    description=(
        "## Social USDC payments\n\n"
        "Users post `send @recipient $amount` mentioning the bot. The "
        "scanner records each command as a pending payment; the recipient "
        "then claims it, and the vault moves USDC from the sender's token "
        "account using the allowance the sender approved.\n\n"
        "### Command forms\n"
        "- `send @user $N`\n"
        "- `send $N to @user`\n"
        "- `pay @user $N`\n\n"
        "### Payment lifecycle\n"
        "`pending` → `claim_in_progress` → `completed` | `failed` "
        "(failed payments can be claimed again).\n"
    ),
    version="1.0.0",
    openapi_tags=tags_metadata,
    license_info={
        "name": "MIT",
    },
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.include_router(payments.router, prefix="/api/v1/payments", tags=["Payments"])
app.include_router(claims.router, prefix="/api/v1/claims", tags=["Claims"])
app.include_router(intake.router, prefix="/api/v1/intake", tags=["Intake"])

logger.info("WassyPay API ready - routes registered")


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "detail": ...}``."""
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint.

    Returns a simple JSON object confirming the service is running.
    Useful for load balancers and monitoring systems.
    """
    return {"status": "healthy", "service": "wassypay"}

"""
Supply-Chain Ledger - Application Entry Point

An append-only product ledger for the supply-chain dashboard.
Products become blocks; events record what happened to them.

The ledger lives in process memory. Restarting the server empties it.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from supplychain.api.routes import message_response, router
from supplychain.config import LedgerConfig
from supplychain.core import (
    DuplicateProductError,
    Hasher,
    LedgerError,
    LedgerService,
    NotFoundError,
    ValidationError,
    seed_demo_data,
)
from supplychain.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    config: LedgerConfig = app.state.config
    ledger: LedgerService = app.state.ledger

    if config.auto_seed:
        seed_demo_data(ledger)

    if ledger.product_count > 0:
        if ledger.verify_links():
            logger.info("Chain links verified", product_count=ledger.product_count)
        else:
            logger.error("Chain link check FAILED")

    logger.info(
        "Application startup complete",
        product_count=ledger.product_count,
        event_count=ledger.event_count,
        link_scheme=ledger.link_scheme.value,
    )

    yield

    logger.info("Application shutdown complete")


def register_exception_handlers(app: FastAPI) -> None:
    """Map ledger errors to {"message": ...} bodies with the right status."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return message_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(DuplicateProductError)
    async def duplicate_product_handler(request: Request, exc: DuplicateProductError):
        return message_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return message_response(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return message_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return message_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request body",
            errors=jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error",
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return message_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")


def create_app(
    config: Optional[LedgerConfig] = None,
    ledger: Optional[LedgerService] = None,
) -> FastAPI:
    """
    Build the ledger application.

    Args:
        config: Server configuration (loaded from environment if omitted)
        ledger: Ledger to serve (a fresh in-memory ledger if omitted)
    """
    config = config or LedgerConfig.from_env()

    app = FastAPI(
        title="Supply-Chain Ledger",
        description="""
## Supply-Chain Ledger

An append-only record of products and the events that happen to them.

- **Append-only**: blocks and events are never edited or deleted
- **Linked**: every block carries its predecessor's link value
- **Not tamper-proof**: link values are append-order fingerprints, not signatures
- **Volatile**: everything is held in memory and lost on restart
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.ledger = ledger or LedgerService(link_scheme=config.link_scheme)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type"],
    )

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness check."""
        return {"status": "OK", "timestamp": Hasher.iso_timestamp()}

    @app.get("/health/ledger", tags=["System"])
    async def health_ledger(request: Request):
        """
        Ledger health with chain link verification.

        Returns 200 if the chain is self-consistent, 503 otherwise.
        """
        result = check_health(ledger=request.app.state.ledger)
        body = {
            "status": "healthy" if result.healthy else "unhealthy",
            "checks": result.checks,
            "duration_ms": result.duration_ms,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
        if not result.healthy:
            return message_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Ledger unhealthy", **body)
        return body

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()

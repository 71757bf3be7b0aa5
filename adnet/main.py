"""
Adnet Publisher Agent

Main application entry point.

Collects ad views and clicks per publisher, keeps them in a hash chain,
and settles them in batches: uploaded to IPFS, submitted to each
campaign's contract.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from adnet.core import ChainError, LedgerError
from adnet.db import StoreError
from adnet.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from adnet.services import Services, build_services

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: A pre-built service graph (tests). Built from the
                  environment at startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        graph = services or build_services()
        app.state.services = graph

        # Segments drained before a crash are still waiting
        pending = graph.settlement.recover()
        if pending:
            logger.warning("Tenants with unsettled batches", tenants=pending)

        graph.scheduler.start()

        logger.info(
            "Application startup complete",
            store_type=type(graph.store).__name__,
            blockchain_enabled=graph.gateway.enabled,
            threshold=graph.config.threshold,
        )

        yield

        # Shutdown: flush everything pending, best effort
        flushed = graph.scheduler.shutdown()
        if flushed:
            logger.info("Flushed on shutdown", tenants=flushed)
        graph.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Adnet Publisher Agent",
        description="""
## Ad Event Collection and Settlement

Every view and click is appended to a per-publisher hash chain.
When the chain reaches the threshold it is flushed:

```
Pending → Drained → Uploaded (IPFS) → Submitted (contract) → Recorded
```

- **Tamper-evident**: each event's hash commits to the one before it
- **Crash-tolerant**: drained events stay persisted until settled
- **Partition-independent**: one campaign's failure never blocks another's

The publisher is the request host name.
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    from adnet.api.routes import router
    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": message, "errors": errors},
        )

    @app.exception_handler(ChainError)
    async def chain_error_handler(request: Request, exc: ChainError):
        logger.error("Chain integrity violation", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Ledger chain integrity violation"},
        )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=400, content={"status": "error", "message": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Ledger store failure", error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Ledger storage unavailable"},
        )

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For ledger verification, use /health/ledger
        """
        return {"status": "healthy", "service": "adnet"}

    @app.get("/health/ledger", tags=["System"])
    def health_ledger(request: Request):
        """
        Ledger health check.

        Verifies:
        - Ledger store reachability
        - Chain integrity of every loaded tenant

        Returns 200 if healthy, 503 if unhealthy.
        """
        graph: Services = request.app.state.services
        health_status = check_health(ledger=graph.ledger, store=graph.store, verify_chains=True)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()

"""
Pudeez - Escrow Reconciliation Core

Main application entry point.

The chain holds the money. The inventory service holds the items.
This service keeps a durable record of where each trade stands.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import router
from .db.store import EscrowStoreError, LockTimeoutError
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .runtime import Runtime, build_runtime

logger = get_logger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        runtime: Pre-built runtime (tests). If omitted, one is built from
                 the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime()
        app.state.runtime = rt
        app.state.service = rt.service

        rt.poller.start()  # Starts background threads if enabled

        logger.info(
            "Application startup complete",
            escrow_count=rt.store.count(),
            store_type=type(rt.store).__name__,
            oracle_type=type(rt.oracle).__name__,
            poll_enabled=rt.poller.config.enabled,
        )

        yield

        rt.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Pudeez Escrow",
        description="""
## Escrow Reconciliation Core

Tracks peer-to-peer item trades paid through an on-chain escrow.

### Escrow Lifecycle

```
initialized -> deposited -> completed
initialized | deposited -> cancelled
```

### Sources of Truth

- **Chain**: payment state (events are polled, never written)
- **Inventory service**: item ownership (always queried live)
- **Escrow store**: the reconciled record

### Errors

- **404**: unknown escrow
- **409**: escrow not in a state that allows the operation
- **503**: inventory service or store unavailable, retry later
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.include_router(router)

    @app.exception_handler(EscrowStoreError)
    async def store_error_handler(request: Request, exc: EscrowStoreError):
        retry_after = "2" if isinstance(exc, LockTimeoutError) else "5"
        logger.warning("Escrow store unavailable", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc)},
            headers={"Retry-After": retry_after},
        )

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "pudeez-escrow"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Escrow store connectivity
        - Chain poller configuration

        Returns 200 if healthy, 503 if unhealthy.
        """
        rt = request.app.state.runtime
        health_status = check_health(store=rt.store, poller=rt.poller)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics(request: Request):
        """
        Get application metrics.

        Returns counters, latency percentiles and poller state.
        """
        summary = get_metrics().get_summary()
        summary["poller"] = request.app.state.runtime.poller.get_status()
        return summary

    return app


# Setup logging at import time
setup_logging()

app = create_app()

"""
claimview - AppView indexer for verifiable claims

Main application entry point.

Serves the read API over the derived index while the stream consumer
ingests in the background.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import router
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from .shared import create_indexer

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Tests may install their own indexer before startup
    indexer = getattr(app.state, "indexer", None)
    if indexer is None:
        indexer = create_indexer()
        app.state.indexer = indexer

    indexer.start()
    logger.info(
        "Application startup complete",
        store_type=type(indexer.store).__name__,
        stream_enabled=indexer.consumer.config.enabled,
        **indexer.store.counts(),
    )

    yield

    indexer.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="claimview",
    description="""
## Verifiable Claims AppView

Indexes claim records from a federated repository change stream and
answers queries over the graph of claims-about-claims.

### Core Principles

- **Immutable**: A claim's identity is the digest of its content
- **Verifiable**: Embedded proofs are checked against resolved keys
- **Retracted, not forgotten**: Deletes leave tombstones
- **Bounded**: Graph queries cap depth, fan-out and visited nodes

### Verification

`proofValid` is `true` or `false` only when a cryptographic check ran.
Unknown proof schemes and unresolvable identities are `unverifiable`
and report `proofValid: null`.

### Storage Backends

- **InMemoryDerivedStore**: Development/testing (default)
- **PostgresDerivedStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

app.include_router(router)


@app.get("/health", tags=["System"])
async def health(request: Request):
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "claimview"}


@app.get("/health/detailed", tags=["System"])
def health_detailed(request: Request):
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Derived store connectivity and row counts
    - Ingestion halted flag and pending verifications
    - Resolver cache size and hit counts

    Returns 200 if healthy, 503 if unhealthy.
    """
    indexer = request.app.state.indexer
    health_status = check_health(
        store=indexer.store,
        pipeline=indexer.pipeline,
        resolver=indexer.resolver,
    )

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

    Returns counters, gauges, and latency percentiles.
    """
    summary = get_metrics().get_summary()
    summary["resolver_cache"] = request.app.state.indexer.resolver.stats()
    return summary

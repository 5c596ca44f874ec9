"""
Shared Indexer Wiring

Builds the store, resolver cache, verifier, pipeline, trust engine, query
service and stream consumer, and holds them together.

Store selection is driven by environment variables:
- CLAIMVIEW_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: In-memory store (default for development)

The resolver cache is created here once and handed to the verifier;
nothing else reaches it through a global.
"""

from dataclasses import dataclass, field
from typing import Optional

import psycopg2

from .core.ingest import IngestConfig, IngestionPipeline
from .core.proofs import ProofVerifier
from .core.query import QueryLimits, QueryService
from .core.resolver import (
    DidKeyResolver,
    HttpDidDocumentFetcher,
    IdentityResolverCache,
    ResolverConfig,
)
from .core.stream import StreamConfig, StreamConsumer
from .core.trust import TrustGraphEngine, TrustPolicy
from .db.config import DatabaseConfig, StoreDriver, database_configured, get_store_driver
from .db.store import DerivedStore, InMemoryDerivedStore, PostgresDerivedStore, StoreError
from .observability import get_logger


logger = get_logger(__name__)


def create_store() -> DerivedStore:
    """
    Create the DerivedStore selected by configuration.

    Returns:
        InMemoryDerivedStore for development/testing
        PostgresDerivedStore for production (when a database is configured)

    Raises:
        StoreError: If PostgreSQL is configured but unreachable
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory derived store (no persistence)")
        return InMemoryDerivedStore()

    if not database_configured():
        logger.warning(
            "Store driver is psycopg2 but no database configured, using in-memory store",
            driver=driver.value,
        )
        return InMemoryDerivedStore()

    return create_postgres_store(DatabaseConfig.from_env())


def create_postgres_store(config: DatabaseConfig) -> PostgresDerivedStore:
    """Create PostgresDerivedStore with psycopg2 and make sure its tables exist."""

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        connection_factory().close()
    except psycopg2.Error as e:
        raise StoreError(f"Could not connect to PostgreSQL: {e}") from e

    store = PostgresDerivedStore(
        connection_factory,
        lock_timeout_ms=config.lock_timeout_ms,
        statement_timeout_ms=config.statement_timeout_ms,
    )
    store.init_schema()
    logger.info(
        "PostgreSQL derived store ready",
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return store


def create_resolver_cache(
    config: Optional[ResolverConfig] = None,
) -> tuple[IdentityResolverCache, HttpDidDocumentFetcher]:
    """Resolver cache backed by did:key decoding and HTTP DID documents."""
    config = config or ResolverConfig.from_env()
    fetcher = HttpDidDocumentFetcher(config)
    return IdentityResolverCache(DidKeyResolver(fetcher), config), fetcher


@dataclass
class Indexer:
    """Every long-lived component of a running indexer."""
    store: DerivedStore
    resolver: IdentityResolverCache
    verifier: ProofVerifier
    pipeline: IngestionPipeline
    trust: TrustGraphEngine
    query: QueryService
    consumer: StreamConsumer
    _closeables: list = field(default_factory=list, repr=False)

    def start(self) -> None:
        self.consumer.start()

    def close(self) -> None:
        """Stop consuming, drain the pipeline, release connections."""
        self.consumer.stop()
        self.pipeline.close()
        for closeable in self._closeables:
            closeable.close()
        logger.info("Indexer closed")


def create_indexer(
    store: Optional[DerivedStore] = None,
    resolver: Optional[IdentityResolverCache] = None,
    ingest_config: Optional[IngestConfig] = None,
    policy: Optional[TrustPolicy] = None,
    limits: Optional[QueryLimits] = None,
    stream_config: Optional[StreamConfig] = None,
) -> Indexer:
    """
    Wire an Indexer. Anything not passed in is built from the environment.
    """
    closeables = []
    store = store if store is not None else create_store()
    if resolver is None:
        resolver, fetcher = create_resolver_cache()
        closeables.append(fetcher)

    verifier = ProofVerifier(resolver)
    # Trust engine first: in incremental mode it must see every edge
    trust = TrustGraphEngine(store, policy or TrustPolicy.from_env())
    pipeline = IngestionPipeline(store, verifier, ingest_config or IngestConfig.from_env())
    query = QueryService(store, trust, limits or QueryLimits.from_env())
    consumer = StreamConsumer(pipeline, stream_config or StreamConfig.from_env())

    logger.info(
        "Indexer created",
        store_type=type(store).__name__,
        trust_mode=trust.policy.mode.value,
        shards=pipeline.config.shards,
        verify_workers=pipeline.config.verify_workers,
    )
    return Indexer(
        store=store,
        resolver=resolver,
        verifier=verifier,
        pipeline=pipeline,
        trust=trust,
        query=query,
        consumer=consumer,
        _closeables=closeables,
    )

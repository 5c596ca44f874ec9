import pytest

from claimview.core.ingest import IngestConfig, IngestionPipeline
from claimview.core.proofs import ProofVerifier
from claimview.core.query import QueryLimits, QueryService
from claimview.core.resolver import DidKeyResolver, IdentityResolverCache, ResolverConfig
from claimview.core.trust import TrustGraphEngine, TrustPolicy
from claimview.db.store import InMemoryDerivedStore


@pytest.fixture
def resolver():
    """did:key-only resolution, no network, no retries."""
    return IdentityResolverCache(DidKeyResolver(), ResolverConfig(retries=0))


@pytest.fixture
def verifier(resolver):
    return ProofVerifier(resolver)


@pytest.fixture
def store():
    return InMemoryDerivedStore()


@pytest.fixture
def pipeline(store, verifier):
    """Two shards, verification inline."""
    pipeline = IngestionPipeline(store, verifier, IngestConfig(shards=2, verify_workers=0))
    yield pipeline
    pipeline.close()


@pytest.fixture
def trust(store):
    return TrustGraphEngine(store, TrustPolicy())


@pytest.fixture
def query(store, trust):
    return QueryService(store, trust, QueryLimits())

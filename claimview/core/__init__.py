# Core indexer services
from .hasher import Hasher, CanonicalSerializationError
from .encoding import EncodingError
from .signer import Signer
from .resolver import (
    DidKeyResolver,
    HttpDidDocumentFetcher,
    IdentityNotFound,
    IdentityResolverCache,
    KeyMaterial,
    ResolutionError,
    ResolutionTimeout,
    ResolverConfig,
)
from .proofs import (
    ProofScheme,
    ProofVerifier,
    VerificationResult,
    default_schemes,
)
from .ingest import (
    IngestConfig,
    IngestError,
    IngestionHalted,
    IngestionPipeline,
    IngestOutcome,
    IngestResult,
    ParseError,
)
from .stream import StreamConfig, StreamConsumer
from .trust import TrustGraphEngine, TrustMode, TrustPolicy, TrustScore, DisputedSources
from .query import QueryLimits, QueryService, TargetStatus

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "EncodingError",
    "Signer",
    "DidKeyResolver",
    "HttpDidDocumentFetcher",
    "IdentityNotFound",
    "IdentityResolverCache",
    "KeyMaterial",
    "ResolutionError",
    "ResolutionTimeout",
    "ResolverConfig",
    "ProofScheme",
    "ProofVerifier",
    "VerificationResult",
    "default_schemes",
    "IngestConfig",
    "IngestError",
    "IngestionHalted",
    "IngestionPipeline",
    "IngestOutcome",
    "IngestResult",
    "ParseError",
    "StreamConfig",
    "StreamConsumer",
    "TrustGraphEngine",
    "TrustMode",
    "TrustPolicy",
    "TrustScore",
    "DisputedSources",
    "QueryLimits",
    "QueryService",
    "TargetStatus",
]

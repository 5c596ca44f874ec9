"""
Query API Routes (XRPC-style)

Read endpoints:
- GET  /xrpc/com.linkedclaims.getClaim         - Claim by locator or digest
- GET  /xrpc/com.linkedclaims.getBySubject     - Claims about a subject
- GET  /xrpc/com.linkedclaims.getBySigner      - Claims by signer identity
- GET  /xrpc/com.linkedclaims.getAttestations  - Claims about a claim
- GET  /xrpc/com.linkedclaims.getTrustScore    - Aggregate trust signals
- GET  /xrpc/com.linkedclaims.getTrustGraph    - Bounded attestation graph

Operator endpoint:
- POST /xrpc/com.linkedclaims.reverify         - Re-verify after key rotation

All JSON is camelCase. A tombstoned or merely referenced locator is
answered with its status, never with 404.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from ..core.ingest import IngestionHalted
from ..core.query import Attestations, GraphEdge, Page, TargetStatus, TrustGraph
from ..core.trust import TrustScore
from ..db.store import SourceRow, StoredClaim
from ..shared import Indexer


NSID = "com.linkedclaims"

router = APIRouter(prefix="/xrpc", tags=["Query API"])


# ============================================================
# Response Models
# ============================================================

class CamelModel(BaseModel):
    """Base for API models: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceView(CamelModel):
    uri: str
    digest_multibase: Optional[str] = None
    how_known: Optional[str] = None
    date_observed: Optional[str] = None
    author: Optional[str] = None
    curator: Optional[str] = None
    observer: Optional[str] = None

    @classmethod
    def from_row(cls, row: SourceRow) -> "SourceView":
        return cls(
            uri=row.uri,
            digest_multibase=row.digest_multibase,
            how_known=row.how_known,
            date_observed=row.date_observed,
            author=row.author,
            curator=row.curator,
            observer=row.observer,
        )


class ClaimView(CamelModel):
    """
    An indexed claim.

    proof_valid is null unless a cryptographic check actually ran;
    verification_status says why (none, pending, unverifiable).
    """
    uri: str
    digest: str
    cid: Optional[str] = None
    owner: str
    collection: str
    record_key: str
    subject: str
    claim_type: str
    signer: str
    signer_source: str
    record: dict[str, Any]
    verification_status: str
    proof_valid: Optional[bool] = None
    proof_type: Optional[str] = None
    verification_method: Optional[str] = None
    verdict_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    indexed_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None
    source: Optional[SourceView] = None

    @classmethod
    def from_stored(cls, claim: StoredClaim, source: Optional[SourceRow] = None) -> "ClaimView":
        return cls(
            uri=claim.uri,
            digest=claim.digest,
            cid=claim.cid,
            owner=claim.owner,
            collection=claim.collection,
            record_key=claim.record_key,
            subject=claim.subject,
            claim_type=claim.claim_type,
            signer=claim.signer,
            signer_source=claim.signer_source,
            record=claim.record,
            verification_status=claim.verification_status.value,
            proof_valid=claim.proof_valid,
            proof_type=claim.proof_type,
            verification_method=claim.verification_method,
            verdict_reason=claim.verdict_reason,
            verified_at=claim.verified_at,
            indexed_at=claim.indexed_at,
            deleted=claim.deleted,
            deleted_at=claim.deleted_at,
            source=SourceView.from_row(source) if source else None,
        )


class ClaimLookup(CamelModel):
    uri: Optional[str] = None
    status: str
    claim: Optional[ClaimView] = None


class ClaimPage(CamelModel):
    claims: list[ClaimView]
    cursor: Optional[str] = None

    @classmethod
    def from_page(cls, page: Page) -> "ClaimPage":
        return cls(claims=[ClaimView.from_stored(c) for c in page.claims], cursor=page.cursor)


class AttestationView(CamelModel):
    uri: str
    claim_type: str
    signer: str
    seq: int
    source_deleted: bool
    claim: Optional[ClaimView] = None


class TargetView(CamelModel):
    uri: str
    status: str
    claim: Optional[ClaimView] = None


class AttestationsView(CamelModel):
    target: TargetView
    attestations: list[AttestationView]

    @classmethod
    def from_result(cls, result: Attestations) -> "AttestationsView":
        return cls(
            target=TargetView(
                uri=result.target_uri,
                status=result.target_status.value,
                claim=ClaimView.from_stored(result.target) if result.target else None,
            ),
            attestations=[
                AttestationView(
                    uri=a.edge.source_uri,
                    claim_type=a.edge.claim_type,
                    signer=a.edge.signer,
                    seq=a.edge.seq,
                    source_deleted=a.source_deleted,
                    claim=ClaimView.from_stored(a.claim) if a.claim else None,
                )
                for a in result.attestations
            ],
        )


class TrustScoreView(CamelModel):
    uri: str
    endorsement_count: int
    dispute_count: int
    distinct_signer_count: int
    attestation_count: int
    disputed_source_count: int
    weighted_score: Optional[float] = None

    @classmethod
    def from_score(cls, score: TrustScore) -> "TrustScoreView":
        return cls(
            uri=score.uri,
            endorsement_count=score.endorsement_count,
            dispute_count=score.dispute_count,
            distinct_signer_count=score.distinct_signer_count,
            attestation_count=score.attestation_count,
            disputed_source_count=score.disputed_source_count,
            weighted_score=score.weighted_score,
        )


class GraphEdgeView(CamelModel):
    source: str
    target: str
    claim_type: str
    signer: str
    depth: int
    source_deleted: bool
    target_deleted: bool

    @classmethod
    def from_edge(cls, item: GraphEdge) -> "GraphEdgeView":
        return cls(
            source=item.edge.source_uri,
            target=item.edge.target_uri,
            claim_type=item.edge.claim_type,
            signer=item.edge.signer,
            depth=item.depth,
            source_deleted=item.source_deleted,
            target_deleted=item.target_deleted,
        )


class TrustGraphView(CamelModel):
    root: str
    depth: int
    direct: list[GraphEdgeView]
    transitive: list[GraphEdgeView]
    truncated: bool
    visited: int

    @classmethod
    def from_graph(cls, graph: TrustGraph) -> "TrustGraphView":
        return cls(
            root=graph.root,
            depth=graph.depth,
            direct=[GraphEdgeView.from_edge(e) for e in graph.direct],
            transitive=[GraphEdgeView.from_edge(e) for e in graph.transitive],
            truncated=graph.truncated,
            visited=graph.visited,
        )


class ReverifyRequest(CamelModel):
    """Exactly one of uri / signer."""
    uri: Optional[str] = None
    signer: Optional[str] = None

    @model_validator(mode="after")
    def one_target(self) -> "ReverifyRequest":
        if bool(self.uri) == bool(self.signer):
            raise ValueError("give exactly one of uri or signer")
        return self


class ReverifyResponse(CamelModel):
    reverified: int
    verdict: Optional[str] = None
    reason: Optional[str] = None


# ============================================================
# Helper Functions
# ============================================================

def get_indexer(request: Request) -> Indexer:
    """Get the indexer from app state."""
    return request.app.state.indexer


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================
# Endpoints
# ============================================================

@router.get(f"/{NSID}.getClaim", response_model=ClaimLookup)
def get_claim(
    request: Request,
    uri: Optional[str] = Query(None, description="Claim locator (at://...)"),
    digest: Optional[str] = Query(None, description="Content digest (hex SHA-256)"),
):
    """
    Get one claim by locator or by digest.

    A tombstoned claim is returned with deleted=true. A locator that only
    appears as the subject of other claims returns status "referenced".
    """
    query = get_indexer(request).query
    try:
        claim = query.get_claim(uri=uri, digest=digest)
    except ValueError as e:
        raise _bad_request(e)

    if claim is not None:
        source = get_indexer(request).store.get_source(claim.uri)
        return ClaimLookup(
            uri=claim.uri,
            status=(TargetStatus.DELETED if claim.deleted else TargetStatus.ACTIVE).value,
            claim=ClaimView.from_stored(claim, source),
        )

    if uri:
        target_status, _ = query.target_status(uri)
        if target_status != TargetStatus.UNKNOWN:
            return ClaimLookup(uri=uri, status=target_status.value)

    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Claim not found")


@router.get(f"/{NSID}.getBySubject", response_model=ClaimPage)
def get_by_subject(
    request: Request,
    subject: str = Query(..., min_length=1),
    claim_type: Optional[str] = Query(None, alias="claimType"),
    include_deleted: bool = Query(False, alias="includeDeleted"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = Query(None),
):
    """Claims about a subject. Tombstoned claims only with includeDeleted."""
    try:
        page = get_indexer(request).query.get_by_subject(
            subject,
            claim_type=claim_type,
            include_deleted=include_deleted,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as e:
        raise _bad_request(e)
    return ClaimPage.from_page(page)


@router.get(f"/{NSID}.getBySigner", response_model=ClaimPage)
def get_by_signer(
    request: Request,
    signer: str = Query(..., min_length=1),
    claim_type: Optional[str] = Query(None, alias="claimType"),
    include_deleted: bool = Query(False, alias="includeDeleted"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = Query(None),
):
    """Claims whose authoritative signer is the given identity."""
    try:
        page = get_indexer(request).query.get_by_signer(
            signer,
            claim_type=claim_type,
            include_deleted=include_deleted,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as e:
        raise _bad_request(e)
    return ClaimPage.from_page(page)


@router.get(f"/{NSID}.getAttestations", response_model=AttestationsView)
def get_attestations(
    request: Request,
    uri: str = Query(..., min_length=1),
    include_deleted: bool = Query(False, alias="includeDeleted"),
):
    """Claims about a claim, oldest first, with the target's status."""
    result = get_indexer(request).query.get_attestations(uri, include_deleted=include_deleted)
    return AttestationsView.from_result(result)


@router.get(f"/{NSID}.getTrustScore", response_model=TrustScoreView)
def get_trust_score(request: Request, uri: str = Query(..., min_length=1)):
    """Endorsement / dispute counts and distinct signers for a claim."""
    return TrustScoreView.from_score(get_indexer(request).query.get_trust_score(uri))


@router.get(f"/{NSID}.getTrustGraph", response_model=TrustGraphView)
def get_trust_graph(
    request: Request,
    uri: str = Query(..., min_length=1),
    depth: int = Query(1, ge=1),
):
    """
    Attestation graph around a claim.

    Depth is capped by the server; truncated=true when any bound was hit.
    """
    graph = get_indexer(request).query.get_trust_graph(uri, depth=depth)
    return TrustGraphView.from_graph(graph)


@router.post(f"/{NSID}.reverify", response_model=ReverifyResponse)
def reverify(request: Request, body: ReverifyRequest):
    """
    Re-verify proofs after identity material was revoked or rotated.

    Drops cached keys and recomputes verdicts for one claim or for every
    claim of a signer.
    """
    pipeline = get_indexer(request).pipeline
    try:
        if body.uri:
            result = pipeline.reverify(body.uri)
            if result is None:
                return ReverifyResponse(reverified=0)
            return ReverifyResponse(
                reverified=1,
                verdict=result.verdict.value,
                reason=result.reason,
            )
        return ReverifyResponse(reverified=pipeline.reverify_signer(body.signer))
    except IngestionHalted as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

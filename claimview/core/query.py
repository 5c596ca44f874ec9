"""
Query Service

Read-only facade over the derived store and the trust engine.

GUARANTEES:
- Every query is a pure function of current derived state
- A tombstoned or merely referenced locator is reported as such, never
  as "not found"
- Traversals are bounded: depth, per-node fan-out and total visited nodes
  are capped, and a capped result says truncated=True
- Cycles terminate (visited set)

CONFIGURATION:
- CLAIMVIEW_MAX_DEPTH: Max trust-graph depth (default: 5)
- CLAIMVIEW_MAX_NODES: Max nodes visited per traversal (default: 500)
- CLAIMVIEW_MAX_FANOUT: Max edges followed per node (default: 100)
- CLAIMVIEW_PAGE_LIMIT: Default page size (default: 50, max 100)
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..db.store import DerivedStore, ReferenceEdge, StoredClaim
from ..observability import get_logger
from .trust import TrustGraphEngine, TrustScore


logger = get_logger(__name__)


MAX_PAGE_LIMIT = 100


@dataclass
class QueryLimits:
    """Bounds on query cost."""
    max_depth: int = 5
    max_nodes: int = 500
    max_fanout: int = 100
    page_limit: int = 50

    @classmethod
    def from_env(cls) -> "QueryLimits":
        """Load limits from environment variables."""
        return cls(
            max_depth=max(1, int(os.environ.get("CLAIMVIEW_MAX_DEPTH", "5"))),
            max_nodes=max(1, int(os.environ.get("CLAIMVIEW_MAX_NODES", "500"))),
            max_fanout=max(1, int(os.environ.get("CLAIMVIEW_MAX_FANOUT", "100"))),
            page_limit=min(MAX_PAGE_LIMIT, max(1, int(os.environ.get("CLAIMVIEW_PAGE_LIMIT", "50")))),
        )

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.page_limit
        return min(MAX_PAGE_LIMIT, max(1, limit))

    def clamp_depth(self, depth: Optional[int]) -> int:
        if depth is None:
            return 1
        return min(self.max_depth, max(1, depth))


# ============================================================
# RESULT TYPES
# ============================================================

class TargetStatus(str, Enum):
    """What the index knows about a locator."""
    ACTIVE = "active"
    DELETED = "deleted"             # Tombstoned, or delete seen before create
    REFERENCED = "referenced"       # Not indexed, but claims point at it
    UNKNOWN = "unknown"


@dataclass
class Page:
    """One page of claims plus the cursor for the next."""
    claims: list[StoredClaim]
    cursor: Optional[str] = None


@dataclass
class Attestation:
    """A claim about the target, with the edge that links them."""
    edge: ReferenceEdge
    claim: Optional[StoredClaim]

    @property
    def source_deleted(self) -> bool:
        return self.claim is None or self.claim.deleted


@dataclass
class Attestations:
    """Result of get_attestations."""
    target_uri: str
    target_status: TargetStatus
    target: Optional[StoredClaim]
    attestations: list[Attestation] = field(default_factory=list)


@dataclass
class GraphEdge:
    """An edge reached during traversal."""
    edge: ReferenceEdge
    depth: int
    source_deleted: bool
    target_deleted: bool


@dataclass
class TrustGraph:
    """Result of get_trust_graph."""
    root: str
    depth: int
    direct: list[GraphEdge] = field(default_factory=list)
    transitive: list[GraphEdge] = field(default_factory=list)
    truncated: bool = False
    visited: int = 0


# ============================================================
# SERVICE
# ============================================================

class QueryService:
    """
    Read API used by the HTTP routes and the management CLI.

    Usage:
        query = QueryService(store, trust_engine)
        page = query.get_by_subject("https://ngo.example/project")
        graph = query.get_trust_graph(uri, depth=3)
    """

    def __init__(
        self,
        store: DerivedStore,
        trust: TrustGraphEngine,
        limits: Optional[QueryLimits] = None,
    ):
        self._store = store
        self._trust = trust
        self._limits = limits or QueryLimits.from_env()

    @property
    def limits(self) -> QueryLimits:
        return self._limits

    # ---------------- point lookups ----------------

    def get_claim(self, uri: Optional[str] = None, digest: Optional[str] = None) -> Optional[StoredClaim]:
        """
        Look up a claim by locator or by digest.

        Tombstoned claims are returned with deleted=True.

        Raises:
            ValueError: If neither uri nor digest is given
        """
        if uri:
            return self._store.get_claim(uri)
        if digest:
            return self._store.get_by_digest(digest)
        raise ValueError("uri or digest is required")

    def target_status(self, uri: str) -> tuple[TargetStatus, Optional[StoredClaim]]:
        claim = self._store.get_claim(uri)
        if claim is not None:
            return (TargetStatus.DELETED if claim.deleted else TargetStatus.ACTIVE), claim
        if self._store.is_pending_tombstone(uri):
            return TargetStatus.DELETED, None
        if self._store.list_edges_to(uri):
            return TargetStatus.REFERENCED, None
        return TargetStatus.UNKNOWN, None

    # ---------------- scans ----------------

    @staticmethod
    def _parse_cursor(cursor: Optional[str]) -> Optional[int]:
        if not cursor:
            return None
        try:
            return int(cursor)
        except ValueError:
            raise ValueError(f"invalid cursor: {cursor}")

    def _page(self, limit: Optional[int], cursor: Optional[str], **filters) -> Page:
        limit = self._limits.clamp_limit(limit)
        rows = self._store.list_claims(
            limit=limit + 1,
            after_seq=self._parse_cursor(cursor),
            **filters,
        )
        next_cursor = str(rows[limit - 1].seq) if len(rows) > limit else None
        return Page(claims=rows[:limit], cursor=next_cursor)

    def get_by_subject(
        self,
        subject: str,
        claim_type: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        """Claims about a subject, oldest first. Live claims only by default."""
        return self._page(
            limit, cursor,
            subject=subject,
            claim_type=claim_type,
            include_deleted=include_deleted,
        )

    def get_by_signer(
        self,
        signer: str,
        claim_type: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        """Claims whose authoritative signer is an identity."""
        return self._page(
            limit, cursor,
            signer=signer,
            claim_type=claim_type,
            include_deleted=include_deleted,
        )

    # ---------------- graph ----------------

    def get_attestations(self, uri: str, include_deleted: bool = False) -> Attestations:
        """
        Claims whose subject is this locator.

        The target is always described, whether it is live, tombstoned,
        only referenced, or unknown.
        With include_deleted, edges made by versions since displaced from
        their locator are listed too, each with the version that made it.
        """
        status, target = self.target_status(uri)
        result = Attestations(target_uri=uri, target_status=status, target=target)
        for edge in self._trust.attestations_for(uri):
            attestation = Attestation(edge=edge, claim=self._store.get_claim(edge.source_uri))
            if attestation.source_deleted and not include_deleted:
                continue
            result.attestations.append(attestation)

        if include_deleted:
            archived = [Attestation(edge=a.edge, claim=a.claim) for a in self._store.list_archived_edges_to(uri)]
            if archived:
                result.attestations = sorted(result.attestations + archived, key=lambda a: a.edge.seq)
        return result

    def get_trust_score(self, uri: str) -> TrustScore:
        return self._trust.trust_score(uri)

    def get_trust_graph(self, uri: str, depth: Optional[int] = None) -> TrustGraph:
        """
        Breadth-first walk over incoming edges.

        Level 1 edges are "direct", deeper ones "transitive". An edge into
        an already visited node is reported but not expanded.
        """
        depth = self._limits.clamp_depth(depth)
        graph = TrustGraph(root=uri, depth=depth)
        deleted: dict[str, bool] = {}

        def is_deleted(node: str) -> bool:
            if node not in deleted:
                claim = self._store.get_claim(node)
                deleted[node] = claim is not None and claim.deleted
            return deleted[node]

        visited = {uri}
        frontier = [uri]
        for level in range(1, depth + 1):
            next_frontier = []
            for node in frontier:
                edges = self._store.list_edges_to(node)
                if len(edges) > self._limits.max_fanout:
                    edges = edges[:self._limits.max_fanout]
                    graph.truncated = True

                for edge in edges:
                    if edge.source_uri not in visited:
                        if len(visited) >= self._limits.max_nodes:
                            graph.truncated = True
                            break
                        visited.add(edge.source_uri)
                        next_frontier.append(edge.source_uri)

                    entry = GraphEdge(
                        edge=edge,
                        depth=level,
                        source_deleted=is_deleted(edge.source_uri),
                        target_deleted=is_deleted(edge.target_uri),
                    )
                    (graph.direct if level == 1 else graph.transitive).append(entry)

                if graph.truncated and len(visited) >= self._limits.max_nodes:
                    break

            frontier = next_frontier
            if not frontier or (graph.truncated and len(visited) >= self._limits.max_nodes):
                break

        graph.visited = len(visited)
        if graph.truncated:
            logger.info(
                "Trust graph truncated",
                uri=uri,
                depth=depth,
                visited=graph.visited,
            )
        return graph

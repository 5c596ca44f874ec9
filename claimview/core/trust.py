"""
Trust Graph Engine

Aggregate signals over the claim reference graph.

For a target claim:
- endorsement_count:     counted edges whose type is an endorsement type
- dispute_count:         counted edges whose type is a dispute type
- distinct_signer_count: distinct signers among all counted edges
- weighted_score:        optional, sum of +/- weights (see TrustPolicy)

An edge is counted when its source claim is live and, with
discount_invalid_proofs, its source does not carry an invalid proof.
Tombstoned sources keep their edge in the store (audit trail) but never
count.

MODES:
- lazy:        scan the edges targeting the claim on every query
- incremental: keep the live edge set and the invalid sources in memory,
               fed by store listener notifications; no store reads for counts

Both modes feed the same scoring code, so identical edge sets give
identical scores.

CONFIGURATION:
- CLAIMVIEW_ENDORSEMENT_TYPES: Comma list (default: endorsement,endorse,attestation,validated)
- CLAIMVIEW_DISPUTE_TYPES: Comma list (default: dispute,disputed,refutation,rebuttal)
- CLAIMVIEW_DISPUTED_SOURCES: include | exclude (default: include)
- CLAIMVIEW_WEIGHTED_SCORE: Compute weighted_score (default: false)
- CLAIMVIEW_DISCOUNT_INVALID_PROOFS: Leave sources with an invalid proof out of
  every count and weight (default: true)
- CLAIMVIEW_TRUST_MODE: lazy | incremental (default: lazy)
"""

import os
import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..db.store import DerivedStore, EdgeChange, ReferenceEdge, StoreChange, VerdictChange
from ..observability import get_logger
from ..schemas import Verdict


logger = get_logger(__name__)


def _env_set(name: str, default: str) -> frozenset[str]:
    raw = os.environ.get(name, default)
    return frozenset(t.strip().lower() for t in raw.split(",") if t.strip())


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


# ============================================================
# POLICY
# ============================================================

class EdgeKind(str, Enum):
    ENDORSEMENT = "endorsement"
    DISPUTE = "dispute"
    OTHER = "other"


class DisputedSources(str, Enum):
    """
    What to do with an attesting claim that is itself disputed.

    include: count it, and report it in disputed_source_count
    exclude: leave it out of every count
    """
    INCLUDE = "include"
    EXCLUDE = "exclude"


class TrustMode(str, Enum):
    LAZY = "lazy"
    INCREMENTAL = "incremental"


@dataclass
class TrustPolicy:
    """How edges are classified and weighed."""
    endorsement_types: frozenset[str] = frozenset({"endorsement", "endorse", "attestation", "validated"})
    dispute_types: frozenset[str] = frozenset({"dispute", "disputed", "refutation", "rebuttal"})
    disputed_sources: DisputedSources = DisputedSources.INCLUDE
    weighted: bool = False
    discount_invalid_proofs: bool = True
    mode: TrustMode = TrustMode.LAZY

    @classmethod
    def from_env(cls) -> "TrustPolicy":
        """Load policy from environment variables."""
        return cls(
            endorsement_types=_env_set(
                "CLAIMVIEW_ENDORSEMENT_TYPES", "endorsement,endorse,attestation,validated"
            ),
            dispute_types=_env_set(
                "CLAIMVIEW_DISPUTE_TYPES", "dispute,disputed,refutation,rebuttal"
            ),
            disputed_sources=DisputedSources(
                os.environ.get("CLAIMVIEW_DISPUTED_SOURCES", "include").lower()
            ),
            weighted=_env_flag("CLAIMVIEW_WEIGHTED_SCORE", False),
            discount_invalid_proofs=_env_flag("CLAIMVIEW_DISCOUNT_INVALID_PROOFS", True),
            mode=TrustMode(os.environ.get("CLAIMVIEW_TRUST_MODE", "lazy").lower()),
        )

    def classify(self, claim_type: str) -> EdgeKind:
        """Classify an edge by its claim type (case-insensitive)."""
        t = claim_type.lower()
        if t in self.endorsement_types:
            return EdgeKind.ENDORSEMENT
        if t in self.dispute_types:
            return EdgeKind.DISPUTE
        return EdgeKind.OTHER


@dataclass(frozen=True)
class TrustScore:
    """Aggregate trust signals for one claim."""
    uri: str
    endorsement_count: int
    dispute_count: int
    distinct_signer_count: int
    attestation_count: int
    disputed_source_count: int = 0
    weighted_score: Optional[float] = None


# ============================================================
# ENGINE
# ============================================================

class TrustGraphEngine:
    """
    Computes trust signals over the reference graph.

    Usage:
        engine = TrustGraphEngine(store, TrustPolicy.from_env())
        engine.trust_score("at://did:plc:alice/com.linkedclaims.claim/3k...")

    In incremental mode the engine registers itself as a store listener
    and rebuilds its live edge set from the store on construction.
    """

    def __init__(self, store: DerivedStore, policy: Optional[TrustPolicy] = None):
        self._store = store
        self._policy = policy or TrustPolicy.from_env()
        self._lock = threading.Lock()

        # Incremental mode only:
        # target uri -> source uri -> live edge
        self._live: dict[str, dict[str, ReferenceEdge]] = {}
        # source uri -> targets of its live edges
        self._targets: dict[str, set[str]] = {}
        # sources whose proof verdict is invalid
        self._invalid: set[str] = set()
        # per target, counted endorsements / disputes
        self._endorsements: Counter = Counter()
        self._disputes: Counter = Counter()

        if self.incremental:
            store.add_listener(self._on_store_change)
            self.rebuild()

    @property
    def policy(self) -> TrustPolicy:
        return self._policy

    @property
    def incremental(self) -> bool:
        return self._policy.mode == TrustMode.INCREMENTAL

    def _discounted(self, verdict: Optional[Verdict]) -> bool:
        return self._policy.discount_invalid_proofs and verdict == Verdict.INVALID

    # ---------------- incremental state ----------------

    def _on_store_change(self, change: StoreChange) -> None:
        if isinstance(change, VerdictChange):
            self._on_verdict_change(change)
        else:
            self._on_edge_change(change)

    def _bump(self, edge: ReferenceEdge, delta: int) -> None:
        kind = self._policy.classify(edge.claim_type)
        if kind == EdgeKind.ENDORSEMENT:
            self._endorsements[edge.target_uri] += delta
        elif kind == EdgeKind.DISPUTE:
            self._disputes[edge.target_uri] += delta

    def _on_edge_change(self, change: EdgeChange) -> None:
        edge = change.edge
        with self._lock:
            targets = self._live.setdefault(edge.target_uri, {})
            if change.active:
                if edge.source_uri in targets:
                    return
                targets[edge.source_uri] = edge
                self._targets.setdefault(edge.source_uri, set()).add(edge.target_uri)
                delta = 1
            else:
                if targets.pop(edge.source_uri, None) is None:
                    return
                if not targets:
                    del self._live[edge.target_uri]
                outgoing = self._targets.get(edge.source_uri, set())
                outgoing.discard(edge.target_uri)
                if not outgoing:
                    self._targets.pop(edge.source_uri, None)
                delta = -1

            if not self._counts_source(edge.source_uri):
                return
            self._bump(edge, delta)

    def _on_verdict_change(self, change: VerdictChange) -> None:
        invalid = change.verdict == Verdict.INVALID
        with self._lock:
            if invalid == (change.uri in self._invalid):
                return
            counted_before = self._counts_source(change.uri)
            if invalid:
                self._invalid.add(change.uri)
            else:
                self._invalid.discard(change.uri)
            counted_after = self._counts_source(change.uri)
            if counted_before == counted_after:
                return
            delta = 1 if counted_after else -1
            for target in self._targets.get(change.uri, ()):
                self._bump(self._live[target][change.uri], delta)

    def _counts_source(self, source_uri: str) -> bool:
        """Whether a live source counts. Caller holds the lock."""
        return not (self._policy.discount_invalid_proofs and source_uri in self._invalid)

    def rebuild(self) -> int:
        """
        Reload the live edge set and invalid sources from the store.

        Returns:
            Number of live edges loaded
        """
        with self._lock:
            self._live.clear()
            self._targets.clear()
            self._invalid.clear()
            self._endorsements.clear()
            self._disputes.clear()

        claims = self._store.list_claims(include_deleted=False)
        for claim in claims:
            if claim.verdict == Verdict.INVALID:
                self._on_verdict_change(VerdictChange(claim.uri, claim.verdict))

        loaded = 0
        for claim in claims:
            for edge in self._store.list_edges_from(claim.uri):
                self._on_edge_change(EdgeChange(edge, True))
                loaded += 1
        logger.info("Trust counters rebuilt", edge_count=loaded, invalid_sources=len(self._invalid))
        return loaded

    # ---------------- edge sets ----------------

    def attestations_for(self, uri: str) -> list[ReferenceEdge]:
        """Every stored edge targeting a claim, in insertion order."""
        return self._store.list_edges_to(uri)

    def live_edges_to(self, uri: str) -> list[ReferenceEdge]:
        """Edges targeting a claim whose source is live, in insertion order."""
        if self.incremental:
            with self._lock:
                edges = list(self._live.get(uri, {}).values())
            return sorted(edges, key=lambda e: e.seq)

        live = []
        for edge in self._store.list_edges_to(uri):
            source = self._store.get_claim(edge.source_uri)
            if source is not None and not source.deleted:
                live.append(edge)
        return live

    def counted_edges_to(self, uri: str) -> list[ReferenceEdge]:
        """
        Live edges that count toward trust signals, in insertion order.

        With discount_invalid_proofs, edges whose source carries an invalid
        proof are left out: their signer is unproven.
        """
        if self.incremental:
            with self._lock:
                edges = [
                    e for e in self._live.get(uri, {}).values()
                    if self._counts_source(e.source_uri)
                ]
            return sorted(edges, key=lambda e: e.seq)

        counted = []
        for edge in self._store.list_edges_to(uri):
            source = self._store.get_claim(edge.source_uri)
            if source is None or source.deleted or self._discounted(source.verdict):
                continue
            counted.append(edge)
        return counted

    def is_disputed(self, uri: str) -> bool:
        """Whether a counted dispute targets this claim."""
        if self.incremental:
            with self._lock:
                return self._disputes[uri] > 0
        return any(
            self._policy.classify(e.claim_type) == EdgeKind.DISPUTE
            for e in self.counted_edges_to(uri)
        )

    # ---------------- scoring ----------------

    def trust_score(self, uri: str) -> TrustScore:
        """Compute the trust score for a claim locator."""
        edges = self.counted_edges_to(uri)

        disputed = {e.source_uri for e in edges if self.is_disputed(e.source_uri)}
        if self._policy.disputed_sources == DisputedSources.EXCLUDE:
            edges = [e for e in edges if e.source_uri not in disputed]

        kinds = [self._policy.classify(e.claim_type) for e in edges]
        weighted = self._weighted_score(edges, kinds) if self._policy.weighted else None

        return TrustScore(
            uri=uri,
            endorsement_count=kinds.count(EdgeKind.ENDORSEMENT),
            dispute_count=kinds.count(EdgeKind.DISPUTE),
            distinct_signer_count=len({e.signer for e in edges}),
            attestation_count=len(edges),
            disputed_source_count=sum(1 for e in edges if e.source_uri in disputed),
            weighted_score=weighted,
        )

    def _weighted_score(self, edges: list[ReferenceEdge], kinds: list[EdgeKind]) -> float:
        """Sum of +/- weight; weight is the source's confidence, default 1."""
        total = 0.0
        for edge, kind in zip(edges, kinds):
            if kind == EdgeKind.OTHER:
                continue
            source = self._store.get_claim(edge.source_uri)
            if source is None or self._discounted(source.verdict):
                continue
            weight = source.confidence if source.confidence is not None else 1.0
            total += weight if kind == EdgeKind.ENDORSEMENT else -weight
        return round(total, 6)

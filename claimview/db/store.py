"""
Derived Store Abstraction

This module defines the DerivedStore interface and provides two implementations:
- InMemoryDerivedStore: For development and testing
- PostgresDerivedStore: For production with durability

The store holds everything the indexer derives from the change stream:
- claims:             keyed by locator, secondary lookups by digest / subject /
                      signer / claim type
- claim_sources:      evidence attached to a claim, keyed by claim locator
- claim_edges:        claim -> claim references, keyed by (source, target)
- pending_tombstones: deletes that arrived before their create, capped at
                      max_pending (oldest dropped first, with a warning)
- claim_archive / claim_edge_archive: versions displaced when a tombstoned
                      locator takes new content, with the edges they made

MUTATION CONTRACT:
- apply_create / apply_delete are atomic: a reader sees all of an event's
  effects or none of them
- A tombstone is a flag on the claim row, never a row deletion
- Content at a live locator is never replaced; only a tombstoned locator can
  take new content, and the old version and its edges stay reachable
- Callers serialize mutations per locator (the ingestion shards do this)

LISTENERS:
Edge activation/deactivation and recorded verdicts are broadcast to
registered listeners so that derived aggregates (trust counters) can follow
the store incrementally.

CONFIGURATION:
- CLAIMVIEW_MAX_PENDING_TOMBSTONES: Pending delete cap (default: 100000)
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generator, Iterable, Optional, Union

import psycopg2

from ..observability import get_logger
from ..schemas import Locator, Verdict, VerificationStatus, proof_valid


logger = get_logger(__name__)

DEFAULT_MAX_PENDING = 100_000


def max_pending_from_env() -> int:
    return int(os.environ.get("CLAIMVIEW_MAX_PENDING_TOMBSTONES", str(DEFAULT_MAX_PENDING)))


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Unrecoverable storage failure. Ingestion halts on this."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

class ApplyStatus(str, Enum):
    """What a mutation did."""
    INDEXED = "indexed"                       # New claim, live
    REVIVED = "revived"                       # Tombstoned locator took new content
    DUPLICATE = "duplicate"                   # Already applied; nothing changed
    REJECTED = "rejected"                     # Different content at a live locator
    TOMBSTONED = "tombstoned"                 # Claim is now tombstoned
    PENDING_TOMBSTONE = "pending_tombstone"   # Delete held until its create lands


@dataclass(frozen=True)
class StoredClaim:
    """
    A claim row.

    Rows are replaced, never mutated: a reader holding a row keeps a
    consistent snapshot of it.
    """
    uri: str
    owner: str
    collection: str
    record_key: str
    digest: str
    record: dict[str, Any]
    subject: str
    claim_type: str
    signer: str
    signer_source: str                      # "repository" or "proof"
    has_proof: bool = False
    verification_method: Optional[str] = None
    proof_type: Optional[str] = None
    verdict: Optional[Verdict] = None
    verdict_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    confidence: Optional[float] = None
    stars: Optional[int] = None
    cid: Optional[str] = None
    canon_version: int = 1
    seq: int = 0
    indexed_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def locator(self) -> Locator:
        return Locator(self.owner, self.collection, self.record_key)

    @property
    def verification_status(self) -> VerificationStatus:
        return VerificationStatus.from_verdict(self.verdict, self.has_proof)

    @property
    def proof_valid(self) -> Optional[bool]:
        return proof_valid(self.verdict)


@dataclass(frozen=True)
class SourceRow:
    """Evidence attached to a claim."""
    claim_uri: str
    uri: str
    digest_multibase: Optional[str] = None
    how_known: Optional[str] = None
    date_observed: Optional[str] = None
    author: Optional[str] = None
    curator: Optional[str] = None
    observer: Optional[str] = None


@dataclass(frozen=True)
class ReferenceEdge:
    """
    A claim whose subject is another claim's locator.

    Edges outlive tombstones on either end; whether an edge counts is
    decided at query time.
    """
    source_uri: str
    target_uri: str
    claim_type: str
    signer: str
    seq: int = 0


@dataclass(frozen=True)
class EdgeChange:
    """Listener notification: an edge started or stopped counting."""
    edge: ReferenceEdge
    active: bool


@dataclass(frozen=True)
class VerdictChange:
    """Listener notification: a claim's verdict was recorded, or reset by new content."""
    uri: str
    verdict: Optional[Verdict]


@dataclass(frozen=True)
class ArchivedEdge:
    """An edge made by a version that has since been displaced from its locator."""
    edge: ReferenceEdge
    claim: StoredClaim



@dataclass
class ApplyResult:
    """Outcome of a store mutation."""
    status: ApplyStatus
    claim: Optional[StoredClaim] = None
    edges: list[ReferenceEdge] = field(default_factory=list)


StoreChange = Union[EdgeChange, VerdictChange]
StoreListener = Callable[[StoreChange], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class DerivedStore(ABC):
    """
    Abstract base class for the derived index.

    Implementations must ensure:
    1. Atomic per-event mutations
    2. Committed claims immediately visible to lookups
    3. Tombstones distinguishable from absence
    4. Edges listed in insertion order
    """

    def __init__(self):
        self._listeners: list[StoreListener] = []

    # ---------------- listeners ----------------

    def add_listener(self, listener: StoreListener) -> None:
        """Register a callback for EdgeChange and VerdictChange notifications."""
        self._listeners.append(listener)

    def _notify(self, changes: Iterable[StoreChange]) -> None:
        for change in changes:
            for listener in self._listeners:
                listener(change)

    # ---------------- mutations ----------------

    @abstractmethod
    def apply_create(
        self,
        claim: StoredClaim,
        source: Optional[SourceRow] = None,
        edges: Optional[list[ReferenceEdge]] = None,
    ) -> ApplyResult:
        """
        Store a newly parsed claim with its source and outgoing edges.

        Returns:
            ApplyResult with status INDEXED, REVIVED, TOMBSTONED (a pending
            delete was waiting), DUPLICATE or REJECTED
        """
        pass

    @abstractmethod
    def apply_delete(self, uri: str, deleted_at: Optional[datetime] = None) -> ApplyResult:
        """
        Tombstone the claim at a locator.

        Returns:
            ApplyResult with status TOMBSTONED, DUPLICATE or PENDING_TOMBSTONE
        """
        pass

    @abstractmethod
    def set_verdict(
        self,
        uri: str,
        digest: str,
        verdict: Verdict,
        reason: str,
        verified_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record a verification verdict.

        Only applies if the locator still holds the verified digest.
        Listeners get a VerdictChange when it applies.

        Returns:
            True if the verdict was stored
        """
        pass

    # ---------------- lookups ----------------

    @abstractmethod
    def get_claim(self, uri: str) -> Optional[StoredClaim]:
        """Point lookup by locator. Tombstoned rows are returned (deleted=True)."""
        pass

    @abstractmethod
    def get_by_digest(self, digest: str) -> Optional[StoredClaim]:
        """
        Point lookup by content digest.

        Includes versions whose locator has since taken new content.
        The same content published at several locators returns the
        earliest indexed one.
        """
        pass

    @abstractmethod
    def list_claims(
        self,
        subject: Optional[str] = None,
        signer: Optional[str] = None,
        claim_type: Optional[str] = None,
        verification_method: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        after_seq: Optional[int] = None,
    ) -> list[StoredClaim]:
        """Filtered scan, ordered by ingest sequence."""
        pass

    @abstractmethod
    def get_source(self, uri: str) -> Optional[SourceRow]:
        """Evidence attached to a claim."""
        pass

    @abstractmethod
    def list_edges_to(self, target_uri: str) -> list[ReferenceEdge]:
        """Edges targeting a locator, in insertion order."""
        pass

    @abstractmethod
    def list_edges_from(self, source_uri: str) -> list[ReferenceEdge]:
        """Edges leaving a claim, in insertion order."""
        pass

    @abstractmethod
    def list_archived_edges_to(self, target_uri: str) -> list[ArchivedEdge]:
        """
        Edges targeting a locator that were made by displaced versions,
        in insertion order. They never count toward trust signals.
        """
        pass

    @abstractmethod
    def is_pending_tombstone(self, uri: str) -> bool:
        """Whether a delete for this locator is waiting for its create."""
        pass

    @abstractmethod
    def counts(self) -> dict[str, int]:
        """Row counts for health checks."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryDerivedStore(DerivedStore):
    """
    In-memory implementation of DerivedStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments that can re-ingest on restart

    A single lock covers every mutation and every read, so a reader never
    observes part of an event.
    """

    def __init__(self, max_pending: Optional[int] = None):
        """
        Args:
            max_pending: Cap on pending tombstones (or loads from environment)
        """
        super().__init__()
        self._lock = threading.RLock()
        self._seq = 0
        self._max_pending = max_pending if max_pending is not None else max_pending_from_env()

        self._claims: dict[str, StoredClaim] = {}
        self._by_digest: dict[str, list[StoredClaim]] = {}
        self._sources: dict[str, SourceRow] = {}
        self._edges_to: dict[str, dict[str, ReferenceEdge]] = {}
        self._edges_from: dict[str, list[str]] = {}
        self._pending: dict[str, datetime] = {}
        self._archived_edges_to: dict[str, list[ArchivedEdge]] = {}

        # Secondary indexes: value -> set of locators
        self._by_subject: dict[str, set[str]] = {}
        self._by_signer: dict[str, set[str]] = {}
        self._by_type: dict[str, set[str]] = {}
        self._by_method: dict[str, set[str]] = {}

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    # ---------------- index maintenance ----------------

    def _index(self, claim: StoredClaim) -> None:
        self._by_subject.setdefault(claim.subject, set()).add(claim.uri)
        self._by_signer.setdefault(claim.signer, set()).add(claim.uri)
        self._by_type.setdefault(claim.claim_type, set()).add(claim.uri)
        if claim.verification_method:
            self._by_method.setdefault(claim.verification_method, set()).add(claim.uri)

    def _unindex(self, claim: StoredClaim) -> None:
        self._by_subject.get(claim.subject, set()).discard(claim.uri)
        self._by_signer.get(claim.signer, set()).discard(claim.uri)
        self._by_type.get(claim.claim_type, set()).discard(claim.uri)
        if claim.verification_method:
            self._by_method.get(claim.verification_method, set()).discard(claim.uri)

    def _put(self, claim: StoredClaim) -> None:
        """Replace the row at claim.uri and its digest entry."""
        self._claims[claim.uri] = claim
        versions = self._by_digest.setdefault(claim.digest, [])
        for i, existing in enumerate(versions):
            if existing.uri == claim.uri and existing.seq == claim.seq:
                versions[i] = claim
                break
        else:
            versions.append(claim)

    def _archive_outgoing(self, displaced: StoredClaim) -> None:
        """Move a displaced version's edges to the archive."""
        for edge in self._outgoing(displaced.uri):
            self._archived_edges_to.setdefault(edge.target_uri, []).append(ArchivedEdge(edge, displaced))
        for target in self._edges_from.pop(displaced.uri, []):
            self._edges_to.get(target, {}).pop(displaced.uri, None)
        self._sources.pop(displaced.uri, None)

    # ---------------- mutations ----------------

    def apply_create(
        self,
        claim: StoredClaim,
        source: Optional[SourceRow] = None,
        edges: Optional[list[ReferenceEdge]] = None,
    ) -> ApplyResult:
        edges = edges or []
        with self._lock:
            existing = self._claims.get(claim.uri)
            status = ApplyStatus.INDEXED

            if existing is not None:
                if existing.digest == claim.digest:
                    return ApplyResult(ApplyStatus.DUPLICATE, existing)
                if not existing.deleted:
                    return ApplyResult(ApplyStatus.REJECTED, existing)
                # Tombstoned slot takes new content; old version stays in _by_digest
                self._unindex(existing)
                self._archive_outgoing(existing)
                status = ApplyStatus.REVIVED

            pending_at = self._pending.pop(claim.uri, None)
            stored = replace(
                claim,
                seq=self._next_seq(),
                indexed_at=claim.indexed_at or _now(),
                deleted=pending_at is not None,
                deleted_at=pending_at,
            )
            if pending_at is not None:
                status = ApplyStatus.TOMBSTONED

            self._put(stored)
            self._index(stored)
            if source is not None:
                self._sources[stored.uri] = source

            stored_edges = []
            for edge in edges:
                edge = replace(edge, seq=self._next_seq())
                self._edges_to.setdefault(edge.target_uri, {})[edge.source_uri] = edge
                self._edges_from.setdefault(edge.source_uri, []).append(edge.target_uri)
                stored_edges.append(edge)

            if existing is not None:
                self._notify([VerdictChange(stored.uri, stored.verdict)])
            if not stored.deleted:
                self._notify(EdgeChange(e, True) for e in stored_edges)

            return ApplyResult(status, stored, stored_edges)

    def apply_delete(self, uri: str, deleted_at: Optional[datetime] = None) -> ApplyResult:
        deleted_at = deleted_at or _now()
        with self._lock:
            existing = self._claims.get(uri)
            if existing is None:
                if uri in self._pending:
                    return ApplyResult(ApplyStatus.DUPLICATE)
                self._pending[uri] = deleted_at
                self._trim_pending()
                return ApplyResult(ApplyStatus.PENDING_TOMBSTONE)

            if existing.deleted:
                return ApplyResult(ApplyStatus.DUPLICATE, existing)

            tombstoned = replace(existing, deleted=True, deleted_at=deleted_at)
            self._put(tombstoned)
            outgoing = self._outgoing(uri)
            self._notify(EdgeChange(e, False) for e in outgoing)
            return ApplyResult(ApplyStatus.TOMBSTONED, tombstoned, outgoing)

    def set_verdict(
        self,
        uri: str,
        digest: str,
        verdict: Verdict,
        reason: str,
        verified_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            existing = self._claims.get(uri)
            if existing is None or existing.digest != digest:
                return False
            self._put(replace(
                existing,
                verdict=verdict,
                verdict_reason=reason,
                verified_at=verified_at or _now(),
            ))
            self._notify([VerdictChange(uri, verdict)])
            return True

    def _trim_pending(self) -> None:
        """Drop the oldest pending tombstones beyond max_pending."""
        overflow = len(self._pending) - self._max_pending
        if overflow <= 0:
            return
        dropped = list(self._pending)[:overflow]
        for uri in dropped:
            del self._pending[uri]
        logger.warning(
            "Pending tombstone cap reached, oldest dropped",
            max_pending=self._max_pending,
            dropped=len(dropped),
            oldest=dropped[0],
        )

    # ---------------- lookups ----------------

    def get_claim(self, uri: str) -> Optional[StoredClaim]:
        with self._lock:
            return self._claims.get(uri)

    def get_by_digest(self, digest: str) -> Optional[StoredClaim]:
        with self._lock:
            versions = self._by_digest.get(digest.lower())
            return versions[0] if versions else None

    def list_claims(
        self,
        subject: Optional[str] = None,
        signer: Optional[str] = None,
        claim_type: Optional[str] = None,
        verification_method: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        after_seq: Optional[int] = None,
    ) -> list[StoredClaim]:
        with self._lock:
            candidates: Optional[set[str]] = None
            for index, value in (
                (self._by_subject, subject),
                (self._by_signer, signer),
                (self._by_type, claim_type),
                (self._by_method, verification_method),
            ):
                if value is None:
                    continue
                uris = index.get(value, set())
                candidates = set(uris) if candidates is None else candidates & uris

            rows = (
                self._claims.values() if candidates is None
                else (self._claims[u] for u in candidates)
            )
            result = sorted(
                (
                    c for c in rows
                    if (include_deleted or not c.deleted)
                    and (after_seq is None or c.seq > after_seq)
                ),
                key=lambda c: c.seq,
            )
            return result[:limit] if limit is not None else result

    def get_source(self, uri: str) -> Optional[SourceRow]:
        with self._lock:
            return self._sources.get(uri)

    def list_edges_to(self, target_uri: str) -> list[ReferenceEdge]:
        with self._lock:
            edges = self._edges_to.get(target_uri, {}).values()
            return sorted(edges, key=lambda e: e.seq)

    def _outgoing(self, source_uri: str) -> list[ReferenceEdge]:
        edges = [
            self._edges_to[target][source_uri]
            for target in self._edges_from.get(source_uri, [])
            if source_uri in self._edges_to.get(target, {})
        ]
        return sorted(edges, key=lambda e: e.seq)

    def list_edges_from(self, source_uri: str) -> list[ReferenceEdge]:
        with self._lock:
            return self._outgoing(source_uri)

    def list_archived_edges_to(self, target_uri: str) -> list[ArchivedEdge]:
        with self._lock:
            return sorted(self._archived_edges_to.get(target_uri, []), key=lambda a: a.edge.seq)

    def is_pending_tombstone(self, uri: str) -> bool:
        with self._lock:
            return uri in self._pending

    def counts(self) -> dict[str, int]:
        with self._lock:
            tombstoned = sum(1 for c in self._claims.values() if c.deleted)
            return {
                "claims": len(self._claims),
                "active_claims": len(self._claims) - tombstoned,
                "tombstoned_claims": tombstoned,
                "pending_tombstones": len(self._pending),
                "sources": len(self._sources),
                "edges": sum(len(e) for e in self._edges_to.values()),
                "archived_edges": sum(len(a) for a in self._archived_edges_to.values()),
            }

    def clear(self) -> None:
        """Clear all state (for testing only)."""
        with self._lock:
            self.__init__(self._max_pending)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS claimview_seq;

CREATE TABLE IF NOT EXISTS claims (
    uri                 TEXT PRIMARY KEY,
    owner               TEXT NOT NULL,
    collection          TEXT NOT NULL,
    record_key          TEXT NOT NULL,
    digest              TEXT NOT NULL,
    cid                 TEXT,
    record_json         TEXT NOT NULL,
    subject             TEXT NOT NULL,
    claim_type          TEXT NOT NULL,
    signer              TEXT NOT NULL,
    signer_source       TEXT NOT NULL,
    has_proof           BOOLEAN NOT NULL DEFAULT FALSE,
    verification_method TEXT,
    proof_type          TEXT,
    verdict             TEXT,
    verdict_reason      TEXT,
    verified_at         TIMESTAMPTZ,
    confidence          DOUBLE PRECISION,
    stars               SMALLINT,
    canon_version       INTEGER NOT NULL,
    seq                 BIGINT NOT NULL,
    indexed_at          TIMESTAMPTZ NOT NULL,
    deleted             BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at          TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS claims_digest_idx ON claims (digest);
CREATE INDEX IF NOT EXISTS claims_subject_idx ON claims (subject, seq);
CREATE INDEX IF NOT EXISTS claims_signer_idx ON claims (signer, seq);
CREATE INDEX IF NOT EXISTS claims_type_idx ON claims (claim_type, seq);
CREATE INDEX IF NOT EXISTS claims_method_idx ON claims (verification_method);
CREATE INDEX IF NOT EXISTS claims_seq_idx ON claims (seq);

-- Versions displaced when a tombstoned locator takes new content
CREATE TABLE IF NOT EXISTS claim_archive (LIKE claims INCLUDING DEFAULTS);
CREATE UNIQUE INDEX IF NOT EXISTS claim_archive_pk ON claim_archive (uri, digest);
CREATE INDEX IF NOT EXISTS claim_archive_digest_idx ON claim_archive (digest);

CREATE TABLE IF NOT EXISTS claim_sources (
    claim_uri        TEXT PRIMARY KEY REFERENCES claims (uri),
    uri              TEXT NOT NULL,
    digest_multibase TEXT,
    how_known        TEXT,
    date_observed    TEXT,
    author           TEXT,
    curator          TEXT,
    observer         TEXT
);

CREATE TABLE IF NOT EXISTS claim_edges (
    source_uri  TEXT NOT NULL,
    target_uri  TEXT NOT NULL,
    claim_type  TEXT NOT NULL,
    signer      TEXT NOT NULL,
    seq         BIGINT NOT NULL,
    PRIMARY KEY (source_uri, target_uri)
);
CREATE INDEX IF NOT EXISTS claim_edges_target_idx ON claim_edges (target_uri, seq);

-- Edges made by archived versions, keyed by the version that made them
CREATE TABLE IF NOT EXISTS claim_edge_archive (
    source_uri     TEXT NOT NULL,
    source_digest  TEXT NOT NULL,
    target_uri     TEXT NOT NULL,
    claim_type     TEXT NOT NULL,
    signer         TEXT NOT NULL,
    seq            BIGINT NOT NULL,
    PRIMARY KEY (source_uri, source_digest, target_uri)
);
CREATE INDEX IF NOT EXISTS claim_edge_archive_target_idx ON claim_edge_archive (target_uri, seq);

CREATE TABLE IF NOT EXISTS pending_tombstones (
    uri         TEXT PRIMARY KEY,
    deleted_at  TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS pending_tombstones_deleted_idx ON pending_tombstones (deleted_at);
"""

_CLAIM_COLUMNS = (
    "uri", "owner", "collection", "record_key", "digest", "cid", "record_json",
    "subject", "claim_type", "signer", "signer_source", "has_proof",
    "verification_method", "proof_type", "verdict", "verdict_reason",
    "verified_at", "confidence", "stars", "canon_version", "seq",
    "indexed_at", "deleted", "deleted_at",
)
_CLAIM_SELECT = ", ".join(_CLAIM_COLUMNS)


class PostgresDerivedStore(DerivedStore):
    """
    PostgreSQL implementation of DerivedStore.

    Provides:
    - One transaction per mutation (atomic per event)
    - Row lock on the locator (SELECT ... FOR UPDATE) against concurrent
      writers in other processes
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Every call takes its own connection from connection_factory.

    Any psycopg2 error is raised as StoreError.
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
        max_pending: Optional[int] = None,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection
            lock_timeout_ms: How long to wait for a row lock (ms)
            statement_timeout_ms: Max statement execution time (ms)
            max_pending: Cap on pending tombstones (or loads from environment)
        """
        super().__init__()
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms
        self._max_pending = max_pending if max_pending is not None else max_pending_from_env()

    # ---------------- connection handling ----------------

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """Yield a cursor inside one transaction; commit on success."""
        try:
            conn = self._connection_factory()
        except psycopg2.Error as e:
            raise StoreError(f"cannot connect: {e}") from e
        try:
            conn.autocommit = False
            with conn.cursor() as cur:
                cur.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
                cur.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")
                yield cur
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._transaction() as cur:
            cur.execute(SCHEMA_SQL)

    # ---------------- row mapping ----------------

    @staticmethod
    def _claim_params(claim: StoredClaim) -> tuple:
        return (
            claim.uri, claim.owner, claim.collection, claim.record_key,
            claim.digest, claim.cid, json.dumps(claim.record),
            claim.subject, claim.claim_type, claim.signer, claim.signer_source,
            claim.has_proof, claim.verification_method, claim.proof_type,
            claim.verdict.value if claim.verdict else None, claim.verdict_reason,
            claim.verified_at, claim.confidence, claim.stars, claim.canon_version,
            claim.seq, claim.indexed_at, claim.deleted, claim.deleted_at,
        )

    @staticmethod
    def _row_to_claim(row: tuple) -> StoredClaim:
        data = dict(zip(_CLAIM_COLUMNS, row))
        data["record"] = json.loads(data.pop("record_json"))
        data["verdict"] = Verdict(data["verdict"]) if data["verdict"] else None
        return StoredClaim(**data)

    @staticmethod
    def _row_to_edge(row: tuple) -> ReferenceEdge:
        return ReferenceEdge(
            source_uri=row[0],
            target_uri=row[1],
            claim_type=row[2],
            signer=row[3],
            seq=row[4],
        )

    def _fetch_claim(self, cur, uri: str, for_update: bool = False) -> Optional[StoredClaim]:
        lock = " FOR UPDATE" if for_update else ""
        cur.execute(f"SELECT {_CLAIM_SELECT} FROM claims WHERE uri = %s{lock}", (uri,))
        row = cur.fetchone()
        return self._row_to_claim(row) if row else None

    def _fetch_outgoing(self, cur, source_uri: str) -> list[ReferenceEdge]:
        cur.execute("""
            SELECT source_uri, target_uri, claim_type, signer, seq
            FROM claim_edges WHERE source_uri = %s ORDER BY seq
        """, (source_uri,))
        return [self._row_to_edge(r) for r in cur.fetchall()]

    # ---------------- mutations ----------------

    def apply_create(
        self,
        claim: StoredClaim,
        source: Optional[SourceRow] = None,
        edges: Optional[list[ReferenceEdge]] = None,
    ) -> ApplyResult:
        edges = edges or []
        with self._transaction() as cur:
            # Serialize concurrent creates for a locator that does not exist yet
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (claim.uri,))
            existing = self._fetch_claim(cur, claim.uri, for_update=True)
            status = ApplyStatus.INDEXED

            if existing is not None:
                if existing.digest == claim.digest:
                    return ApplyResult(ApplyStatus.DUPLICATE, existing)
                if not existing.deleted:
                    return ApplyResult(ApplyStatus.REJECTED, existing)
                cur.execute(f"""
                    INSERT INTO claim_archive ({_CLAIM_SELECT})
                    SELECT {_CLAIM_SELECT} FROM claims WHERE uri = %s
                    ON CONFLICT DO NOTHING
                """, (claim.uri,))
                cur.execute("""
                    INSERT INTO claim_edge_archive (source_uri, source_digest, target_uri, claim_type, signer, seq)
                    SELECT source_uri, %s, target_uri, claim_type, signer, seq
                    FROM claim_edges WHERE source_uri = %s
                    ON CONFLICT DO NOTHING
                """, (existing.digest, claim.uri))
                cur.execute("DELETE FROM claim_edges WHERE source_uri = %s", (claim.uri,))
                cur.execute("DELETE FROM claim_sources WHERE claim_uri = %s", (claim.uri,))
                cur.execute("DELETE FROM claims WHERE uri = %s", (claim.uri,))
                status = ApplyStatus.REVIVED

            cur.execute(
                "DELETE FROM pending_tombstones WHERE uri = %s RETURNING deleted_at",
                (claim.uri,),
            )
            pending = cur.fetchone()
            pending_at = pending[0] if pending else None
            if pending_at is not None:
                status = ApplyStatus.TOMBSTONED

            cur.execute("SELECT nextval('claimview_seq')")
            stored = replace(
                claim,
                seq=cur.fetchone()[0],
                indexed_at=claim.indexed_at or _now(),
                deleted=pending_at is not None,
                deleted_at=pending_at,
            )
            placeholders = ", ".join(["%s"] * len(_CLAIM_COLUMNS))
            cur.execute(
                f"INSERT INTO claims ({_CLAIM_SELECT}) VALUES ({placeholders})",
                self._claim_params(stored),
            )

            if source is not None:
                cur.execute("""
                    INSERT INTO claim_sources (
                        claim_uri, uri, digest_multibase, how_known,
                        date_observed, author, curator, observer
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    source.claim_uri, source.uri, source.digest_multibase,
                    source.how_known, source.date_observed, source.author,
                    source.curator, source.observer,
                ))

            stored_edges = []
            for edge in edges:
                cur.execute("SELECT nextval('claimview_seq')")
                edge = replace(edge, seq=cur.fetchone()[0])
                cur.execute("""
                    INSERT INTO claim_edges (source_uri, target_uri, claim_type, signer, seq)
                    VALUES (%s, %s, %s, %s, %s)
                """, (edge.source_uri, edge.target_uri, edge.claim_type, edge.signer, edge.seq))
                stored_edges.append(edge)

        if existing is not None:
            self._notify([VerdictChange(stored.uri, stored.verdict)])
        if not stored.deleted:
            self._notify(EdgeChange(e, True) for e in stored_edges)
        return ApplyResult(status, stored, stored_edges)

    def apply_delete(self, uri: str, deleted_at: Optional[datetime] = None) -> ApplyResult:
        deleted_at = deleted_at or _now()
        with self._transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (uri,))
            existing = self._fetch_claim(cur, uri, for_update=True)

            if existing is None:
                cur.execute("""
                    INSERT INTO pending_tombstones (uri, deleted_at) VALUES (%s, %s)
                    ON CONFLICT (uri) DO NOTHING
                """, (uri, deleted_at))
                if cur.rowcount == 0:
                    return ApplyResult(ApplyStatus.DUPLICATE)
                self._trim_pending(cur)
                return ApplyResult(ApplyStatus.PENDING_TOMBSTONE)

            if existing.deleted:
                return ApplyResult(ApplyStatus.DUPLICATE, existing)

            cur.execute(
                "UPDATE claims SET deleted = TRUE, deleted_at = %s WHERE uri = %s",
                (deleted_at, uri),
            )
            outgoing = self._fetch_outgoing(cur, uri)
            tombstoned = replace(existing, deleted=True, deleted_at=deleted_at)

        self._notify(EdgeChange(e, False) for e in outgoing)
        return ApplyResult(ApplyStatus.TOMBSTONED, tombstoned, outgoing)

    def set_verdict(
        self,
        uri: str,
        digest: str,
        verdict: Verdict,
        reason: str,
        verified_at: Optional[datetime] = None,
    ) -> bool:
        with self._transaction() as cur:
            cur.execute("""
                UPDATE claims SET verdict = %s, verdict_reason = %s, verified_at = %s
                WHERE uri = %s AND digest = %s
            """, (verdict.value, reason, verified_at or _now(), uri, digest))
            applied = cur.rowcount == 1
        if applied:
            self._notify([VerdictChange(uri, verdict)])
        return applied

    def _trim_pending(self, cur) -> None:
        """Drop the oldest pending tombstones beyond max_pending."""
        cur.execute("""
            DELETE FROM pending_tombstones WHERE uri IN (
                SELECT uri FROM pending_tombstones ORDER BY deleted_at DESC, uri OFFSET %s
            ) RETURNING uri
        """, (self._max_pending,))
        dropped = cur.fetchall()
        if dropped:
            logger.warning(
                "Pending tombstone cap reached, oldest dropped",
                max_pending=self._max_pending,
                dropped=len(dropped),
            )

    # ---------------- lookups ----------------

    def get_claim(self, uri: str) -> Optional[StoredClaim]:
        with self._transaction() as cur:
            return self._fetch_claim(cur, uri)

    def get_by_digest(self, digest: str) -> Optional[StoredClaim]:
        with self._transaction() as cur:
            cur.execute(f"""
                SELECT {_CLAIM_SELECT} FROM (
                    SELECT {_CLAIM_SELECT} FROM claims WHERE digest = %s
                    UNION ALL
                    SELECT {_CLAIM_SELECT} FROM claim_archive WHERE digest = %s
                ) AS versions
                ORDER BY seq LIMIT 1
            """, (digest.lower(), digest.lower()))
            row = cur.fetchone()
            return self._row_to_claim(row) if row else None

    def list_claims(
        self,
        subject: Optional[str] = None,
        signer: Optional[str] = None,
        claim_type: Optional[str] = None,
        verification_method: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        after_seq: Optional[int] = None,
    ) -> list[StoredClaim]:
        clauses, params = [], []
        for column, value in (
            ("subject", subject),
            ("signer", signer),
            ("claim_type", claim_type),
            ("verification_method", verification_method),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if not include_deleted:
            clauses.append("NOT deleted")
        if after_seq is not None:
            clauses.append("seq > %s")
            params.append(after_seq)

        sql = f"SELECT {_CLAIM_SELECT} FROM claims"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        with self._transaction() as cur:
            cur.execute(sql, params)
            return [self._row_to_claim(r) for r in cur.fetchall()]

    def get_source(self, uri: str) -> Optional[SourceRow]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT claim_uri, uri, digest_multibase, how_known,
                       date_observed, author, curator, observer
                FROM claim_sources WHERE claim_uri = %s
            """, (uri,))
            row = cur.fetchone()
            return SourceRow(*row) if row else None

    def list_edges_to(self, target_uri: str) -> list[ReferenceEdge]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT source_uri, target_uri, claim_type, signer, seq
                FROM claim_edges WHERE target_uri = %s ORDER BY seq
            """, (target_uri,))
            return [self._row_to_edge(r) for r in cur.fetchall()]

    def list_edges_from(self, source_uri: str) -> list[ReferenceEdge]:
        with self._transaction() as cur:
            return self._fetch_outgoing(cur, source_uri)

    def list_archived_edges_to(self, target_uri: str) -> list[ArchivedEdge]:
        columns = ", ".join(f"a.{c}" for c in _CLAIM_COLUMNS)
        with self._transaction() as cur:
            cur.execute(f"""
                SELECT e.source_uri, e.target_uri, e.claim_type, e.signer, e.seq, {columns}
                FROM claim_edge_archive e
                JOIN claim_archive a ON a.uri = e.source_uri AND a.digest = e.source_digest
                WHERE e.target_uri = %s ORDER BY e.seq
            """, (target_uri,))
            return [
                ArchivedEdge(self._row_to_edge(r[:5]), self._row_to_claim(r[5:]))
                for r in cur.fetchall()
            ]

    def is_pending_tombstone(self, uri: str) -> bool:
        with self._transaction() as cur:
            cur.execute("SELECT 1 FROM pending_tombstones WHERE uri = %s", (uri,))
            return cur.fetchone() is not None

    def counts(self) -> dict[str, int]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT
                    (SELECT COUNT(*) FROM claims),
                    (SELECT COUNT(*) FROM claims WHERE deleted),
                    (SELECT COUNT(*) FROM pending_tombstones),
                    (SELECT COUNT(*) FROM claim_sources),
                    (SELECT COUNT(*) FROM claim_edges),
                    (SELECT COUNT(*) FROM claim_edge_archive)
            """)
            total, tombstoned, pending, sources, edges, archived_edges = cur.fetchone()
        return {
            "claims": total,
            "active_claims": total - tombstoned,
            "tombstoned_claims": tombstoned,
            "pending_tombstones": pending,
            "sources": sources,
            "edges": edges,
            "archived_edges": archived_edges,
        }

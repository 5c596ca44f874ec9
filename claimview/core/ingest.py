"""
Ingestion Pipeline

Consumes the upstream change stream and applies it to the derived store.

RULES:
1. Events for one locator are applied in delivery order (one shard per
   locator, chosen by CRC32 of the locator)
2. Events for different locators run in parallel across shards
3. A claim is visible the moment its content is parsed; its verdict is
   applied later, from the verification pool
4. Re-delivered events are no-ops (create by locator+digest, delete by
   locator)
5. A delete before its create is held as a pending tombstone
6. A malformed record is dropped and logged, never fatal
7. A storage failure halts ingestion; every later submit raises
   IngestionHalted

CONFIGURATION:
- CLAIMVIEW_COLLECTIONS: Comma-separated collections to index
  (default: com.linkedclaims.claim)
- CLAIMVIEW_SHARDS: Ordered shard executors (default: 4)
- CLAIMVIEW_VERIFY_WORKERS: Verification threads, 0 = verify inline (default: 4)
"""

import os
import threading
import time
import zlib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from ..db.store import (
    ApplyResult,
    ApplyStatus,
    DerivedStore,
    ReferenceEdge,
    SourceRow,
    StoreError,
    StoredClaim,
)
from ..observability import bind_locator, get_logger, get_metrics
from ..schemas import ChangeEvent, Claim, EmbeddedProof, EventAction
from .hasher import CanonicalSerializationError, Hasher
from .proofs import ProofVerifier, VerificationResult


logger = get_logger(__name__)

DEFAULT_COLLECTION = "com.linkedclaims.claim"


# ============================================================
# EXCEPTIONS
# ============================================================

class IngestError(Exception):
    """Base exception for ingestion errors."""
    pass


class ParseError(IngestError):
    """Malformed envelope or record. The event is dropped."""
    pass


class IngestionHalted(IngestError):
    """Ingestion stopped after an unrecoverable storage failure."""
    pass


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class IngestConfig:
    """Configuration for the ingestion pipeline."""
    collections: frozenset[str] = frozenset({DEFAULT_COLLECTION})
    shards: int = 4
    verify_workers: int = 4

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Load configuration from environment variables."""
        raw = os.environ.get("CLAIMVIEW_COLLECTIONS", DEFAULT_COLLECTION)
        collections = frozenset(c.strip() for c in raw.split(",") if c.strip())
        return cls(
            collections=collections or frozenset({DEFAULT_COLLECTION}),
            shards=max(1, int(os.environ.get("CLAIMVIEW_SHARDS", "4"))),
            verify_workers=max(0, int(os.environ.get("CLAIMVIEW_VERIFY_WORKERS", "4"))),
        )

    def indexes(self, collection: str) -> bool:
        return collection in self.collections


# ============================================================
# RESULTS
# ============================================================

class IngestOutcome(str, Enum):
    """What happened to one change event."""
    INDEXED = "indexed"
    REVIVED = "revived"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    TOMBSTONED = "tombstoned"
    PENDING_TOMBSTONE = "pending_tombstone"
    DROPPED = "dropped"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    """Outcome of processing one event."""
    outcome: IngestOutcome
    uri: Optional[str] = None
    digest: Optional[str] = None
    reason: Optional[str] = None
    edges: list[ReferenceEdge] = field(default_factory=list)
    verification_dispatched: bool = False


RawEvent = Union[ChangeEvent, dict[str, Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# PIPELINE
# ============================================================

class IngestionPipeline:
    """
    Applies change events to a DerivedStore.

    Usage:
        pipeline = IngestionPipeline(store, verifier)
        pipeline.consume(events)
        pipeline.wait_idle()

    process() is the synchronous, single-event path (shard workers and tests
    call it directly). submit() routes an event to its locator's shard.
    """

    def __init__(
        self,
        store: DerivedStore,
        verifier: ProofVerifier,
        config: Optional[IngestConfig] = None,
    ):
        self._store = store
        self._verifier = verifier
        self._config = config or IngestConfig.from_env()

        self._shards = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"claimview-shard-{i}")
            for i in range(self._config.shards)
        ]
        self._verify_pool: Optional[ThreadPoolExecutor] = None
        if self._config.verify_workers > 0:
            self._verify_pool = ThreadPoolExecutor(
                max_workers=self._config.verify_workers,
                thread_name_prefix="claimview-verify",
            )

        self._halted = False
        self._halt_reason: Optional[str] = None

        # In-flight work: shard tasks plus verifications
        self._idle = threading.Condition()
        self._inflight = 0
        self._pending_verifications = 0

    # ---------------- properties ----------------

    @property
    def store(self) -> DerivedStore:
        return self._store

    @property
    def verifier(self) -> ProofVerifier:
        return self._verifier

    @property
    def config(self) -> IngestConfig:
        return self._config

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    @property
    def pending_verifications(self) -> int:
        return self._pending_verifications

    # ---------------- entry points ----------------

    @staticmethod
    def parse_event(raw: RawEvent) -> ChangeEvent:
        """
        Parse an upstream envelope.

        Raises:
            ParseError: If the envelope is malformed
        """
        if isinstance(raw, ChangeEvent):
            return raw
        try:
            return ChangeEvent.model_validate(raw)
        except ValidationError as e:
            raise ParseError(f"malformed change event: {e.error_count()} error(s)") from e

    def shard_for(self, uri: str) -> int:
        """Shard index for a locator. Stable across processes."""
        return zlib.crc32(uri.encode("utf-8")) % len(self._shards)

    def submit(self, raw: RawEvent) -> "Future[IngestResult]":
        """
        Queue an event on its locator's shard.

        Raises:
            IngestionHalted: If ingestion has halted
        """
        self._check_halted()
        try:
            event = self.parse_event(raw)
        except ParseError:
            # Unroutable; shard 0 drops and counts it
            event, shard = raw, 0
        else:
            shard = self.shard_for(event.uri)

        self._enter()
        future = self._shards[shard].submit(self.process, event)
        future.add_done_callback(lambda _: self._leave())
        return future

    def consume(self, events: Iterable[RawEvent]) -> list["Future[IngestResult]"]:
        """Submit events in delivery order."""
        return [self.submit(event) for event in events]

    def process(self, raw: RawEvent) -> IngestResult:
        """
        Apply one event synchronously.

        Raises:
            IngestionHalted: If ingestion has halted, or halts now
        """
        self._check_halted()
        start = time.perf_counter()

        try:
            event = self.parse_event(raw)
        except ParseError as e:
            result = self._dropped(None, str(e))
        else:
            with bind_locator(event.uri):
                result = self._route(event)

        get_metrics().record_ingest(result.outcome.value, (time.perf_counter() - start) * 1000)
        return result

    def _route(self, event: ChangeEvent) -> IngestResult:
        if not self._config.indexes(event.collection):
            return IngestResult(IngestOutcome.IGNORED, uri=event.uri)
        if event.action == EventAction.CREATE:
            return self._process_create(event)
        return self._process_delete(event)

    # ---------------- create / delete ----------------

    def _process_create(self, event: ChangeEvent) -> IngestResult:
        uri = event.uri
        try:
            claim = Claim.from_record(event.record)
        except ValidationError as e:
            return self._dropped(uri, f"invalid claim record: {e.error_count()} error(s)")

        try:
            canonical = Hasher.canonicalize(event.record)
        except CanonicalSerializationError as e:
            return self._dropped(uri, f"record cannot be canonicalized: {e}")
        digest = Hasher.digest_bytes(canonical)

        stored, source, edges = self._derive(event, claim, digest)
        applied = self._apply(lambda: self._store.apply_create(stored, source, edges))
        result = IngestResult(
            IngestOutcome(applied.status.value),
            uri=uri,
            digest=digest,
            edges=applied.edges,
        )

        if applied.status == ApplyStatus.REJECTED:
            result.reason = f"locator holds live content {applied.claim.digest}"
            logger.warning(
                "Create rejected: locator holds different live content",
                uri=uri,
                digest=digest,
                existing_digest=applied.claim.digest,
            )
            return result

        if applied.status == ApplyStatus.DUPLICATE:
            logger.debug("Duplicate create", uri=uri, digest=digest)
            return result

        logger.info(
            "Claim indexed",
            uri=uri,
            digest=digest,
            outcome=result.outcome.value,
            signer=stored.signer,
            edge_count=len(applied.edges),
        )

        if claim.embedded_proof is not None:
            self._dispatch_verification(uri, digest, canonical, claim.embedded_proof)
            result.verification_dispatched = True
        return result

    def _process_delete(self, event: ChangeEvent) -> IngestResult:
        uri = event.uri
        applied = self._apply(lambda: self._store.apply_delete(uri, _now()))
        result = IngestResult(
            IngestOutcome(applied.status.value),
            uri=uri,
            digest=applied.claim.digest if applied.claim else None,
        )
        if applied.status == ApplyStatus.PENDING_TOMBSTONE:
            logger.info("Delete before create, tombstone pending", uri=uri)
        elif applied.status == ApplyStatus.TOMBSTONED:
            logger.info("Claim tombstoned", uri=uri, digest=result.digest)
        return result

    def _derive(
        self,
        event: ChangeEvent,
        claim: Claim,
        digest: str,
    ) -> tuple[StoredClaim, Optional[SourceRow], list[ReferenceEdge]]:
        """Build the rows one create event produces."""
        uri = event.uri
        proof = claim.embedded_proof

        # Exactly one authoritative signer
        if proof is not None:
            signer, signer_source = proof.controller, "proof"
        else:
            signer, signer_source = event.owner, "repository"

        stored = StoredClaim(
            uri=uri,
            owner=event.owner,
            collection=event.collection,
            record_key=event.record_key,
            digest=digest,
            record=event.record,
            subject=claim.subject,
            claim_type=claim.claim_type,
            signer=signer,
            signer_source=signer_source,
            has_proof=proof is not None,
            verification_method=proof.verification_method if proof else None,
            proof_type=proof.type if proof else None,
            confidence=claim.confidence,
            stars=claim.stars,
            cid=event.digest,
            canon_version=Hasher.SERIALIZATION_VERSION,
        )

        source = None
        if claim.source is not None:
            source = SourceRow(
                claim_uri=uri,
                uri=claim.source.uri,
                digest_multibase=claim.source.digest_multibase,
                how_known=claim.source.how_known.value if claim.source.how_known else None,
                date_observed=claim.source.date_observed,
                author=claim.source.author,
                curator=claim.source.curator,
                observer=claim.source.observer,
            )

        edges = []
        target = claim.subject_locator
        if target is not None and self._config.indexes(target.collection):
            edges.append(ReferenceEdge(
                source_uri=uri,
                target_uri=target.uri,
                claim_type=claim.claim_type,
                signer=signer,
            ))

        return stored, source, edges

    # ---------------- verification ----------------

    def _dispatch_verification(
        self,
        uri: str,
        digest: str,
        canonical: bytes,
        proof: EmbeddedProof,
    ) -> None:
        with self._idle:
            self._pending_verifications += 1
            get_metrics().set_verifications_pending(self._pending_verifications)

        if self._verify_pool is None:
            try:
                self._verify_and_apply(uri, digest, canonical, proof)
            finally:
                self._verification_done()
            return

        self._enter()
        future = self._verify_pool.submit(self._verify_and_apply, uri, digest, canonical, proof)
        future.add_done_callback(self._on_verification_done)

    def _on_verification_done(self, future: Future) -> None:
        self._verification_done()
        self._leave()

    def _verification_done(self) -> None:
        with self._idle:
            self._pending_verifications -= 1
            get_metrics().set_verifications_pending(self._pending_verifications)

    def _verify_and_apply(
        self,
        uri: str,
        digest: str,
        canonical: bytes,
        proof: EmbeddedProof,
    ) -> Optional[VerificationResult]:
        if self._halted:
            return None

        start = time.perf_counter()
        with bind_locator(uri):
            result = self._verifier.verify(canonical, proof)
        latency_ms = (time.perf_counter() - start) * 1000

        try:
            applied = self._apply(
                lambda: self._store.set_verdict(uri, digest, result.verdict, result.reason, _now())
            )
        except IngestionHalted:
            return None

        get_metrics().record_verdict(result.verdict.value, latency_ms)
        if applied:
            logger.info(
                "Verdict applied",
                uri=uri,
                digest=digest,
                verdict=result.verdict.value,
                reason=result.reason,
            )
        else:
            logger.info("Verdict discarded, locator content changed", uri=uri, digest=digest)
        return result

    def reverify(self, uri: str) -> Optional[VerificationResult]:
        """
        Recompute a claim's verdict with fresh identity material.

        Drops the cached key for the claim's verification method first.

        Returns:
            The new VerificationResult, or None if there is no claim with a proof
        """
        self._check_halted()
        claim = self._store.get_claim(uri)
        if claim is None or not claim.has_proof:
            return None

        proof = EmbeddedProof.model_validate(claim.record["embeddedProof"])
        self._verifier.resolver.invalidate(proof.verification_method)
        canonical = Hasher.canonicalize(claim.record)

        result = self._verifier.verify(canonical, proof)
        self._apply(
            lambda: self._store.set_verdict(uri, claim.digest, result.verdict, result.reason, _now())
        )
        get_metrics().record_verdict(result.verdict.value, 0.0)
        logger.info(
            "Claim re-verified",
            uri=uri,
            verdict=result.verdict.value,
            previous=claim.verdict.value if claim.verdict else None,
        )
        return result

    def reverify_signer(self, identity: str) -> int:
        """
        Re-verify every proof-carrying claim signed by an identity.

        Use after the identity's key material is revoked or rotated.

        Returns:
            Number of claims re-verified
        """
        count = 0
        for claim in self._store.list_claims(signer=identity, include_deleted=True):
            if claim.has_proof and self.reverify(claim.uri) is not None:
                count += 1
        return count

    # ---------------- halting ----------------

    def _apply(self, mutation):
        """Run a store mutation; a StoreError halts ingestion."""
        try:
            return mutation()
        except StoreError as e:
            self._halt(str(e))
            raise IngestionHalted(f"ingestion halted: {e}") from e

    def _halt(self, reason: str) -> None:
        if not self._halted:
            self._halted = True
            self._halt_reason = reason
            logger.critical("Storage failure, ingestion halted", error=reason)

    def _check_halted(self) -> None:
        if self._halted:
            raise IngestionHalted(f"ingestion halted: {self._halt_reason}")

    # ---------------- lifecycle ----------------

    def _dropped(self, uri: Optional[str], reason: str) -> IngestResult:
        logger.warning("Event dropped", uri=uri, reason=reason)
        return IngestResult(IngestOutcome.DROPPED, uri=uri, reason=reason)

    def _enter(self) -> None:
        with self._idle:
            self._inflight += 1

    def _leave(self) -> None:
        with self._idle:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every submitted event and its verification has finished.

        Returns:
            True if idle, False on timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout=timeout)

    def close(self) -> None:
        """Finish queued work and stop the executors."""
        for shard in self._shards:
            shard.shutdown(wait=True)
        if self._verify_pool is not None:
            self._verify_pool.shutdown(wait=True)

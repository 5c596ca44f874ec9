"""
Tests for the ingestion pipeline.

Most tests call process() directly (synchronous, one event at a time);
the concurrency tests go through submit() and wait_idle().
"""

import threading

import pytest

from claimview.core import Hasher, Signer
from claimview.core.ingest import (
    IngestConfig,
    IngestionHalted,
    IngestionPipeline,
    IngestOutcome,
    ParseError,
)
from claimview.core.proofs import ProofVerifier
from claimview.core.query import QueryLimits, QueryService, TargetStatus
from claimview.core.resolver import DidKeyResolver, IdentityNotFound, IdentityResolverCache, ResolverConfig
from claimview.core.trust import TrustGraphEngine, TrustMode, TrustPolicy
from claimview.db.store import InMemoryDerivedStore, StoreError
from claimview.observability import check_health
from claimview.schemas import Verdict, VerificationStatus

from factories import (
    ALICE,
    BOB,
    CAROL,
    PROJECT,
    claim_record,
    create,
    delete,
    multikey_of,
    signed_record,
    uri,
)


class FailingStore(InMemoryDerivedStore):
    """Store whose writes fail once armed."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def apply_create(self, claim, source=None, edges=None):
        if self.failing:
            raise StoreError("disk full")
        return super().apply_create(claim, source, edges)


class TestCreate:
    """Test create events."""

    def test_create_indexes_claim(self, pipeline, store):
        record = claim_record(PROJECT, statement="Planted trees")
        result = pipeline.process(create(ALICE, "1", record))
        assert result.outcome == IngestOutcome.INDEXED
        assert result.uri == uri(ALICE, "1")
        assert result.digest == Hasher.digest(record)

        claim = store.get_claim(uri(ALICE, "1"))
        assert claim.subject == PROJECT
        assert claim.claim_type == "impact"
        assert claim.signer == ALICE
        assert claim.signer_source == "repository"
        assert claim.record == record
        assert claim.verification_status == VerificationStatus.NONE

    def test_source_attached(self, pipeline, store):
        record = claim_record(PROJECT, source={
            "uri": "https://ngo.example/report.pdf",
            "howKnown": "FIRST_HAND",
            "author": "did:plc:auditor",
        })
        pipeline.process(create(ALICE, "1", record))
        source = store.get_source(uri(ALICE, "1"))
        assert source.uri == "https://ngo.example/report.pdf"
        assert source.how_known == "FIRST_HAND"
        assert source.author == "did:plc:auditor"

    def test_upstream_digest_kept_as_cid(self, pipeline, store):
        event = dict(create(ALICE, "1", claim_record(PROJECT)), digest="bafyreiabc")
        pipeline.process(event)
        assert store.get_claim(uri(ALICE, "1")).cid == "bafyreiabc"

    def test_idempotent_create(self, pipeline, store):
        """Applying the same create twice leaves the same state as once."""
        event = create(ALICE, "1", claim_record(PROJECT))
        pipeline.process(event)
        snapshot = (store.get_claim(uri(ALICE, "1")), store.counts())

        result = pipeline.process(event)
        assert result.outcome == IngestOutcome.DUPLICATE
        assert (store.get_claim(uri(ALICE, "1")), store.counts()) == snapshot

    def test_conflicting_create_rejected(self, pipeline, store):
        pipeline.process(create(ALICE, "1", claim_record(PROJECT, statement="v1")))
        result = pipeline.process(create(ALICE, "1", claim_record(PROJECT, statement="v2")))
        assert result.outcome == IngestOutcome.REJECTED
        assert store.get_claim(uri(ALICE, "1")).record["statement"] == "v1"

    def test_collection_not_indexed(self, pipeline, store):
        result = pipeline.process(create(ALICE, "1", claim_record(PROJECT), collection="app.bsky.feed.post"))
        assert result.outcome == IngestOutcome.IGNORED
        assert store.counts()["claims"] == 0

    def test_extra_collection(self, store, verifier):
        config = IngestConfig(collections=frozenset({"com.linkedclaims.claim", "org.example.claim"}), shards=1, verify_workers=0)
        pipeline = IngestionPipeline(store, verifier, config)
        try:
            result = pipeline.process(create(ALICE, "1", claim_record(PROJECT), collection="org.example.claim"))
            assert result.outcome == IngestOutcome.INDEXED
        finally:
            pipeline.close()


class TestMalformedInput:
    """A bad event is dropped and never stops the stream."""

    @pytest.mark.parametrize("record", [
        {"claimType": "impact"},                                        # no subject
        {"subject": "not a uri", "claimType": "impact"},
        {"subject": PROJECT, "claimType": "impact", "confidence": 1.5},
        {"subject": PROJECT, "claimType": "impact", "stars": 0},
        {"subject": PROJECT, "claimType": "impact", "embeddedProof": {"type": "Ed25519Signature2020"}},
    ])
    def test_invalid_record_dropped(self, pipeline, store, record):
        result = pipeline.process(create(ALICE, "1", record))
        assert result.outcome == IngestOutcome.DROPPED
        assert result.reason
        assert store.counts()["claims"] == 0

    @pytest.mark.parametrize("envelope", [
        {"action": "update", "owner": ALICE, "collection": "com.linkedclaims.claim", "recordKey": "1"},
        {"action": "create", "owner": ALICE, "collection": "com.linkedclaims.claim", "recordKey": "1"},
        {"action": "delete", "owner": ALICE},
        {"action": "delete", "owner": ALICE, "collection": "not-an-nsid", "recordKey": "1"},
    ])
    def test_invalid_envelope_dropped(self, pipeline, envelope):
        assert pipeline.process(envelope).outcome == IngestOutcome.DROPPED

    def test_parse_event_raises(self):
        with pytest.raises(ParseError):
            IngestionPipeline.parse_event({"action": "create"})

    def test_stream_continues_after_bad_event(self, pipeline, store):
        pipeline.process(create(ALICE, "1", {"claimType": "impact"}))
        pipeline.process(create(ALICE, "2", claim_record(PROJECT)))
        assert store.get_claim(uri(ALICE, "2")) is not None


class TestDelete:
    """Test deletes, tombstones and ordering."""

    def test_delete_tombstones(self, pipeline, store):
        record = claim_record(PROJECT)
        pipeline.process(create(ALICE, "1", record))
        result = pipeline.process(delete(ALICE, "1"))
        assert result.outcome == IngestOutcome.TOMBSTONED
        assert result.digest == Hasher.digest(record)
        assert store.get_claim(uri(ALICE, "1")).deleted

    def test_duplicate_delete(self, pipeline):
        pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        pipeline.process(delete(ALICE, "1"))
        assert pipeline.process(delete(ALICE, "1")).outcome == IngestOutcome.DUPLICATE

    def test_redelivered_create_stays_tombstoned(self, pipeline, store):
        """create, delete, create again (re-delivery) ends tombstoned."""
        event = create(ALICE, "1", claim_record(PROJECT))
        pipeline.process(event)
        pipeline.process(delete(ALICE, "1"))
        result = pipeline.process(event)
        assert result.outcome == IngestOutcome.DUPLICATE
        assert store.get_claim(uri(ALICE, "1")).deleted

    def test_delete_before_create(self, pipeline, store):
        assert pipeline.process(delete(ALICE, "1")).outcome == IngestOutcome.PENDING_TOMBSTONE
        result = pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        assert result.outcome == IngestOutcome.TOMBSTONED
        assert store.get_claim(uri(ALICE, "1")).deleted

    def test_new_content_after_delete(self, pipeline, store):
        """The slot is reused; the retracted version stays addressable by digest."""
        old = claim_record(PROJECT, statement="v1")
        new = claim_record(PROJECT, statement="v2")
        pipeline.process(create(ALICE, "1", old))
        pipeline.process(delete(ALICE, "1"))
        assert pipeline.process(create(ALICE, "1", new)).outcome == IngestOutcome.REVIVED

        assert store.get_claim(uri(ALICE, "1")).record == new
        archived = store.get_by_digest(Hasher.digest(old))
        assert archived.record == old
        assert archived.deleted

    def test_digest_lookup_stable(self, pipeline, store):
        """Re-fetch by digest returns the same content after unrelated events."""
        record = claim_record(PROJECT, statement="stable")
        pipeline.process(create(ALICE, "1", record))
        before = store.get_by_digest(Hasher.digest(record)).record

        for i in range(2, 12):
            pipeline.process(create(BOB, str(i), claim_record(PROJECT, statement=str(i))))
            if i % 2:
                pipeline.process(delete(BOB, str(i)))

        after = store.get_by_digest(Hasher.digest(record)).record
        assert Hasher.canonicalize(after) == Hasher.canonicalize(before)


class TestEdgesAndScenarios:
    """Claims about claims."""

    def test_endorsement_scenario(self, pipeline, query):
        alice_uri = uri(ALICE, "1")
        pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        result = pipeline.process(create(BOB, "1", claim_record(alice_uri, "endorsement")))
        assert [e.target_uri for e in result.edges] == [alice_uri]

        attestations = query.get_attestations(alice_uri)
        assert attestations.target_status == TargetStatus.ACTIVE
        assert len(attestations.attestations) == 1
        assert attestations.attestations[0].edge.signer == BOB
        assert query.get_trust_score(alice_uri).endorsement_count == 1

    def test_subject_in_other_collection_is_not_an_edge(self, pipeline):
        target = uri(ALICE, "1", collection="app.bsky.feed.post")
        result = pipeline.process(create(BOB, "1", claim_record(target, "endorsement")))
        assert result.outcome == IngestOutcome.INDEXED
        assert result.edges == []

    def test_edge_to_claim_not_yet_indexed(self, pipeline, query):
        target = uri(ALICE, "later")
        pipeline.process(create(BOB, "1", claim_record(target, "endorsement")))
        assert query.target_status(target)[0] == TargetStatus.REFERENCED
        pipeline.process(create(ALICE, "later", claim_record(PROJECT)))
        assert query.get_trust_score(target).endorsement_count == 1

    def test_tombstoned_target_still_resolves(self, pipeline, query):
        alice_uri = uri(ALICE, "1")
        pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        pipeline.process(create(BOB, "1", claim_record(alice_uri, "endorsement")))
        pipeline.process(delete(ALICE, "1"))

        assert query.get_by_subject(PROJECT).claims == []
        attestations = query.get_attestations(alice_uri)
        assert attestations.target_status == TargetStatus.DELETED
        assert attestations.target.deleted
        assert len(attestations.attestations) == 1

    def test_tombstoned_source_not_counted(self, pipeline, query, store):
        alice_uri = uri(ALICE, "1")
        pipeline.process(create(BOB, "1", claim_record(alice_uri, "endorsement")))
        pipeline.process(delete(BOB, "1"))
        assert query.get_trust_score(alice_uri).endorsement_count == 0
        assert len(store.list_edges_to(alice_uri)) == 1
        assert query.get_attestations(alice_uri).attestations == []
        assert len(query.get_attestations(alice_uri, include_deleted=True).attestations) == 1


class TestVerification:
    """Embedded proofs, verified inline (verify_workers=0)."""

    def test_signed_claim_valid(self, pipeline, store):
        record, signer = signed_record(PROJECT)
        result = pipeline.process(create(ALICE, "1", record))
        assert result.verification_dispatched

        claim = store.get_claim(uri(ALICE, "1"))
        assert claim.verdict == Verdict.VALID
        assert claim.proof_valid is True
        assert claim.signer == signer
        assert claim.signer_source == "proof"
        assert claim.has_proof
        assert claim.proof_type == "Ed25519Signature2020"

    @pytest.mark.parametrize("scheme", ["EcdsaSecp256r1Signature2019", "EcdsaSecp256k1Signature2019"])
    def test_ecdsa_claim_valid(self, pipeline, store, scheme):
        record, _ = signed_record(PROJECT, scheme=scheme)
        pipeline.process(create(ALICE, "1", record))
        assert store.get_claim(uri(ALICE, "1")).verdict == Verdict.VALID

    def test_tampered_claim_invalid(self, pipeline, store):
        record, _ = signed_record(PROJECT, statement="original")
        record["statement"] = "tampered"
        pipeline.process(create(ALICE, "1", record))
        claim = store.get_claim(uri(ALICE, "1"))
        assert claim.verdict == Verdict.INVALID
        assert claim.proof_valid is False

    def test_unknown_scheme_unverifiable(self, pipeline, query):
        record = claim_record(PROJECT, embeddedProof={
            "type": "UnknownScheme2099",
            "verificationMethod": f"{CAROL}#key-1",
            "proofValue": "zabc",
        })
        result = pipeline.process(create(ALICE, "1", record))
        assert result.outcome == IngestOutcome.INDEXED

        page = query.get_by_subject(PROJECT)
        assert [c.uri for c in page.claims] == [uri(ALICE, "1")]
        claim = page.claims[0]
        assert claim.verdict == Verdict.UNVERIFIABLE
        assert claim.proof_valid is None
        assert claim.signer == CAROL

    def test_duplicate_not_reverified(self, pipeline):
        record, _ = signed_record(PROJECT)
        assert pipeline.process(create(ALICE, "1", record)).verification_dispatched
        assert not pipeline.process(create(ALICE, "1", record)).verification_dispatched


class TestConcurrency:
    """submit() ordering and asynchronous verification."""

    def test_per_locator_order(self, pipeline, store):
        events = []
        for i in range(20):
            events.append(create(ALICE, str(i), claim_record(PROJECT, statement=str(i))))
            events.append(delete(ALICE, str(i)))
            events.append(create(ALICE, str(i), claim_record(PROJECT, statement=f"{i}-again")))

        futures = pipeline.consume(events)
        assert pipeline.wait_idle(timeout=10)
        assert all(f.done() for f in futures)

        for i in range(20):
            claim = store.get_claim(uri(ALICE, str(i)))
            assert claim.record["statement"] == f"{i}-again"
            assert not claim.deleted

    def test_shard_is_stable(self, pipeline):
        assert pipeline.shard_for(uri(ALICE, "1")) == pipeline.shard_for(uri(ALICE, "1"))
        assert 0 <= pipeline.shard_for(uri(BOB, "9")) < pipeline.config.shards

    def test_malformed_submit_resolves_to_dropped(self, pipeline):
        assert pipeline.submit({"nonsense": True}).result(timeout=5).outcome == IngestOutcome.DROPPED

    def test_slow_resolution_does_not_block_ingestion(self, store):
        """The claim is visible before its verdict; other claims are not held up."""
        gate = threading.Event()
        slow_method = f"{CAROL}#slow"
        private_key, public_method = Signer.generate_keypair()
        did_key = DidKeyResolver()

        def raw_resolve(identity):
            if identity == slow_method:
                gate.wait(timeout=10)
                return did_key(public_method)
            return did_key(identity)

        resolver = IdentityResolverCache(raw_resolve, ResolverConfig(retries=0, timeout=30))
        pipeline = IngestionPipeline(store, ProofVerifier(resolver), IngestConfig(shards=2, verify_workers=2))
        try:
            record = Signer.sign_record(claim_record(PROJECT), private_key, slow_method)
            first = pipeline.submit(create(ALICE, "slow", record)).result(timeout=5)
            assert first.verification_dispatched

            claim = store.get_claim(uri(ALICE, "slow"))
            assert claim is not None
            assert claim.verification_status == VerificationStatus.PENDING
            assert pipeline.pending_verifications == 1

            other = pipeline.submit(create(BOB, "fast", claim_record(PROJECT))).result(timeout=5)
            assert other.outcome == IngestOutcome.INDEXED
            assert pipeline.wait_idle(timeout=0.1) is False

            gate.set()
            assert pipeline.wait_idle(timeout=10)
            assert store.get_claim(uri(ALICE, "slow")).verdict == Verdict.VALID
            assert pipeline.pending_verifications == 0
        finally:
            gate.set()
            pipeline.close()


class TestHalting:
    """Storage failure halts ingestion."""

    def test_store_failure_halts(self, verifier):
        store = FailingStore()
        pipeline = IngestionPipeline(store, verifier, IngestConfig(shards=1, verify_workers=0))
        try:
            pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
            store.failing = True

            with pytest.raises(IngestionHalted):
                pipeline.process(create(ALICE, "2", claim_record(PROJECT)))
            assert pipeline.halted
            assert "disk full" in pipeline.halt_reason

            with pytest.raises(IngestionHalted):
                pipeline.submit(create(ALICE, "3", claim_record(PROJECT)))
            with pytest.raises(IngestionHalted):
                pipeline.process(delete(ALICE, "1"))

            health = check_health(store=store, pipeline=pipeline)
            assert not health.healthy
            assert health.checks["ingestion"]["halted"] is True
        finally:
            pipeline.close()

    def test_halt_surfaces_through_future(self, verifier):
        store = FailingStore()
        store.failing = True
        pipeline = IngestionPipeline(store, verifier, IngestConfig(shards=1, verify_workers=0))
        try:
            future = pipeline.submit(create(ALICE, "1", claim_record(PROJECT)))
            with pytest.raises(IngestionHalted):
                future.result(timeout=5)
            assert pipeline.halted
        finally:
            pipeline.close()


class TestReverify:
    """Re-verification after identity material changes."""

    @pytest.fixture
    def documents(self):
        return {}

    @pytest.fixture
    def plc_pipeline(self, store, documents):
        def fetch(did):
            if did not in documents:
                raise IdentityNotFound(did)
            return documents[did]

        resolver = IdentityResolverCache(DidKeyResolver(fetch), ResolverConfig(retries=0))
        pipeline = IngestionPipeline(store, ProofVerifier(resolver), IngestConfig(shards=1, verify_workers=0))
        yield pipeline
        pipeline.close()

    @staticmethod
    def _document(did: str, method: str) -> dict:
        return {
            "id": did,
            "verificationMethod": [{"id": "#atproto", "controller": did, "publicKeyMultibase": multikey_of(method)}],
        }

    def test_key_rotation(self, plc_pipeline, store, documents):
        old_private, old_method = Signer.generate_keypair()
        _, new_method = Signer.generate_keypair()
        documents[CAROL] = self._document(CAROL, old_method)

        record = Signer.sign_record(claim_record(PROJECT), old_private, f"{CAROL}#atproto")
        plc_pipeline.process(create(ALICE, "1", record))
        assert store.get_claim(uri(ALICE, "1")).verdict == Verdict.VALID

        # Key rotated; the cached key would still say VALID
        documents[CAROL] = self._document(CAROL, new_method)
        result = plc_pipeline.reverify(uri(ALICE, "1"))
        assert result.verdict == Verdict.INVALID
        assert store.get_claim(uri(ALICE, "1")).verdict == Verdict.INVALID

    def test_reverify_signer(self, plc_pipeline, store, documents):
        private, method = Signer.generate_keypair()
        documents[CAROL] = self._document(CAROL, method)
        for rkey in ("1", "2"):
            record = Signer.sign_record(claim_record(PROJECT, statement=rkey), private, f"{CAROL}#atproto")
            plc_pipeline.process(create(ALICE, rkey, record))
        plc_pipeline.process(create(ALICE, "3", claim_record(PROJECT)))

        del documents[CAROL]
        assert plc_pipeline.reverify_signer(CAROL) == 2
        assert store.get_claim(uri(ALICE, "1")).verdict == Verdict.UNVERIFIABLE
        assert store.get_claim(uri(ALICE, "2")).proof_valid is None

    def test_reverify_without_proof(self, plc_pipeline):
        plc_pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        assert plc_pipeline.reverify(uri(ALICE, "1")) is None
        assert plc_pipeline.reverify(uri(ALICE, "missing")) is None


class TestIncrementalTrustFollowsIngestion:
    """An incremental engine fed by store listeners matches the lazy one."""

    def test_counts_track_ingestion(self, pipeline, store):
        incremental = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        lazy = TrustGraphEngine(store, TrustPolicy())
        alice_uri = uri(ALICE, "1")

        pipeline.process(create(ALICE, "1", claim_record(PROJECT)))
        pipeline.process(create(BOB, "1", claim_record(alice_uri, "endorsement")))
        pipeline.process(create(CAROL, "1", claim_record(alice_uri, "dispute")))
        pipeline.process(delete(CAROL, "1"))

        assert incremental.trust_score(alice_uri) == lazy.trust_score(alice_uri)
        assert incremental.trust_score(alice_uri).endorsement_count == 1
        assert incremental.trust_score(alice_uri).dispute_count == 0

        query = QueryService(store, incremental, QueryLimits())
        assert query.get_trust_score(alice_uri).distinct_signer_count == 1

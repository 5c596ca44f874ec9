"""
Tests for the trust graph engine and the query service.
"""

import pytest

from claimview.core import Signer
from claimview.core.ingest import IngestConfig, IngestionPipeline
from claimview.core.query import QueryLimits, QueryService, TargetStatus
from claimview.core.trust import (
    DisputedSources,
    EdgeKind,
    TrustGraphEngine,
    TrustMode,
    TrustPolicy,
)
from claimview.schemas import Verdict

from factories import ALICE, BOB, CAROL, DAVE, PROJECT, claim_record, create, delete, signed_record, uri


A = uri(ALICE, "1")


def ingest(pipeline, *events):
    for event in events:
        pipeline.process(event)


@pytest.fixture
def mixed(pipeline):
    """
    A: alice's impact claim
    endorsed by bob, dave and carol (carol's endorsement later deleted),
    disputed by dave, and commented on by bob.
    bob's endorsement is itself disputed by carol.
    """
    ingest(
        pipeline,
        create(ALICE, "1", claim_record(PROJECT)),
        create(BOB, "e", claim_record(A, "endorsement")),
        create(DAVE, "e", claim_record(A, "Endorse")),
        create(CAROL, "e", claim_record(A, "endorsement")),
        create(DAVE, "d", claim_record(A, "dispute")),
        create(BOB, "c", claim_record(A, "comment")),
        create(CAROL, "d", claim_record(uri(BOB, "e"), "rebuttal")),
        delete(CAROL, "e"),
    )
    return pipeline


class TestTrustPolicy:
    """Test edge classification."""

    def test_classify_case_insensitive(self):
        policy = TrustPolicy()
        assert policy.classify("Endorsement") == EdgeKind.ENDORSEMENT
        assert policy.classify("VALIDATED") == EdgeKind.ENDORSEMENT
        assert policy.classify("refutation") == EdgeKind.DISPUTE
        assert policy.classify("impact") == EdgeKind.OTHER

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CLAIMVIEW_ENDORSEMENT_TYPES", "Vouch, +1")
        monkeypatch.setenv("CLAIMVIEW_DISPUTED_SOURCES", "EXCLUDE")
        monkeypatch.setenv("CLAIMVIEW_TRUST_MODE", "incremental")
        policy = TrustPolicy.from_env()
        assert policy.endorsement_types == frozenset({"vouch", "+1"})
        assert policy.disputed_sources == DisputedSources.EXCLUDE
        assert policy.mode == TrustMode.INCREMENTAL
        assert not policy.weighted


class TestTrustScore:
    """Test counts over the mixed fixture."""

    def test_counts(self, mixed, store):
        score = TrustGraphEngine(store, TrustPolicy()).trust_score(A)
        assert score.endorsement_count == 2          # bob, dave (carol's deleted)
        assert score.dispute_count == 1
        assert score.attestation_count == 4          # + bob's comment
        assert score.distinct_signer_count == 2      # bob, dave
        assert score.disputed_source_count == 1      # bob's endorsement
        assert score.weighted_score is None

    def test_exclude_disputed_sources(self, mixed, store):
        policy = TrustPolicy(disputed_sources=DisputedSources.EXCLUDE)
        score = TrustGraphEngine(store, policy).trust_score(A)
        assert score.endorsement_count == 1
        assert score.dispute_count == 1
        assert score.attestation_count == 3
        assert score.disputed_source_count == 0

    @pytest.mark.parametrize("policy", [
        TrustPolicy(),
        TrustPolicy(disputed_sources=DisputedSources.EXCLUDE),
        TrustPolicy(weighted=True),
    ])
    def test_lazy_equals_incremental(self, mixed, store, policy):
        """Both modes score identical edge sets identically."""
        lazy = TrustGraphEngine(store, policy)
        incremental = TrustGraphEngine(
            store,
            TrustPolicy(
                disputed_sources=policy.disputed_sources,
                weighted=policy.weighted,
                mode=TrustMode.INCREMENTAL,
            ),
        )
        for target in (A, uri(BOB, "e"), uri(CAROL, "e"), uri(ALICE, "unknown")):
            assert lazy.trust_score(target) == incremental.trust_score(target)

    def test_incremental_follows_later_events(self, mixed, store):
        engine = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        assert engine.trust_score(A).endorsement_count == 2

        ingest(mixed, delete(BOB, "e"), create(CAROL, "e2", claim_record(A, "attestation")))
        assert engine.trust_score(A).endorsement_count == 2     # dave, carol's new one
        assert engine.trust_score(A).disputed_source_count == 0

        assert engine.rebuild() == len([
            e for c in store.list_claims() for e in store.list_edges_from(c.uri)
        ])
        assert engine.trust_score(A) == TrustGraphEngine(store, TrustPolicy()).trust_score(A)

    def test_unknown_target(self, store):
        score = TrustGraphEngine(store, TrustPolicy()).trust_score(uri(ALICE, "none"))
        assert (score.endorsement_count, score.dispute_count, score.distinct_signer_count) == (0, 0, 0)

    def test_attestations_keep_deleted_edges(self, mixed, store):
        engine = TrustGraphEngine(store, TrustPolicy())
        assert len(engine.attestations_for(A)) == 5
        assert len(engine.live_edges_to(A)) == 4
        assert engine.is_disputed(uri(BOB, "e"))
        assert not engine.is_disputed(uri(DAVE, "e"))


class TestWeightedScore:
    """Test the optional weighted score."""

    def test_confidence_weights(self, pipeline, store):
        ingest(
            pipeline,
            create(BOB, "e", claim_record(A, "endorsement", confidence=0.5)),
            create(DAVE, "e", claim_record(A, "endorsement")),
            create(CAROL, "d", claim_record(A, "dispute", confidence=0.25)),
            create(CAROL, "c", claim_record(A, "comment", confidence=1.0)),
        )
        score = TrustGraphEngine(store, TrustPolicy(weighted=True)).trust_score(A)
        assert score.weighted_score == 1.25

    def test_invalid_proof_discounted(self, pipeline, store):
        valid, _ = signed_record(A, "endorsement")
        tampered, _ = signed_record(A, "endorsement", statement="original")
        tampered["statement"] = "changed"
        ingest(pipeline, create(BOB, "e", valid), create(DAVE, "e", tampered))

        discounted = TrustGraphEngine(store, TrustPolicy(weighted=True)).trust_score(A)
        assert discounted.endorsement_count == 1
        assert discounted.weighted_score == 1.0

        counted = TrustGraphEngine(store, TrustPolicy(weighted=True, discount_invalid_proofs=False)).trust_score(A)
        assert counted.endorsement_count == 2
        assert counted.weighted_score == 2.0


def forged_endorsement(victim_method: str) -> dict:
    """An endorsement naming the victim's key but signed with another one."""
    forger_key, _ = Signer.generate_keypair()
    return Signer.sign_record(claim_record(A, "endorsement"), forger_key, victim_method)


class TestInvalidProofs:
    """Sources whose proof fails verification do not count."""

    @pytest.fixture
    def victim(self):
        _, method = Signer.generate_keypair()
        return method

    @pytest.mark.parametrize("mode", [TrustMode.LAZY, TrustMode.INCREMENTAL])
    def test_forged_endorsements_not_counted(self, pipeline, store, victim, mode):
        engine = TrustGraphEngine(store, TrustPolicy(mode=mode))
        ingest(
            pipeline,
            create(ALICE, "1", claim_record(PROJECT)),
            *[create(BOB, f"e{i}", forged_endorsement(victim)) for i in range(3)],
        )
        for i in range(3):
            assert store.get_claim(uri(BOB, f"e{i}")).verdict == Verdict.INVALID

        score = engine.trust_score(A)
        assert score.endorsement_count == 0
        assert score.distinct_signer_count == 0
        assert score.attestation_count == 0

        undiscounted = TrustGraphEngine(store, TrustPolicy(mode=mode, discount_invalid_proofs=False))
        score = undiscounted.trust_score(A)
        assert score.endorsement_count == 3
        assert score.distinct_signer_count == 1

    def test_forged_dispute_does_not_mark_source_disputed(self, pipeline, store, victim):
        forger_key, _ = Signer.generate_keypair()
        forged = Signer.sign_record(claim_record(uri(BOB, "e"), "dispute"), forger_key, victim)
        ingest(
            pipeline,
            create(BOB, "e", claim_record(A, "endorsement")),
            create(CAROL, "d", forged),
        )
        lazy = TrustGraphEngine(store, TrustPolicy())
        incremental = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        assert not lazy.is_disputed(uri(BOB, "e"))
        assert not incremental.is_disputed(uri(BOB, "e"))
        assert lazy.trust_score(A) == incremental.trust_score(A)
        assert lazy.trust_score(A).disputed_source_count == 0

    def test_incremental_follows_verdict_changes(self, pipeline, store, victim):
        engine = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        ingest(pipeline, create(BOB, "e", forged_endorsement(victim)))
        assert engine.trust_score(A).endorsement_count == 0

        forged = store.get_claim(uri(BOB, "e"))
        assert store.set_verdict(forged.uri, forged.digest, Verdict.VALID, "key rotated back")
        assert engine.trust_score(A).endorsement_count == 1
        assert engine.trust_score(A) == TrustGraphEngine(store, TrustPolicy()).trust_score(A)

        assert store.set_verdict(forged.uri, forged.digest, Verdict.INVALID, "signature mismatch")
        assert engine.trust_score(A).endorsement_count == 0

    def test_rebuild_loads_invalid_sources(self, pipeline, store, victim):
        ingest(pipeline, create(BOB, "e", forged_endorsement(victim)), create(DAVE, "e", claim_record(A, "endorsement")))
        engine = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        assert engine.trust_score(A).endorsement_count == 1
        assert engine.rebuild() == 2
        assert engine.trust_score(A) == TrustGraphEngine(store, TrustPolicy()).trust_score(A)

    def test_revival_clears_invalid_verdict(self, pipeline, store, victim):
        engine = TrustGraphEngine(store, TrustPolicy(mode=TrustMode.INCREMENTAL))
        ingest(
            pipeline,
            create(BOB, "e", forged_endorsement(victim)),
            delete(BOB, "e"),
            create(BOB, "e", claim_record(A, "endorsement", statement="honest this time")),
        )
        assert store.get_claim(uri(BOB, "e")).verdict != Verdict.INVALID
        assert engine.trust_score(A).endorsement_count == 1


class TestQueryLookups:
    """Test point lookups and scans."""

    def test_get_claim_by_uri_or_digest(self, pipeline, query):
        ingest(pipeline, create(ALICE, "1", claim_record(PROJECT)))
        claim = query.get_claim(uri=A)
        assert query.get_claim(digest=claim.digest) == claim
        assert query.get_claim(uri=uri(ALICE, "none")) is None
        with pytest.raises(ValueError):
            query.get_claim()

    def test_target_status(self, mixed, query, pipeline):
        ingest(pipeline, delete(ALICE, "pending"))
        assert query.target_status(A)[0] == TargetStatus.ACTIVE
        assert query.target_status(uri(CAROL, "e"))[0] == TargetStatus.DELETED
        assert query.target_status(uri(ALICE, "pending")) == (TargetStatus.DELETED, None)
        assert query.target_status(uri(ALICE, "none")) == (TargetStatus.UNKNOWN, None)

        ingest(pipeline, create(BOB, "r", claim_record(uri(ALICE, "elsewhere"), "endorsement")))
        assert query.target_status(uri(ALICE, "elsewhere")) == (TargetStatus.REFERENCED, None)

    def test_get_by_signer(self, mixed, query):
        page = query.get_by_signer(BOB)
        assert [c.uri for c in page.claims] == [uri(BOB, "e"), uri(BOB, "c")]
        assert [c.uri for c in query.get_by_signer(BOB, claim_type="comment").claims] == [uri(BOB, "c")]

        assert query.get_by_signer(CAROL).claims == [query.get_claim(uri=uri(CAROL, "d"))]
        assert len(query.get_by_signer(CAROL, include_deleted=True).claims) == 2

    def test_signed_claims_listed_under_proof_signer(self, pipeline, query):
        record, signer = signed_record(PROJECT)
        ingest(pipeline, create(ALICE, "1", record))
        assert [c.uri for c in query.get_by_signer(signer).claims] == [A]
        assert query.get_by_signer(ALICE).claims == []

    def test_pagination(self, pipeline, query):
        ingest(pipeline, *[create(ALICE, str(i), claim_record(PROJECT, statement=str(i))) for i in range(7)])

        seen, cursor = [], None
        while True:
            page = query.get_by_subject(PROJECT, limit=3, cursor=cursor)
            seen.extend(c.record["statement"] for c in page.claims)
            if page.cursor is None:
                break
            cursor = page.cursor
        assert seen == [str(i) for i in range(7)]

    def test_exact_page_has_no_cursor(self, pipeline, query):
        ingest(pipeline, *[create(ALICE, str(i), claim_record(PROJECT)) for i in range(3)])
        assert query.get_by_subject(PROJECT, limit=3).cursor is None

    def test_bad_cursor(self, query):
        with pytest.raises(ValueError):
            query.get_by_subject(PROJECT, cursor="not-a-number")

    def test_limit_clamped(self, pipeline, query):
        ingest(pipeline, *[create(ALICE, str(i), claim_record(PROJECT)) for i in range(3)])
        assert len(query.get_by_subject(PROJECT, limit=0).claims) == 1
        assert query.limits.clamp_limit(10_000) == 100


class TestTrustGraph:
    """Test bounded traversal."""

    def test_cycle_terminates(self, pipeline, query):
        a, b = uri(ALICE, "a"), uri(BOB, "b")
        ingest(
            pipeline,
            create(ALICE, "a", claim_record(b, "endorsement")),
            create(BOB, "b", claim_record(a, "endorsement")),
        )
        graph = query.get_trust_graph(a, depth=5)
        assert [(g.edge.source_uri, g.depth) for g in graph.direct] == [(b, 1)]
        assert [(g.edge.source_uri, g.depth) for g in graph.transitive] == [(a, 2)]
        assert graph.visited == 2
        assert not graph.truncated

    def test_chain_depths(self, pipeline, query):
        ingest(
            pipeline,
            create(ALICE, "1", claim_record(PROJECT)),
            create(BOB, "1", claim_record(A, "endorsement")),
            create(CAROL, "1", claim_record(uri(BOB, "1"), "endorsement")),
            create(DAVE, "1", claim_record(uri(CAROL, "1"), "dispute")),
        )
        graph = query.get_trust_graph(A, depth=2)
        assert [g.edge.source_uri for g in graph.direct] == [uri(BOB, "1")]
        assert [g.edge.source_uri for g in graph.transitive] == [uri(CAROL, "1")]

        full = query.get_trust_graph(A, depth=3)
        assert [(g.edge.signer, g.depth) for g in full.transitive] == [(CAROL, 2), (DAVE, 3)]

    def test_default_depth_is_direct_only(self, mixed, query):
        graph = query.get_trust_graph(A)
        assert graph.depth == 1
        assert len(graph.direct) == 5
        assert graph.transitive == []

    def test_depth_clamped(self, mixed, query):
        assert query.get_trust_graph(A, depth=50).depth == 5
        assert query.get_trust_graph(A, depth=-3).depth == 1

    def test_deleted_flags(self, mixed, query):
        graph = query.get_trust_graph(A)
        by_source = {g.edge.source_uri: g for g in graph.direct}
        assert by_source[uri(CAROL, "e")].source_deleted
        assert not by_source[uri(BOB, "e")].source_deleted
        assert not by_source[uri(BOB, "e")].target_deleted

    def test_fanout_cap(self, pipeline, store, trust):
        ingest(pipeline, *[create(f"did:plc:u{i}", "e", claim_record(A, "endorsement")) for i in range(5)])
        query = QueryService(store, trust, QueryLimits(max_fanout=3))
        graph = query.get_trust_graph(A)
        assert len(graph.direct) == 3
        assert graph.truncated

    def test_node_cap(self, pipeline, store, trust):
        ingest(pipeline, *[create(f"did:plc:u{i}", "e", claim_record(A, "endorsement")) for i in range(5)])
        query = QueryService(store, trust, QueryLimits(max_nodes=3))
        graph = query.get_trust_graph(A, depth=3)
        assert graph.visited == 3
        assert len(graph.direct) == 2
        assert graph.truncated

    def test_attestations_keep_displaced_versions(self, pipeline, query):
        ingest(
            pipeline,
            create(ALICE, "1", claim_record(PROJECT)),
            create(BOB, "e", claim_record(A, "endorsement")),
            delete(BOB, "e"),
            create(BOB, "e", claim_record(uri(ALICE, "2"), "endorsement")),
            create(DAVE, "e", claim_record(A, "endorsement")),
        )
        assert [a.edge.source_uri for a in query.get_attestations(A).attestations] == [uri(DAVE, "e")]

        history = query.get_attestations(A, include_deleted=True).attestations
        assert [a.edge.source_uri for a in history] == [uri(BOB, "e"), uri(DAVE, "e")]
        assert history[0].source_deleted
        assert history[0].claim.subject == A
        assert query.get_trust_score(A).endorsement_count == 1

    def test_attestations_for_unknown_target(self, query):
        result = query.get_attestations(uri(ALICE, "nothing"))
        assert result.target_status == TargetStatus.UNKNOWN
        assert result.attestations == []


class TestSharedPipelineConfig:
    """Shard count does not change results."""

    @pytest.mark.parametrize("shards", [1, 3])
    def test_scores_independent_of_shards(self, store, verifier, shards):
        pipeline = IngestionPipeline(store, verifier, IngestConfig(shards=shards, verify_workers=0))
        try:
            pipeline.consume([
                create(ALICE, "1", claim_record(PROJECT)),
                create(BOB, "e", claim_record(A, "endorsement")),
                create(CAROL, "e", claim_record(A, "endorsement")),
                create(DAVE, "d", claim_record(A, "dispute")),
            ])
            assert pipeline.wait_idle(timeout=10)
        finally:
            pipeline.close()

        score = TrustGraphEngine(store, TrustPolicy()).trust_score(A)
        assert (score.endorsement_count, score.dispute_count, score.distinct_signer_count) == (2, 1, 3)

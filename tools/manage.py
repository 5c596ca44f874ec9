#!/usr/bin/env python3
"""
claimview Management CLI

Commands for operating the indexer:
- init-db: Create the PostgreSQL tables
- ingest: Replay a JSON-lines change stream into the configured store
- trust-score: Print the trust score of a claim
- trust-graph: Print the attestation graph around a claim
- generate-keypair: Generate a dev signing key and its did:key method
- sign-record: Attach an embeddedProof to a claim record
- verify-record: Check a record's digest and embeddedProof offline (did:key only)
- health-check: Check store connectivity and row counts

With the in-memory store nothing persists between commands; pass
--events to trust-score / trust-graph to replay a stream first.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage ingest events.jsonl
    python -m tools.manage trust-score at://did:plc:alice/com.linkedclaims.claim/1 --events events.jsonl
    python -m tools.manage generate-keypair --scheme EcdsaSecp256r1Signature2019
"""

import argparse
import json
import sys
from collections import Counter
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _ingest_file(indexer, path: str) -> Counter:
    """Submit every envelope in a JSON-lines file and wait for the results."""
    from claimview.core.stream import parse_lines

    outcomes = Counter()
    futures = []
    with open(path, "r", encoding="utf-8") as f:
        for envelope in parse_lines(f):
            if envelope is None:
                outcomes["malformed"] += 1
                continue
            futures.append(indexer.pipeline.submit(envelope))

    for future in futures:
        outcomes[future.result().outcome.value] += 1
    indexer.pipeline.wait_idle()
    return outcomes


def _load_indexer(args):
    from claimview.shared import create_indexer

    indexer = create_indexer()
    if getattr(args, "events", None):
        _ingest_file(indexer, args.events)
    return indexer


def cmd_init_db(args):
    """Create the derived store tables."""
    from claimview.db.config import StoreDriver, get_store_driver
    from claimview.shared import create_store

    if get_store_driver() == StoreDriver.MEMORY:
        print("No database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    create_store()
    print("Schema created (claims, claim_archive, claim_sources, claim_edges, pending_tombstones)")
    return 0


def cmd_ingest(args):
    """Replay a change stream file."""
    from claimview.core.ingest import IngestionHalted

    indexer = _load_indexer(argparse.Namespace())
    try:
        print(f"Ingesting {args.file}...")
        outcomes = _ingest_file(indexer, args.file)
    except IngestionHalted as e:
        print(f"[FAIL] {e}")
        return 1
    finally:
        indexer.close()

    print("\nIngest complete!")
    for outcome, count in sorted(outcomes.items()):
        print(f"  {outcome}: {count}")

    counts = indexer.store.counts()
    print(f"\n  Claims: {counts['claims']} ({counts['tombstoned_claims']} tombstoned)")
    print(f"  Edges: {counts['edges']}")
    print(f"  Pending tombstones: {counts['pending_tombstones']}")
    return 0


def cmd_trust_score(args):
    """Print the trust score of a claim."""
    indexer = _load_indexer(args)
    try:
        score = indexer.query.get_trust_score(args.uri)
        status, _ = indexer.query.target_status(args.uri)
    finally:
        indexer.close()

    print(f"Claim: {args.uri} ({status.value})")
    print(f"  Endorsements: {score.endorsement_count}")
    print(f"  Disputes: {score.dispute_count}")
    print(f"  Distinct signers: {score.distinct_signer_count}")
    print(f"  Disputed attestations: {score.disputed_source_count}")
    if score.weighted_score is not None:
        print(f"  Weighted score: {score.weighted_score}")
    return 0


def cmd_trust_graph(args):
    """Print the attestation graph around a claim."""
    indexer = _load_indexer(args)
    try:
        graph = indexer.query.get_trust_graph(args.uri, depth=args.depth)
    finally:
        indexer.close()

    print(f"Root: {graph.root} (depth {graph.depth}, {graph.visited} nodes)")
    for item in graph.direct + graph.transitive:
        flags = []
        if item.source_deleted:
            flags.append("source deleted")
        if item.target_deleted:
            flags.append("target deleted")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        indent = "  " * item.depth
        print(f"{indent}{item.edge.source_uri} --{item.edge.claim_type}--> {item.edge.target_uri}{suffix}")
    if graph.truncated:
        print("[WARN] Result truncated by traversal limits")
    return 0


def cmd_generate_keypair(args):
    """Generate a dev keypair."""
    from claimview.core.signer import Signer

    private_key, verification_method = Signer.generate_keypair(args.scheme)
    print(f"Scheme:              {args.scheme}")
    print(f"Private key:         {private_key}")
    print(f"Verification method: {verification_method}")
    print("\n[WARN] Development key. Keep the private key out of version control.")
    return 0


def cmd_sign_record(args):
    """Attach an embeddedProof to a claim record."""
    from claimview.core.signer import Signer

    with open(args.file, "r", encoding="utf-8") as f:
        record = json.load(f)

    signed = Signer.sign_record(record, args.private_key, args.verification_method, args.scheme)
    output = json.dumps(signed, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
        print(f"Signed record written to {args.output}")
    else:
        print(output)
    return 0


def cmd_verify_record(args):
    """
    Verify a record's embeddedProof without network access.

    Exit codes: 0 valid, 1 invalid, 2 unverifiable, 3 malformed record,
    4 content does not match --digest
    """
    from pydantic import ValidationError

    from claimview.core.hasher import Hasher
    from claimview.core.proofs import ProofVerifier
    from claimview.core.resolver import DidKeyResolver, IdentityResolverCache, ResolverConfig
    from claimview.schemas import Claim, Verdict

    with open(args.file, "r", encoding="utf-8") as f:
        record = json.load(f)

    try:
        claim = Claim.from_record(record)
    except ValidationError as e:
        print(f"[FAIL] Not a claim record: {e.error_count()} error(s)")
        return 3

    canonical = Hasher.canonicalize(record)
    print(f"Digest: {Hasher.digest_bytes(canonical)}")
    if args.digest and not Hasher.verify_digest(record, args.digest):
        print(f"[FAIL] Content does not match digest {args.digest}")
        return 4

    if claim.embedded_proof is None:
        print("No embeddedProof: the repository owner is the signer")
        return 0

    verifier = ProofVerifier(IdentityResolverCache(DidKeyResolver(), ResolverConfig(retries=0)))
    result = verifier.verify(canonical, claim.embedded_proof)
    print(f"Signer: {claim.embedded_proof.controller}")
    print(f"Verdict: {result.verdict.value} ({result.reason})")
    return {Verdict.VALID: 0, Verdict.INVALID: 1, Verdict.UNVERIFIABLE: 2}[result.verdict]


def cmd_health_check(args):
    """Run health checks."""
    from claimview.db.config import DatabaseConfig, StoreDriver, get_store_driver
    from claimview.db.store import StoreError
    from claimview.shared import create_store

    print("=== claimview Health Check ===\n")

    driver = get_store_driver()
    print("Database:")
    if driver == StoreDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        config = DatabaseConfig.from_env()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")

    try:
        counts = create_store().counts()
    except StoreError as e:
        print(f"  Status: [FAIL] {e}")
        return 1
    print("  Status: [OK] Connected")

    print("\nIndex:")
    for key, value in counts.items():
        print(f"  {key}: {value}")

    print("\n=== Health Check Complete ===")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="claimview Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the PostgreSQL tables")

    p_ingest = subparsers.add_parser("ingest", help="Replay a JSON-lines change stream")
    p_ingest.add_argument("file", help="Change stream file (one envelope per line)")

    p_score = subparsers.add_parser("trust-score", help="Print the trust score of a claim")
    p_score.add_argument("uri", help="Claim locator (at://...)")
    p_score.add_argument("--events", help="Replay this stream into the index first")

    p_graph = subparsers.add_parser("trust-graph", help="Print the attestation graph of a claim")
    p_graph.add_argument("uri", help="Claim locator (at://...)")
    p_graph.add_argument("--depth", type=int, default=1, help="Traversal depth (default: 1)")
    p_graph.add_argument("--events", help="Replay this stream into the index first")

    p_keys = subparsers.add_parser("generate-keypair", help="Generate a dev signing key")
    p_keys.add_argument(
        "--scheme",
        default="Ed25519Signature2020",
        help="Proof type (Ed25519Signature2020, EcdsaSecp256r1Signature2019, EcdsaSecp256k1Signature2019)",
    )

    p_sign = subparsers.add_parser("sign-record", help="Attach an embeddedProof to a record")
    p_sign.add_argument("file", help="Claim record JSON file")
    p_sign.add_argument("--private-key", required=True, help="Base64 private key from generate-keypair")
    p_sign.add_argument("--verification-method", required=True, help="did:key verification method")
    p_sign.add_argument("--scheme", default="Ed25519Signature2020", help="Proof type")
    p_sign.add_argument("--output", "-o", help="Output file (default: stdout)")

    p_verify = subparsers.add_parser("verify-record", help="Verify a record's embeddedProof offline")
    p_verify.add_argument("file", help="Claim record JSON file")
    p_verify.add_argument("--digest", help="Expected content digest (e.g. from getClaim)")

    subparsers.add_parser("health-check", help="Check store connectivity and row counts")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "ingest": cmd_ingest,
        "trust-score": cmd_trust_score,
        "trust-graph": cmd_trust_graph,
        "generate-keypair": cmd_generate_keypair,
        "sign-record": cmd_sign_record,
        "verify-record": cmd_verify_record,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())

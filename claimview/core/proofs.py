"""
Embedded Proof Verification

Checks a claim's embeddedProof against its canonical bytes.

The set of proof schemes is open: new signature types show up after
deployment. Schemes are registered by their proof `type` tag; a tag with
no registered scheme is UNVERIFIABLE, never an error.

VERDICTS:
- VALID:        signature checks out against the resolved key
- INVALID:      signature is malformed or does not match
- UNVERIFIABLE: unknown scheme, unresolved identity, or a key of the
                wrong type for the scheme

verify() never raises. A bad proof must not stop ingestion.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from ..observability import get_logger
from ..schemas import EmbeddedProof, Verdict
from .encoding import KEY_ED25519, KEY_P256, KEY_SECP256K1, EncodingError, decode_signature
from .resolver import IdentityResolverCache, KeyMaterial


logger = get_logger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one proof check."""
    verdict: Verdict
    reason: str

    @classmethod
    def valid(cls) -> "VerificationResult":
        return cls(Verdict.VALID, "signature verified")

    @classmethod
    def invalid(cls, reason: str) -> "VerificationResult":
        return cls(Verdict.INVALID, reason)

    @classmethod
    def unverifiable(cls, reason: str) -> "VerificationResult":
        return cls(Verdict.UNVERIFIABLE, reason)


# ============================================================
# SCHEMES
# ============================================================

class ProofScheme(ABC):
    """A signature scheme a proof type maps to."""

    # Key type this scheme verifies with
    key_type: str = ""

    @abstractmethod
    def check(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        """
        Check a signature.

        Returns:
            True if valid, False if the signature does not match

        Raises:
            ValueError: If key or signature bytes are malformed
        """
        pass


class Ed25519Scheme(ProofScheme):
    """Ed25519 over the canonical bytes (PyNaCl)."""

    key_type = KEY_ED25519

    def check(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        if len(signature) != 64:
            raise ValueError(f"Ed25519 signature must be 64 bytes, got {len(signature)}")
        try:
            VerifyKey(public_key).verify(message, signature)
            return True
        except BadSignatureError:
            return False


class EcdsaScheme(ProofScheme):
    """
    ECDSA with SHA-256 over the canonical bytes (cryptography).

    Signatures may be raw r||s (64 bytes) or DER.
    Public keys are SEC1 points, compressed or not.
    """

    def __init__(self, key_type: str, curve: ec.EllipticCurve):
        self.key_type = key_type
        self._curve = curve

    def check(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        key = ec.EllipticCurvePublicKey.from_encoded_point(self._curve, public_key)
        if len(signature) == 64:
            r = int.from_bytes(signature[:32], "big")
            s = int.from_bytes(signature[32:], "big")
            signature = encode_dss_signature(r, s)
        try:
            key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
            return True
        except InvalidSignature:
            return False


def default_schemes() -> Dict[str, ProofScheme]:
    """The schemes every verifier starts with."""
    ed25519 = Ed25519Scheme()
    return {
        "Ed25519Signature2020": ed25519,
        "Ed25519Signature2018": ed25519,
        "EcdsaSecp256r1Signature2019": EcdsaScheme(KEY_P256, ec.SECP256R1()),
        "EcdsaSecp256k1Signature2019": EcdsaScheme(KEY_SECP256K1, ec.SECP256K1()),
    }


# ============================================================
# VERIFIER
# ============================================================

class ProofVerifier:
    """
    Registry of proof schemes plus the identity cache they resolve keys from.

    Usage:
        verifier = ProofVerifier(resolver_cache)
        verifier.register("MyScheme2030", MyScheme())
        result = verifier.verify(Hasher.canonicalize(record), claim.embedded_proof)
    """

    def __init__(
        self,
        resolver: IdentityResolverCache,
        schemes: Optional[Dict[str, ProofScheme]] = None,
    ):
        self._resolver = resolver
        self._schemes = dict(default_schemes() if schemes is None else schemes)

    @property
    def resolver(self) -> IdentityResolverCache:
        return self._resolver

    def register(self, proof_type: str, scheme: ProofScheme) -> None:
        """Register (or replace) the scheme for a proof type tag."""
        self._schemes[proof_type] = scheme

    def supported_types(self) -> list[str]:
        return sorted(self._schemes)

    def verify(self, canonical: bytes, proof: EmbeddedProof) -> VerificationResult:
        """
        Verify a proof over canonical bytes.

        Args:
            canonical: Exactly the bytes Hasher.canonicalize() produced
            proof: The claim's embedded proof

        Returns:
            VerificationResult (never raises)
        """
        scheme = self._schemes.get(proof.type)
        if scheme is None:
            return VerificationResult.unverifiable(f"unknown proof type {proof.type}")

        try:
            key = self._resolver.resolve(proof.verification_method)
        except Exception as e:
            logger.exception(
                "Resolver raised unexpectedly",
                verification_method=proof.verification_method,
            )
            return VerificationResult.unverifiable(f"resolution error: {e}")

        if key is None:
            return VerificationResult.unverifiable(
                f"could not resolve {proof.verification_method}"
            )
        return self._check(scheme, canonical, proof, key)

    @staticmethod
    def _check(
        scheme: ProofScheme,
        canonical: bytes,
        proof: EmbeddedProof,
        key: KeyMaterial,
    ) -> VerificationResult:
        if key.key_type != scheme.key_type:
            return VerificationResult.unverifiable(
                f"{proof.type} needs a {scheme.key_type} key, "
                f"{proof.verification_method} is {key.key_type}"
            )

        try:
            signature = decode_signature(proof.proof_value)
        except EncodingError as e:
            return VerificationResult.invalid(f"malformed proofValue: {e}")

        try:
            ok = scheme.check(canonical, signature, key.public_key)
        except ValueError as e:
            return VerificationResult.invalid(f"malformed signature or key: {e}")

        if ok:
            return VerificationResult.valid()
        return VerificationResult.invalid("signature does not match content")

"""
Embedded Proof Signing

Produces key pairs and embeddedProof objects the verifier accepts.
Used by the management CLI (dev keys) and by tests; the indexer itself
never signs anything.

Keys are identified by did:key verification methods, so a signed claim
can be verified without any network resolution.
"""

import base64
from datetime import datetime, timezone
from typing import Any, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from nacl.signing import SigningKey

from .encoding import KEY_ED25519, KEY_P256, KEY_SECP256K1, encode_multikey, multibase_encode
from .hasher import Hasher


# proof type -> (key type, curve or None for Ed25519)
SCHEMES = {
    "Ed25519Signature2020": (KEY_ED25519, None),
    "EcdsaSecp256r1Signature2019": (KEY_P256, ec.SECP256R1),
    "EcdsaSecp256k1Signature2019": (KEY_SECP256K1, ec.SECP256K1),
}


class Signer:
    """
    Key generation and embedded-proof signing.

    Private keys are passed around base64-encoded (raw 32-byte seed for
    Ed25519, big-endian private scalar for ECDSA).
    """

    @staticmethod
    def did_key(key_type: str, public_key: bytes) -> str:
        """did:key identifier for a raw public key."""
        return f"did:key:{encode_multikey(key_type, public_key)}"

    @staticmethod
    def verification_method(key_type: str, public_key: bytes) -> str:
        """did:key verification method (did#fragment) for a raw public key."""
        multikey = encode_multikey(key_type, public_key)
        return f"did:key:{multikey}#{multikey}"

    @staticmethod
    def generate_keypair(proof_type: str = "Ed25519Signature2020") -> Tuple[str, str]:
        """
        Generate a new keypair for a proof scheme.

        Returns:
            Tuple of (private_key_b64, verification_method)
        """
        key_type, curve = Signer._scheme(proof_type)

        if curve is None:
            signing_key = SigningKey.generate()
            public_key = bytes(signing_key.verify_key)
            private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        else:
            private_key = ec.generate_private_key(curve())
            public_key = private_key.public_key().public_bytes(
                serialization.Encoding.X962,
                serialization.PublicFormat.CompressedPoint,
            )
            scalar = private_key.private_numbers().private_value
            private_b64 = base64.b64encode(scalar.to_bytes(32, "big")).decode("utf-8")

        return private_b64, Signer.verification_method(key_type, public_key)

    @staticmethod
    def sign(message: bytes, private_key_b64: str, proof_type: str = "Ed25519Signature2020") -> bytes:
        """
        Sign bytes.

        Returns:
            Raw signature (64 bytes; r||s for ECDSA)
        """
        key_type, curve = Signer._scheme(proof_type)
        private_bytes = base64.b64decode(private_key_b64)

        if curve is None:
            return SigningKey(private_bytes).sign(message).signature

        private_key = ec.derive_private_key(int.from_bytes(private_bytes, "big"), curve())
        der = private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    @staticmethod
    def sign_record(
        record: dict[str, Any],
        private_key_b64: str,
        verification_method: str,
        proof_type: str = "Ed25519Signature2020",
    ) -> dict[str, Any]:
        """
        Attach an embeddedProof to a claim record.

        The signature covers Hasher.canonicalize(record), which ignores any
        embeddedProof already on the record.

        Returns:
            A new record dict with embeddedProof set
        """
        signature = Signer.sign(Hasher.canonicalize(record), private_key_b64, proof_type)
        signed = dict(record)
        signed["embeddedProof"] = {
            "type": proof_type,
            "verificationMethod": verification_method,
            "proofPurpose": "assertionMethod",
            "proofValue": multibase_encode(signature),
            "created": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        return signed

    @staticmethod
    def _scheme(proof_type: str):
        try:
            return SCHEMES[proof_type]
        except KeyError:
            raise ValueError(
                f"Cannot sign with {proof_type}. "
                f"Supported: {', '.join(sorted(SCHEMES))}"
            )

"""
Key and signature encodings used by identity documents and proofs.

- base58btc (Bitcoin alphabet)
- multibase: z (base58btc), u (base64url, no padding), m (base64, no padding)
- multikey: multicodec-prefixed public keys (publicKeyMultibase, did:key)
"""

import base64
import binascii
from typing import Tuple


class EncodingError(ValueError):
    """Raised when an encoded key or signature cannot be decoded."""
    pass


# Key type names used throughout the verifier and resolver
KEY_ED25519 = "Ed25519"
KEY_P256 = "P-256"
KEY_SECP256K1 = "secp256k1"

# Multicodec varint prefixes for public keys
_MULTICODEC_PREFIXES = {
    KEY_ED25519: b"\xed\x01",
    KEY_SECP256K1: b"\xe7\x01",
    KEY_P256: b"\x80\x24",
}

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(_B58_ALPHABET)}


def b58encode(data: bytes) -> str:
    """Encode bytes as base58btc."""
    num = int.from_bytes(data, "big")
    out = []
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(out))


def b58decode(text: str) -> bytes:
    """Decode base58btc text."""
    num = 0
    for char in text:
        try:
            num = num * 58 + _B58_INDEX[char]
        except KeyError:
            raise EncodingError(f"invalid base58 character {char!r}")
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


def _b64_padded(text: str) -> str:
    return text + "=" * (-len(text) % 4)


def multibase_encode(data: bytes) -> str:
    """Encode bytes as base58btc multibase ('z' prefix)."""
    return "z" + b58encode(data)


def multibase_decode(text: str) -> bytes:
    """
    Decode a multibase string.

    Raises:
        EncodingError: Unknown prefix or malformed body
    """
    if not text:
        raise EncodingError("empty multibase string")
    prefix, body = text[0], text[1:]
    try:
        if prefix == "z":
            return b58decode(body)
        if prefix == "u":
            return base64.urlsafe_b64decode(_b64_padded(body))
        if prefix == "m":
            return base64.b64decode(_b64_padded(body), validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"malformed multibase body: {e}") from e
    raise EncodingError(f"unsupported multibase prefix {prefix!r}")


def decode_signature(value: str) -> bytes:
    """
    Decode a proofValue.

    Multibase is tried first (z / u / m prefixes); anything else is
    treated as standard base64.
    """
    if value and value[0] in "zum":
        try:
            return multibase_decode(value)
        except EncodingError:
            pass
    try:
        return base64.b64decode(_b64_padded(value), validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"undecodable signature value: {e}") from e


def encode_multikey(key_type: str, public_key: bytes) -> str:
    """Encode a raw public key as a multibase multikey."""
    try:
        prefix = _MULTICODEC_PREFIXES[key_type]
    except KeyError:
        raise EncodingError(f"unsupported key type {key_type}")
    return multibase_encode(prefix + public_key)


def decode_multikey(text: str) -> Tuple[str, bytes]:
    """
    Decode a multibase multikey.

    Returns:
        Tuple of (key_type, raw_public_key)
    """
    data = multibase_decode(text)
    for key_type, prefix in _MULTICODEC_PREFIXES.items():
        if data.startswith(prefix):
            return key_type, data[len(prefix):]
    raise EncodingError("unknown multicodec key prefix")

"""
Canonical Serialization and Content Digests

Produces the deterministic byte sequence for a claim record.
The same bytes are used for the content digest AND as the signed payload
of an embedded proof. If these two ever diverge, signatures stop meaning
anything about the content they address.

CANONICAL SERIALIZATION RULES:
1. Top-level "embeddedProof" is excluded entirely
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely (not serialized as null)
4. Empty strings, lists, dicts: preserved (they are valid data)
5. Integral floats: serialized as integers (1.0 -> 1)
6. Other floats: shortest round-trip representation
7. NaN / Infinity: rejected
8. Booleans: JSON true/false
9. Whitespace in strings: preserved
10. JSON output: no extra whitespace, ASCII only, UTF-8 bytes
11. Top-level: must be an object

Every record that parses as a Claim is canonicalizable: the record is
plain JSON data, and rule 7 is enforced at parse time.
"""

import hashlib
import json
import math
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and content hashing for claim records.

    IMMUTABLE CONTRACT:
    - Same logical record -> same bytes -> same digest
    - Field order never matters
    - The embedded proof never contributes to the digest
    """

    # Stored next to every digest so a future format change is detectable
    SERIALIZATION_VERSION = 1

    # Fields that are never part of the signed / addressed content
    EXCLUDED_FIELDS = frozenset({"embeddedProof"})

    # Largest integer a float can represent exactly
    _MAX_EXACT_FLOAT = 2 ** 53

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert a JSON value to its canonical form.

        Raises:
            CanonicalSerializationError: If value is outside the JSON data model
        """
        if value is None:
            return None  # Filtered out by _to_canonical_dict

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            return cls._serialize_float(value, path)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            dumped = value.model_dump(mode="json", by_alias=True, exclude_none=True)
            return cls._to_canonical_dict(dumped, path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Claim records must be plain JSON data."
        )

    @classmethod
    def _serialize_float(cls, value: float, path: str) -> Any:
        """
        Serialize a float deterministically.

        Integral values collapse to int so that 1 and 1.0 address the same
        content regardless of which JSON encoder produced the record.
        """
        if math.isnan(value) or math.isinf(value):
            raise CanonicalSerializationError(
                f"Cannot serialize non-finite number at {path}."
            )
        if value.is_integer() and abs(value) < cls._MAX_EXACT_FLOAT:
            return int(value)
        # repr() is the shortest string that round-trips to the same double
        return _RawNumber(repr(value))

    @classmethod
    def _to_canonical_dict(cls, data: dict, path: str = "") -> dict[str, Any]:
        """
        Convert a dict to canonical form.

        RULES:
        - Keys sorted (Unicode code point order)
        - None values omitted entirely
        - Empty strings, lists, dicts PRESERVED
        """
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, record: dict[str, Any] | Any) -> bytes:
        """
        Convert a claim record to its canonical byte sequence.

        This is THE critical function: both the digest and every
        embedded-proof signature are computed over its output.

        Args:
            record: Raw record dict (or a pydantic model of one)

        Returns:
            Canonical UTF-8 JSON bytes, embeddedProof excluded

        Raises:
            CanonicalSerializationError: If record is not a JSON object
        """
        if hasattr(record, "model_dump"):
            record = record.model_dump(mode="json", by_alias=True, exclude_none=True)

        if not isinstance(record, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(record).__name__}."
            )

        content = {
            key: value for key, value in record.items()
            if key not in cls.EXCLUDED_FIELDS
        }
        canonical = cls._to_canonical_dict(content)
        return _encode(canonical).encode("utf-8")

    @classmethod
    def digest(cls, record: dict[str, Any] | Any) -> str:
        """
        Content digest of a claim record.

        Returns:
            Hex-encoded SHA-256 of canonicalize(record) (64 chars, lowercase)
        """
        return cls.digest_bytes(cls.canonicalize(record))

    @staticmethod
    def digest_bytes(canonical: bytes) -> str:
        """Digest of bytes already produced by canonicalize()."""
        return hashlib.sha256(canonical).hexdigest()

    @classmethod
    def verify_digest(cls, record: dict[str, Any], expected: str) -> bool:
        """Check that a record still addresses to the expected digest."""
        try:
            return cls.digest(record) == expected.lower()
        except CanonicalSerializationError:
            return False


class _RawNumber(str):
    """Marker for a pre-rendered float literal."""
    pass


def _encode(value: Any) -> str:
    """
    Compact JSON encoder that writes _RawNumber literals verbatim.

    json.dumps would quote them as strings; everything else is delegated
    to it so escaping rules stay the standard ones.
    """
    if isinstance(value, _RawNumber):
        return str.__str__(value)
    if isinstance(value, dict):
        items = (
            f"{json.dumps(k, ensure_ascii=True)}:{_encode(v)}"
            for k, v in value.items()
        )
        return "{" + ",".join(items) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_encode(v) for v in value) + "]"
    return json.dumps(value, ensure_ascii=True, allow_nan=False)

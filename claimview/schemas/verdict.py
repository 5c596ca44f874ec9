"""
Verification outcomes for embedded proofs.
"""

from enum import Enum
from typing import Optional


class Verdict(str, Enum):
    """
    Tri-state outcome of proof verification.

    UNVERIFIABLE is not a failed check: it means the check could not be run
    (unknown scheme, unresolved identity, timeout). INVALID means it ran and
    the signature does not match.
    """
    VALID = "valid"
    INVALID = "invalid"
    UNVERIFIABLE = "unverifiable"


class VerificationStatus(str, Enum):
    """Where a claim is in verification."""
    NONE = "none"           # No embedded proof; repository signing applies
    PENDING = "pending"     # Proof present, verdict not yet applied
    VALID = "valid"
    INVALID = "invalid"
    UNVERIFIABLE = "unverifiable"

    @classmethod
    def from_verdict(cls, verdict: Optional[Verdict], has_proof: bool) -> "VerificationStatus":
        if not has_proof:
            return cls.NONE
        if verdict is None:
            return cls.PENDING
        return cls(verdict.value)


def proof_valid(verdict: Optional[Verdict]) -> Optional[bool]:
    """
    Boolean view of a verdict.

    Only a completed cryptographic check yields a boolean.
    Unverifiable, pending and proof-less claims are None, never False.
    """
    if verdict == Verdict.VALID:
        return True
    if verdict == Verdict.INVALID:
        return False
    return None

# Record and event schemas for the claim index.
# These define what the indexer accepts from the change stream.

from .claim import Claim, EmbeddedProof, Locator
from .evidence import HowKnown, Source
from .events import ChangeEvent, EventAction
from .verdict import Verdict, VerificationStatus, proof_valid

__all__ = [
    # Claim
    "Claim",
    "EmbeddedProof",
    "Locator",
    # Evidence
    "HowKnown",
    "Source",
    # Events
    "ChangeEvent",
    "EventAction",
    # Verification
    "Verdict",
    "VerificationStatus",
    "proof_valid",
]

"""
Evidence / Source Schema

The provenance sub-record attached to a claim.
It has no lifecycle of its own: it is indexed with its claim and
tombstoned with it.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HowKnown(str, Enum):
    """
    How the claimant came to know what they assert.
    """
    FIRST_HAND = "FIRST_HAND"               # Claimant observed it directly
    SECOND_HAND = "SECOND_HAND"             # Told by someone who observed it
    WEB_DOCUMENT = "WEB_DOCUMENT"           # Read it in a published document
    VERIFIED_LOGIN = "VERIFIED_LOGIN"       # Established by an authenticated session
    SIGNED_DOCUMENT = "SIGNED_DOCUMENT"     # Backed by a signed artifact
    BLOCKCHAIN = "BLOCKCHAIN"               # Read from a public ledger
    RESEARCH = "RESEARCH"                   # Result of the claimant's own research
    OPINION = "OPINION"                     # Judgement, not observation
    OTHER = "OTHER"


class Source(BaseModel):
    """
    Evidence for a claim.

    Rules:
    - At most one per claim
    - The evidence URI is required; everything else is optional
    - Identities (author, curator, observer) are stored as given, not resolved
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    uri: str = Field(
        ...,
        min_length=1,
        description="Where the evidence lives"
    )
    digest_multibase: Optional[str] = Field(
        default=None,
        alias="digestMultibase",
        description="Integrity digest of the evidence content"
    )
    how_known: Optional[HowKnown] = Field(
        default=None,
        alias="howKnown",
        description="Provenance category"
    )
    date_observed: Optional[str] = Field(
        default=None,
        alias="dateObserved",
        description="When the evidence was observed"
    )
    author: Optional[str] = Field(
        default=None,
        description="Who produced the evidence"
    )
    curator: Optional[str] = Field(
        default=None,
        description="Who selected or vouched for the evidence"
    )
    observer: Optional[str] = Field(
        default=None,
        description="Who witnessed the evidence, if different from the claimant"
    )

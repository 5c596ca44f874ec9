"""
Claim Record Schema

A Claim is an immutable, content-addressed assertion.
It lives at a locator (owner / collection / record key) and is identified
for all time by the digest of its content.

Nothing here is "edited". A revised claim is a new record.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .evidence import Source


# at://{owner}/{collection}/{recordKey} and nothing after it
_LOCATOR_RE = re.compile(
    r"^at://(?P<owner>[^/\s?#]+)/(?P<collection>[a-zA-Z][a-zA-Z0-9-]*(?:\.[a-zA-Z0-9-]+)+)"
    r"/(?P<record_key>[A-Za-z0-9._:~-]+)$"
)

_URI_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:\S+$")


@dataclass(frozen=True)
class Locator:
    """
    Stable address of a record slot.

    A locator may be reused after a delete; it is never reused for a
    different content while the previous content is live.
    """
    owner: str
    collection: str
    record_key: str

    @classmethod
    def parse(cls, uri: str) -> Optional["Locator"]:
        """Parse an at:// URI. Returns None if uri is not a record locator."""
        if not isinstance(uri, str):
            return None
        match = _LOCATOR_RE.match(uri.strip())
        if not match:
            return None
        return cls(
            owner=match.group("owner"),
            collection=match.group("collection"),
            record_key=match.group("record_key"),
        )

    @property
    def uri(self) -> str:
        return f"at://{self.owner}/{self.collection}/{self.record_key}"

    def __str__(self) -> str:
        return self.uri


class EmbeddedProof(BaseModel):
    """
    A signature produced outside the hosting repository's own signing.

    The signed payload is the claim's canonical bytes (embeddedProof excluded).
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(
        ...,
        min_length=1,
        description="Proof scheme tag, e.g. Ed25519Signature2020"
    )
    verification_method: str = Field(
        ...,
        min_length=1,
        alias="verificationMethod",
        description="Identity whose key produced the signature (did[#fragment])"
    )
    proof_value: str = Field(
        ...,
        min_length=1,
        alias="proofValue",
        description="Encoded signature (multibase or base64)"
    )
    proof_purpose: Optional[str] = Field(
        default=None,
        alias="proofPurpose",
    )
    created: Optional[str] = None

    @property
    def controller(self) -> str:
        """The identity part of the verification method (fragment stripped)."""
        return self.verification_method.split("#", 1)[0]


class Claim(BaseModel):
    """
    The atomic unit of the index.

    The subject may be any URI, including the locator of another claim;
    that is how claims-about-claims (endorsements, disputes) are expressed.
    Unknown fields are retained: they are content and they are digested.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        json_schema_extra={
            "example": {
                "$type": "com.linkedclaims.claim",
                "subject": "https://ngo.example/project",
                "claimType": "impact",
                "statement": "Planted 1,200 trees along the river bank in 2024",
                "source": {
                    "uri": "https://ngo.example/reports/2024.pdf",
                    "howKnown": "FIRST_HAND",
                },
                "confidence": 0.9,
                "createdAt": "2025-01-15T10:30:00Z",
            }
        },
    )

    subject: str = Field(
        ...,
        description="URI the claim is about"
    )
    claim_type: str = Field(
        ...,
        min_length=1,
        alias="claimType",
        description="Open vocabulary: impact, endorsement, dispute, ..."
    )
    object: Optional[str] = None
    statement: Optional[str] = None
    source: Optional[Source] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    effective_date: Optional[datetime] = Field(default=None, alias="effectiveDate")
    confidence: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        allow_inf_nan=False,
    )
    stars: Optional[int] = Field(default=None, ge=1, le=5)
    embedded_proof: Optional[EmbeddedProof] = Field(
        default=None,
        alias="embeddedProof",
    )

    @field_validator("subject")
    @classmethod
    def subject_is_uri(cls, v: str) -> str:
        if not _URI_SCHEME_RE.match(v):
            raise ValueError("subject must be a URI")
        return v

    @property
    def subject_locator(self) -> Optional[Locator]:
        """The claim locator this claim is about, if its subject is one."""
        return Locator.parse(self.subject)

    @classmethod
    def from_record(cls, record: Any) -> "Claim":
        """
        Parse a raw record.

        Raises:
            pydantic.ValidationError: If the record is structurally invalid
        """
        return cls.model_validate(record)

"""
Change Stream Event Schema

The indexer consumes, never produces, these events.
Delivery is at-least-once, ordered per record slot, interleaved across slots.

Each event:
- Is a create or a delete
- Is scoped to exactly one (owner, collection, record key)
- Carries the record on create
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .claim import Locator


class EventAction(str, Enum):
    """
    Actions the indexer understands.
    An "update" is not one of them: a revised claim is a new record.
    """
    CREATE = "create"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    One entry of the upstream change stream.

    Rules:
    - create MUST carry a record object
    - delete carries no record (it is ignored if present)
    - digest is the upstream content id, informational only; the indexer
      computes its own digest from canonical bytes
    """
    model_config = ConfigDict(populate_by_name=True)

    action: EventAction
    owner: str = Field(..., min_length=1, description="Repository owner identity (DID)")
    collection: str = Field(..., min_length=1, description="Record collection (NSID)")
    record_key: str = Field(..., min_length=1, alias="recordKey")
    digest: Optional[str] = Field(default=None, description="Upstream content id")
    record: Optional[dict[str, Any]] = None
    seq: Optional[int] = Field(default=None, description="Upstream cursor, if any")

    @model_validator(mode="after")
    def check_shape(self) -> "ChangeEvent":
        if Locator.parse(self.uri) is None:
            raise ValueError(f"not a record locator: {self.uri}")
        if self.action == EventAction.CREATE and self.record is None:
            raise ValueError("create event without a record")
        return self

    @property
    def locator(self) -> Locator:
        return Locator(self.owner, self.collection, self.record_key)

    @property
    def uri(self) -> str:
        return f"at://{self.owner}/{self.collection}/{self.record_key}"

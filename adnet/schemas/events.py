"""
Event Schemas

An impression or click is an event. Events are appended to a tenant's
chain, hashed, and never edited afterwards.

Two shapes live here:
- Event / ChainedEvent: the internal, hashed record
- RecordEventRequest / RecordEventResponse: the collector's wire shape
  (camelCase, as the browser client sends it)
"""

from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Kinds of user action the collector accepts."""
    VIEW = "view"
    CLICK = "click"


class Placement(BaseModel):
    """Where on the page the ad was shown. Reporting only, never hashed."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    type: Optional[str] = None
    page_url: Optional[str] = None


class Event(BaseModel):
    """
    One user action, as stored in the chain.

    `verified` is only ever set by the signature verifier: True means the
    actor_address was recovered from a signature, not merely claimed.
    """
    model_config = ConfigDict(frozen=True)

    # Order and types of these fields are part of the hash contract.
    HASHED_FIELDS: ClassVar[tuple[str, ...]] = (
        "campaign_id",
        "promotion_id",
        "type",
        "actor_address",
        "verified",
        "trust_score",
        "timestamp",
    )

    campaign_id: str = Field(..., min_length=1)
    promotion_id: Optional[str] = None
    type: EventType
    actor_address: Optional[str] = None
    verified: bool = False
    trust_score: Optional[int] = None
    timestamp: int = Field(..., ge=0, description="Milliseconds since the Unix epoch")
    placement: Optional[Placement] = None

    def hashed_fields(self) -> dict[str, Any]:
        """The subset of fields committed to by the chain hash."""
        return {name: getattr(self, name) for name in self.HASHED_FIELDS}


class ChainedEvent(Event):
    """
    An Event plus its chain linkage. Created once by the ledger's append.

    Chain rule: within a segment, chain[i].previous_hash == chain[i-1].hash.
    """
    hash: str = Field(..., min_length=64, max_length=64)
    previous_hash: str = Field(..., min_length=64, max_length=64)
    sequence_index: int = Field(..., ge=0)

    def event(self) -> Event:
        """Strip the linkage fields."""
        return Event(**self.model_dump(exclude={"hash", "previous_hash", "sequence_index"}))


# ============================================================
# Wire shapes
# ============================================================

class RecordEventRequest(BaseModel):
    """
    Body of POST /record.

    Accepts the browser client's older field names too: `userAddress` for
    the actor and `notabotScore` (an object with `points`) for the trust score.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    campaign_id: str = Field(..., min_length=1)
    promotion_id: Optional[str] = None
    type: EventType
    timestamp: Optional[int] = Field(default=None, ge=0)
    actor_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("actorAddress", "userAddress", "actor_address"),
    )
    signature: Optional[str] = None
    trust_score: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("trustScore", "notabotScore", "trust_score"),
    )
    placement: Optional[Placement] = None

    @field_validator("campaign_id")
    @classmethod
    def _strip_campaign_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("campaignId must not be blank")
        return value

    @field_validator("actor_address", "signature")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("trust_score", mode="before")
    @classmethod
    def _unwrap_score(cls, value: Any) -> Any:
        if isinstance(value, dict):
            value = value.get("points")
        if isinstance(value, float):
            value = int(value)
        return value


class RecordEventResponse(BaseModel):
    """Response of POST /record."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = "success"
    event_hash: str
    chain_index: int
    verified: bool
    batch_progress: str
    chain_length: int
    threshold: int

"""
Ledger State Schemas

The full persisted state of one tenant. Written as a single document so
that append and drain are each one atomic write.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from adnet.schemas.batch import FailureReason
from adnet.schemas.events import ChainedEvent


class PartitionStatus(str, Enum):
    PENDING = "pending"      # Nothing durable yet
    UPLOADED = "uploaded"    # Content address known, not settled on-chain
    SETTLED = "settled"      # Confirmed or off-chain (final)
    REJECTED = "rejected"    # Contract refused (final)


class PartitionProgress(BaseModel):
    """Where one campaign's slice of a drained segment has got to."""
    campaign_id: str
    status: PartitionStatus = PartitionStatus.PENDING
    content_address: Optional[str] = None
    content_url: Optional[str] = None
    pending_tx_hash: Optional[str] = None
    attempts: int = 0
    last_reason: Optional[FailureReason] = None

    @property
    def is_final(self) -> bool:
        return self.status in (PartitionStatus.SETTLED, PartitionStatus.REJECTED)


class UnsettledSegment(BaseModel):
    """
    A drained segment that still has partitions without a final outcome.

    The events stay here, not in the pending chain, until every
    partition is final. That is what makes a failed flush retryable.
    """
    segment_id: str
    flush_index: int = Field(..., ge=1)
    start_hash: str
    tail_hash: str
    drained_at: datetime
    events: list[ChainedEvent]
    partitions: dict[str, PartitionProgress]

    @property
    def is_settled(self) -> bool:
        return all(p.is_final for p in self.partitions.values())

    def events_for(self, campaign_id: str) -> list[ChainedEvent]:
        return [e for e in self.events if e.campaign_id == campaign_id]


class TenantLedgerState(BaseModel):
    """Everything the ledger knows about one tenant."""
    tenant: str
    pending_chain: list[ChainedEvent] = Field(default_factory=list)
    tail_hash: str
    segment_start_hash: str
    flush_count: int = 0
    unsettled_segments: list[UnsettledSegment] = Field(default_factory=list)

    def find_segment(self, segment_id: str) -> Optional[UnsettledSegment]:
        for segment in self.unsettled_segments:
            if segment.segment_id == segment_id:
                return segment
        return None

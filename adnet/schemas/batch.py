"""
Batch and Settlement Schemas

A flush turns one drained segment into one partition per campaign.
Each partition is uploaded, then (maybe) submitted on-chain, and every
attempt leaves a BatchRecord in the tenant's append-only history.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class SettlementState(str, Enum):
    """State machine of one partition inside one flush attempt."""
    IDLE = "idle"
    DRAINING = "draining"
    UPLOADING = "uploading"
    SUBMITTING = "submitting"
    RECORDED = "recorded"
    FAILED = "failed"


class SettlementOutcome(str, Enum):
    """What happened on-chain for a partition."""
    CONFIRMED = "confirmed"          # Transaction mined
    OFF_CHAIN = "off_chain"          # No contract or gateway disabled
    REJECTED = "rejected"            # Contract said no (final)
    FAILED = "failed"                # Infrastructure failure (retryable)
    NOT_ATTEMPTED = "not_attempted"  # Upload failed first


class FailureReason(str, Enum):
    """Why a partition did not fully settle."""
    UPLOAD_FAILED = "upload_failed"
    SUBMISSION_FAILED = "submission_failed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CAMPAIGN_INACTIVE = "campaign_inactive"
    UNAUTHORIZED = "unauthorized"
    REJECTED_UNKNOWN = "rejected_unknown"

    @property
    def is_permanent(self) -> bool:
        """Business-rule rejections are never retried automatically."""
        return self not in (FailureReason.UPLOAD_FAILED, FailureReason.SUBMISSION_FAILED)


class BatchRecord(BaseModel):
    """
    Immutable summary of one settlement attempt for one partition.

    success: the upload succeeded (the events are retrievable by content address)
    settlement: what happened on-chain afterwards
    """
    model_config = ConfigDict(frozen=True)

    record_id: UUID = Field(default_factory=uuid4)
    tenant: str
    segment_id: str
    campaign_id: str

    event_count: int = Field(..., ge=0)
    views: int = Field(..., ge=0)
    clicks: int = Field(..., ge=0)
    reach: int = Field(..., ge=0)
    excluded_unverified: int = 0
    excluded_low_trust: int = 0

    content_address: Optional[str] = None
    content_url: Optional[str] = None
    contract_address: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

    success: bool
    settlement: SettlementOutcome
    reason: Optional[FailureReason] = None
    attempt: int = Field(default=1, ge=1)
    timestamp: datetime


class HistoryTotals(BaseModel):
    """Running totals over a tenant's history, each partition counted once."""
    total_events: int = 0
    total_views: int = 0
    total_clicks: int = 0
    flush_count: int = 0

    @classmethod
    def from_records(cls, records: list[BatchRecord]) -> "HistoryTotals":
        totals = cls()
        seen: set[tuple[str, str]] = set()
        segments: set[str] = set()
        for record in records:
            key = (record.segment_id, record.campaign_id)
            if not record.success or key in seen:
                continue
            seen.add(key)
            totals.total_events += record.event_count
            totals.total_views += record.views
            totals.total_clicks += record.clicks
            segments.add(record.segment_id)
        totals.flush_count = len(segments)
        return totals

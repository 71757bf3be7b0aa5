from adnet.schemas.batch import (
    BatchRecord,
    FailureReason,
    HistoryTotals,
    SettlementOutcome,
    SettlementState,
)
from adnet.schemas.campaign import Campaign
from adnet.schemas.events import (
    ChainedEvent,
    Event,
    EventType,
    Placement,
    RecordEventRequest,
    RecordEventResponse,
)
from adnet.schemas.ledger import (
    PartitionProgress,
    PartitionStatus,
    TenantLedgerState,
    UnsettledSegment,
)

__all__ = [
    "BatchRecord",
    "Campaign",
    "ChainedEvent",
    "Event",
    "EventType",
    "FailureReason",
    "HistoryTotals",
    "PartitionProgress",
    "PartitionStatus",
    "Placement",
    "RecordEventRequest",
    "RecordEventResponse",
    "SettlementOutcome",
    "SettlementState",
    "TenantLedgerState",
    "UnsettledSegment",
]

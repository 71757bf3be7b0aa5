"""
Publisher API Routes

The collector and the publisher's own view of its ledger.
The tenant is always the host name the request was made to: a
publisher only ever sees its own chain and history.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from ..core import normalize_tenant
from ..schemas import BatchRecord, HistoryTotals, RecordEventRequest, RecordEventResponse
from ..services import Services


router = APIRouter(tags=["Adnet"])


# ============================================================
# Response Models
# ============================================================

class ChainStatus(BaseModel):
    length: int
    threshold: int
    last_hash: str
    segment_start_hash: str


class BlockchainStatus(BaseModel):
    enabled: bool
    wallet: Optional[str] = None


class StatusResponse(BaseModel):
    status: str = "success"
    domain: str
    chain: ChainStatus
    flush_count: int
    unsettled_segments: int
    totals: HistoryTotals
    blockchain: BlockchainStatus
    in_flight: list[dict[str, Any]]
    scheduler: dict[str, Any]


class HistoryResponse(BaseModel):
    status: str = "success"
    domain: str
    totals: HistoryTotals
    batches: list[BatchRecord]


class SettlementResponse(BaseModel):
    status: str = "success"
    domain: str
    completed: bool
    batches: list[BatchRecord]


# ============================================================
# Dependencies
# ============================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_tenant(request: Request) -> str:
    return normalize_tenant(request.url.hostname)


# ============================================================
# Endpoints
# ============================================================

@router.post("/record", response_model=RecordEventResponse, response_model_by_alias=True)
def record_event(
    body: RecordEventRequest,
    request: Request,
    tenant: str = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    """
    Record a view or click.

    Returns once the event is durably chained. A signature is optional;
    without a valid one the event is recorded as unverified.
    """
    identity = services.identity.resolve(tenant, request.headers, request.cookies)
    return services.collector.record(tenant, body, identity=identity)


@router.get("/status", response_model=StatusResponse)
def status(
    tenant: str = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    """Chain, history totals and blockchain configuration for this publisher."""
    state = services.ledger.state(tenant)
    return StatusResponse(
        domain=tenant,
        chain=ChainStatus(
            length=len(state.pending_chain),
            threshold=services.config.threshold,
            last_hash=state.tail_hash,
            segment_start_hash=state.segment_start_hash,
        ),
        flush_count=state.flush_count,
        unsettled_segments=len(state.unsettled_segments),
        totals=services.settlement.totals(tenant),
        blockchain=BlockchainStatus(
            enabled=services.gateway.enabled,
            wallet=services.gateway.wallet_address,
        ),
        in_flight=services.settlement.in_flight(tenant),
        scheduler=services.scheduler.get_status(),
    )


@router.get("/history", response_model=HistoryResponse)
def history(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    tenant: str = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    """Every settlement attempt for this publisher, newest first."""
    records = services.settlement.history(tenant)
    batches = list(reversed(records))
    if limit is not None:
        batches = batches[:limit]
    return HistoryResponse(
        domain=tenant,
        totals=HistoryTotals.from_records(records),
        batches=batches,
    )


@router.post("/flush", response_model=SettlementResponse)
def flush(
    tenant: str = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    """
    Flush pending events now.

    Waits up to the configured flush timeout. If settlement is still
    running after that, `completed` is false and the outcome will show
    up in /history.
    """
    records = services.scheduler.flush_now(tenant)
    return SettlementResponse(
        domain=tenant,
        completed=records is not None,
        batches=records or [],
    )


@router.post("/retry", response_model=SettlementResponse)
def retry(
    force: bool = Query(default=True),
    tenant: str = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    """Retry partitions whose upload or submission failed."""
    records = services.settlement.retry(tenant, force=force)
    return SettlementResponse(domain=tenant, completed=True, batches=records)

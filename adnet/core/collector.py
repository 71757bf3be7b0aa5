"""
Event Collector

The write path behind POST /record:

    request -> verify signature -> score -> append (durable) -> threshold check

The response goes out once the event is durable; settlement is the
scheduler's business.
"""

import time
from typing import Callable, Optional

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import Event, RecordEventRequest, RecordEventResponse
from .identity import ClientReportedTrustScore, ResolvedIdentity, TrustScoreSource
from .ledger import HashChainLedger, normalize_tenant
from .scheduler import SettlementScheduler
from .verifier import SignatureVerifier

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class EventCollector:
    def __init__(
        self,
        ledger: HashChainLedger,
        scheduler: SettlementScheduler,
        trust_source: Optional[TrustScoreSource] = None,
        verifier: type[SignatureVerifier] = SignatureVerifier,
        metrics: Optional[MetricsCollector] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._ledger = ledger
        self._scheduler = scheduler
        self._trust_source = trust_source or ClientReportedTrustScore()
        self._verifier = verifier
        self._metrics = metrics or get_metrics()
        self._clock_ms = clock_ms

    @property
    def threshold(self) -> int:
        return self._scheduler.config.threshold

    def record(
        self,
        tenant: str,
        request: RecordEventRequest,
        identity: Optional[ResolvedIdentity] = None,
    ) -> RecordEventResponse:
        """
        Record one event for a tenant.

        Raises:
            TenantError: If the tenant name is invalid
            ValidationError: If the event cannot be hashed
            StoreError: If the event could not be made durable
        """
        tenant = normalize_tenant(tenant)
        start = time.perf_counter()

        actor_address = request.actor_address
        if actor_address is None and identity is not None:
            actor_address = identity.address

        outcome = self._verifier.verify(
            actor_address,
            request.signature,
            request.campaign_id,
            request.type,
            request.timestamp,
        )
        if request.signature and not outcome.verified:
            logger.info(
                "Event signature not verified",
                tenant=tenant,
                campaign_id=request.campaign_id,
                reason=outcome.reason.value if outcome.reason else None,
            )

        event = Event(
            campaign_id=request.campaign_id,
            promotion_id=request.promotion_id,
            type=request.type,
            actor_address=actor_address,
            verified=outcome.verified,
            trust_score=self._trust_source.score(request, actor_address),
            timestamp=request.timestamp if request.timestamp is not None else self._clock_ms(),
            placement=request.placement,
        )

        chained = self._ledger.append(tenant, event)
        chain_length = chained.sequence_index + 1
        self._metrics.record_append((time.perf_counter() - start) * 1000, verified=event.verified)

        if chain_length >= self.threshold:
            logger.info("Threshold reached", tenant=tenant, pending=chain_length, threshold=self.threshold)
            self._scheduler.request_flush(tenant)

        return RecordEventResponse(
            event_hash=chained.hash,
            chain_index=chained.sequence_index,
            verified=chained.verified,
            batch_progress=f"{chain_length}/{self.threshold}",
            chain_length=chain_length,
            threshold=self.threshold,
        )

"""
Batch Settlement

Turns drained segments into settled batches.

FLUSH:
    draining    ledger.drain(tenant); nothing pending -> [] and no history
    partition   group events by campaign_id, first-seen order
    uploading   summary document -> blob store -> content address
    submitting  content address + counts -> campaign contract
    recorded    one BatchRecord per partition appended to history

Each partition settles independently: one campaign's failure never
blocks another's. A partition ends in one of:
- confirmed   transaction mined
- off_chain   uploaded; no contract or blockchain disabled
- rejected    uploaded; contract refused (final, never retried)
- failed      uploaded; submission hit an infrastructure error (retryable)
- not_attempted  upload itself failed (retryable)

Retryable partitions stay in the ledger's unsettled segment with their
progress (content address, broadcast tx hash), so retry() never
re-uploads what is already stored and never sends a second transaction
before checking the first.

This is the only place downstream failures become BatchRecord outcomes.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    BatchRecord,
    ChainedEvent,
    FailureReason,
    HistoryTotals,
    PartitionProgress,
    PartitionStatus,
    SettlementOutcome,
    SettlementState,
)
from .blobstore import BlobStore, BlobStoreError
from .campaigns import CampaignDirectory, CampaignDirectoryError
from .gateway import (
    BlockchainGateway,
    ContractRejectedError,
    GatewayUnavailableError,
    RevertReason,
    SubmissionReceipt,
)
from .ledger import DrainedSegment, HashChainLedger, normalize_tenant
from .reach import ReachAggregator, ReachReport, count_types

logger = get_logger(__name__)

SUMMARY_TYPE = "adnet-event-batch"
SUMMARY_VERSION = "1.0.0"

_REVERT_TO_FAILURE = {
    RevertReason.BUDGET_EXHAUSTED: FailureReason.BUDGET_EXHAUSTED,
    RevertReason.CAMPAIGN_INACTIVE: FailureReason.CAMPAIGN_INACTIVE,
    RevertReason.UNAUTHORIZED: FailureReason.UNAUTHORIZED,
    RevertReason.UNKNOWN: FailureReason.REJECTED_UNKNOWN,
}


@dataclass
class _TenantClaims:
    """Segments of one tenant currently being settled by some thread."""
    lock: Lock = field(default_factory=Lock)
    segments: set[str] = field(default_factory=set)


class BatchSettlement:
    """
    Flush and retry orchestrator.

    Never holds a ledger lock during upload or submission: drain returns
    first, and new events accumulate in a fresh segment meanwhile.
    """

    def __init__(
        self,
        ledger: HashChainLedger,
        blob_store: BlobStore,
        campaigns: CampaignDirectory,
        gateway: Optional[BlockchainGateway] = None,
        reach: Optional[ReachAggregator] = None,
        publisher_address: Optional[str] = None,
        factory_url: Optional[str] = None,
        max_attempts: int = 5,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._ledger = ledger
        self._blob_store = blob_store
        self._campaigns = campaigns
        self._gateway = gateway or BlockchainGateway(client=None)
        self._reach = reach or ReachAggregator()
        self._publisher_address = publisher_address
        self._factory_url = factory_url
        self._max_attempts = max_attempts
        self._metrics = metrics or get_metrics()

        self._claims: dict[str, _TenantClaims] = {}
        self._claims_lock = Lock()
        self._states: dict[tuple[str, str, str], SettlementState] = {}
        self._states_lock = Lock()

    @property
    def gateway(self) -> BlockchainGateway:
        return self._gateway

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def publisher_address(self) -> Optional[str]:
        return self._gateway.wallet_address or self._publisher_address

    # ============================================================
    # ENTRY POINTS
    # ============================================================

    def flush(self, tenant: str) -> list[BatchRecord]:
        """
        Drain the tenant's pending chain and settle every partition.

        Returns:
            One BatchRecord per campaign in the drained segment; [] when
            nothing was pending
        """
        tenant = normalize_tenant(tenant)
        claims = self._tenant_claims(tenant)

        with claims.lock:
            drained = self._ledger.drain(tenant)
            if drained.is_empty:
                logger.debug("Nothing to flush", tenant=tenant)
                return []
            claims.segments.add(drained.segment_id)

        self._metrics.record_flush()
        try:
            progress = {
                campaign_id: PartitionProgress(campaign_id=campaign_id)
                for campaign_id in drained.partition()
            }
            return self._settle_segment(drained, progress)
        finally:
            with claims.lock:
                claims.segments.discard(drained.segment_id)

    def retry(self, tenant: str, force: bool = False) -> list[BatchRecord]:
        """
        Re-attempt every non-final partition of every unsettled segment.

        Args:
            tenant: Tenant to retry
            force: Also retry partitions that used up their automatic attempts

        Returns:
            One BatchRecord per partition attempted
        """
        tenant = normalize_tenant(tenant)
        claims = self._tenant_claims(tenant)

        with claims.lock:
            segments = [
                s for s in self._ledger.unsettled(tenant)
                if s.segment_id not in claims.segments
            ]
            claims.segments.update(s.segment_id for s in segments)

        records: list[BatchRecord] = []
        try:
            for segment in segments:
                eligible = {
                    campaign_id: progress
                    for campaign_id, progress in segment.partitions.items()
                    if not progress.is_final and (force or progress.attempts < self._max_attempts)
                }
                if not eligible:
                    continue
                logger.info(
                    "Retrying segment",
                    tenant=tenant,
                    segment_id=segment.segment_id,
                    partitions=len(eligible),
                )
                drained = DrainedSegment.from_unsettled(tenant, segment)
                records.extend(self._settle_segment(drained, eligible))
        finally:
            with claims.lock:
                claims.segments.difference_update(s.segment_id for s in segments)
        return records

    def recover(self) -> list[str]:
        """
        Find tenants with drained-but-unsettled segments (after a restart).

        Returns:
            The tenants a retry should be run for
        """
        pending = []
        for tenant in self._ledger.tenants():
            segments = self._ledger.unsettled(tenant)
            if segments:
                pending.append(tenant)
                logger.warning(
                    "Unsettled segments found",
                    tenant=tenant,
                    segments=len(segments),
                    events=sum(len(s.events) for s in segments),
                )
        return pending

    def history(self, tenant: str) -> list[BatchRecord]:
        return self._ledger.store.list_history(normalize_tenant(tenant))

    def totals(self, tenant: str) -> HistoryTotals:
        return HistoryTotals.from_records(self.history(tenant))

    def in_flight(self, tenant: Optional[str] = None) -> list[dict]:
        """Partitions currently between draining and recorded."""
        with self._states_lock:
            return [
                {"tenant": t, "segment_id": s, "campaign_id": c, "state": state.value}
                for (t, s, c), state in self._states.items()
                if tenant is None or t == tenant
            ]

    # ============================================================
    # SETTLEMENT
    # ============================================================

    def _tenant_claims(self, tenant: str) -> _TenantClaims:
        with self._claims_lock:
            claims = self._claims.get(tenant)
            if claims is None:
                claims = _TenantClaims()
                self._claims[tenant] = claims
            return claims

    def _transition(self, key: tuple[str, str, str], state: SettlementState) -> None:
        with self._states_lock:
            if state in (SettlementState.RECORDED, SettlementState.FAILED):
                self._states.pop(key, None)
            else:
                self._states[key] = state
        logger.debug(
            "Partition state",
            tenant=key[0],
            segment_id=key[1],
            campaign_id=key[2],
            state=state.value,
        )

    def _settle_segment(
        self,
        drained: DrainedSegment,
        partitions: dict[str, PartitionProgress],
    ) -> list[BatchRecord]:
        groups = drained.partition()
        records = []
        for campaign_id, progress in partitions.items():
            events = groups.get(campaign_id, [])
            try:
                record = self._settle_partition(drained, campaign_id, events, progress)
            except Exception as e:
                logger.exception(
                    "Partition settlement failed unexpectedly",
                    tenant=drained.tenant,
                    segment_id=drained.segment_id,
                    campaign_id=campaign_id,
                    error=str(e),
                )
                record = self._record_unexpected_failure(drained, campaign_id, events, progress)
            # Written per partition: a later partition's error cannot lose it
            self._ledger.store.append_history(drained.tenant, [record])
            records.append(record)

        settled = sum(1 for r in records if r.settlement in (
            SettlementOutcome.CONFIRMED, SettlementOutcome.OFF_CHAIN, SettlementOutcome.REJECTED,
        ))
        logger.info(
            "Segment settlement finished",
            tenant=drained.tenant,
            segment_id=drained.segment_id,
            partitions=len(records),
            final=settled,
        )
        return records

    def _settle_partition(
        self,
        drained: DrainedSegment,
        campaign_id: str,
        events: list[ChainedEvent],
        progress: PartitionProgress,
    ) -> BatchRecord:
        tenant = drained.tenant
        key = (tenant, drained.segment_id, campaign_id)
        attempt = progress.attempts + 1
        views, clicks = count_types(events)
        report = self._reach.compute(events)

        def finish(
            new_progress: PartitionProgress,
            settlement: SettlementOutcome,
            reason: Optional[FailureReason] = None,
            contract_address: Optional[str] = None,
            receipt: Optional[SubmissionReceipt] = None,
        ) -> BatchRecord:
            self._ledger.record_partition(
                tenant, drained.segment_id, new_progress.model_copy(update={"attempts": attempt})
            )
            self._transition(
                key,
                SettlementState.FAILED if settlement in (
                    SettlementOutcome.FAILED, SettlementOutcome.NOT_ATTEMPTED
                ) else SettlementState.RECORDED,
            )
            self._metrics.record_partition(settlement.value)
            return BatchRecord(
                tenant=tenant,
                segment_id=drained.segment_id,
                campaign_id=campaign_id,
                event_count=len(events),
                views=views,
                clicks=clicks,
                reach=report.reach,
                excluded_unverified=report.excluded_unverified,
                excluded_low_trust=report.excluded_low_trust,
                content_address=new_progress.content_address,
                content_url=new_progress.content_url,
                contract_address=contract_address,
                tx_hash=receipt.tx_hash if receipt else new_progress.pending_tx_hash,
                block_number=receipt.block_number if receipt else None,
                success=new_progress.content_address is not None,
                settlement=settlement,
                reason=reason,
                attempt=attempt,
                timestamp=datetime.now(timezone.utc),
            )

        # --- uploading -------------------------------------------------
        self._transition(key, SettlementState.UPLOADING)
        if progress.content_address is None:
            summary = self.build_summary(drained, campaign_id, events, views, clicks, report)
            try:
                ref = self._blob_store.put(
                    json.dumps(summary, indent=2, sort_keys=True).encode("utf-8"),
                    filename=f"adnet-{drained.segment_id}-{campaign_id}.json",
                )
            except BlobStoreError as e:
                logger.warning(
                    "Upload failed",
                    tenant=tenant,
                    campaign_id=campaign_id,
                    attempt=attempt,
                    error=str(e),
                )
                return finish(
                    progress.model_copy(update={"last_reason": FailureReason.UPLOAD_FAILED}),
                    SettlementOutcome.NOT_ATTEMPTED,
                    FailureReason.UPLOAD_FAILED,
                )
            progress = progress.model_copy(update={
                "status": PartitionStatus.UPLOADED,
                "content_address": ref.address,
                "content_url": ref.url,
            })
            # Persist the address now so a retry never uploads twice
            self._ledger.record_partition(tenant, drained.segment_id, progress)

        # --- submitting ------------------------------------------------
        self._transition(key, SettlementState.SUBMITTING)
        contract_address = None
        try:
            receipt = None
            if self._gateway.enabled:
                contract_address = self._campaigns.find_contract_address(campaign_id)
                if progress.pending_tx_hash:
                    receipt = self._gateway.confirm(progress.pending_tx_hash)
                if receipt is None:
                    receipt = self._gateway.submit_batch(
                        contract_address,
                        progress.content_address,
                        views,
                        clicks,
                        report.reach,
                        drained.tail_hash,
                    )
        except ContractRejectedError as e:
            reason = _REVERT_TO_FAILURE[e.reason]
            logger.error(
                "Contract rejected batch",
                tenant=tenant,
                campaign_id=campaign_id,
                contract=contract_address,
                reason=reason.value,
                error=str(e),
            )
            return finish(
                progress.model_copy(update={
                    "status": PartitionStatus.REJECTED,
                    "pending_tx_hash": e.tx_hash or progress.pending_tx_hash,
                    "last_reason": reason,
                }),
                SettlementOutcome.REJECTED,
                reason,
                contract_address=contract_address,
            )
        except (GatewayUnavailableError, CampaignDirectoryError) as e:
            tx_hash = getattr(e, "tx_hash", None) or progress.pending_tx_hash
            logger.warning(
                "Submission failed",
                tenant=tenant,
                campaign_id=campaign_id,
                attempt=attempt,
                tx_hash=tx_hash,
                error=str(e),
            )
            return finish(
                progress.model_copy(update={
                    "pending_tx_hash": tx_hash,
                    "last_reason": FailureReason.SUBMISSION_FAILED,
                }),
                SettlementOutcome.FAILED,
                FailureReason.SUBMISSION_FAILED,
                contract_address=contract_address,
            )

        settled = progress.model_copy(update={
            "status": PartitionStatus.SETTLED,
            "pending_tx_hash": receipt.tx_hash if receipt else None,
            "last_reason": None,
        })
        if receipt is None:
            logger.info(
                "Batch recorded off-chain",
                tenant=tenant,
                campaign_id=campaign_id,
                content_address=progress.content_address,
                blockchain_enabled=self._gateway.enabled,
            )
            return finish(settled, SettlementOutcome.OFF_CHAIN, contract_address=contract_address)

        logger.info(
            "Batch confirmed on-chain",
            tenant=tenant,
            campaign_id=campaign_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
        return finish(
            settled,
            SettlementOutcome.CONFIRMED,
            contract_address=contract_address,
            receipt=receipt,
        )

    def _record_unexpected_failure(
        self,
        drained: DrainedSegment,
        campaign_id: str,
        events: list[ChainedEvent],
        progress: PartitionProgress,
    ) -> BatchRecord:
        """
        A failed/submission_failed record for a partition whose attempt
        raised something settlement does not classify. Progress already
        persisted (content address, broadcast tx hash) is kept; the
        partition stays retryable.
        """
        tenant = drained.tenant
        key = (tenant, drained.segment_id, campaign_id)
        attempt = progress.attempts + 1

        try:
            segment = self._ledger.state(tenant).find_segment(drained.segment_id)
            if segment is not None and campaign_id in segment.partitions:
                progress = segment.partitions[campaign_id]
        except Exception as e:
            logger.warning("Could not reload partition progress", tenant=tenant, campaign_id=campaign_id, error=str(e))

        failed = progress.model_copy(update={
            "attempts": attempt,
            "last_reason": FailureReason.SUBMISSION_FAILED,
        })
        if not progress.is_final:
            try:
                self._ledger.record_partition(tenant, drained.segment_id, failed)
            except Exception as e:
                logger.warning(
                    "Could not persist partition failure",
                    tenant=tenant,
                    campaign_id=campaign_id,
                    error=str(e),
                )

        self._transition(key, SettlementState.FAILED)
        self._metrics.record_partition(SettlementOutcome.FAILED.value)
        views, clicks = count_types(events)
        report = self._reach.compute(events)
        return BatchRecord(
            tenant=tenant,
            segment_id=drained.segment_id,
            campaign_id=campaign_id,
            event_count=len(events),
            views=views,
            clicks=clicks,
            reach=report.reach,
            excluded_unverified=report.excluded_unverified,
            excluded_low_trust=report.excluded_low_trust,
            content_address=failed.content_address,
            content_url=failed.content_url,
            tx_hash=failed.pending_tx_hash,
            success=failed.content_address is not None,
            settlement=SettlementOutcome.FAILED,
            reason=FailureReason.SUBMISSION_FAILED,
            attempt=attempt,
            timestamp=datetime.now(timezone.utc),
        )

    def build_summary(
        self,
        drained: DrainedSegment,
        campaign_id: str,
        events: list[ChainedEvent],
        views: int,
        clicks: int,
        report: ReachReport,
    ) -> dict:
        """The document uploaded for one partition."""
        return {
            "type": SUMMARY_TYPE,
            "version": SUMMARY_VERSION,
            "campaign_id": campaign_id,
            "events": [event.model_dump(mode="json") for event in events],
            "summary": {
                "views": views,
                "clicks": clicks,
                "total": len(events),
                **report.to_dict(),
            },
            "chain": {
                "segment_id": drained.segment_id,
                "flush_index": drained.flush_index,
                "start_hash": drained.start_hash,
                "last_hash": drained.tail_hash,
                "length": len(drained),
            },
            "publisher": {
                "domain": drained.tenant,
                "address": self.publisher_address,
            },
            "factory": self._factory_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

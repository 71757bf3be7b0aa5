"""
Hash-Chain Ledger - The Heart of the System

This is an append-only, per-tenant event log.
Nothing is "edited". Events are appended, drained, settled.

The ledger:
- Appends events to a tenant's pending chain
- Produces hashes and chains events together
- Drains the pending chain into an unsettled segment
- Tracks settlement progress of each drained segment

Rules (enforced in code):
- Every append and drain is one atomic write of the tenant's state
- A drained segment stays persisted until all its partitions are final
- A chain that fails re-verification on load is never accepted
- Tenants never see each other's state

ARCHITECTURE NOTE:
- HashChainLedger: hashing, linkage, locking, state transitions
- LedgerStore: durability (see adnet.db.store)

Tenant arena: one slot per tenant, each with its own lock. The arena
lock only guards slot creation, so different tenants never wait on
each other.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterable, Optional

from ..db.store import LedgerStore
from ..observability import get_logger
from ..schemas import (
    ChainedEvent,
    Event,
    PartitionProgress,
    TenantLedgerState,
    UnsettledSegment,
)
from .hasher import GENESIS_HASH, CanonicalSerializationError, Hasher

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when an event or request fails validation."""
    pass


class ChainError(LedgerError):
    """Raised when chain integrity is compromised."""
    pass


class TenantError(ValidationError):
    """Raised when a tenant name is unusable."""
    pass


_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_TENANT_PATTERN = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*$")


def normalize_tenant(tenant: Optional[str]) -> str:
    """
    Lower-case a host name and check it is usable as a tenant key.

    Raises:
        TenantError: If the name is empty or not a plain host name
    """
    if not tenant:
        raise TenantError("Tenant is required")
    normalized = tenant.strip().lower().rstrip(".")
    if len(normalized) > 253 or not _TENANT_PATTERN.match(normalized):
        raise TenantError(f"Invalid tenant name: {tenant!r}")
    return normalized


@dataclass
class DrainedSegment:
    """
    The events removed from a pending chain by one drain.

    Empty when nothing was pending; in that case segment_id is None and
    no state was written.
    """
    tenant: str
    segment_id: Optional[str] = None
    flush_index: int = 0
    start_hash: str = GENESIS_HASH
    tail_hash: str = GENESIS_HASH
    events: list[ChainedEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.events

    def __len__(self) -> int:
        return len(self.events)

    def partition(self) -> dict[str, list[ChainedEvent]]:
        """Group events by campaign, keeping first-seen campaign order."""
        groups: dict[str, list[ChainedEvent]] = {}
        for event in self.events:
            groups.setdefault(event.campaign_id, []).append(event)
        return groups

    @classmethod
    def from_unsettled(cls, tenant: str, segment: UnsettledSegment) -> "DrainedSegment":
        return cls(
            tenant=tenant,
            segment_id=segment.segment_id,
            flush_index=segment.flush_index,
            start_hash=segment.start_hash,
            tail_hash=segment.tail_hash,
            events=list(segment.events),
        )


@dataclass
class _TenantSlot:
    lock: Lock = field(default_factory=Lock)
    state: Optional[TenantLedgerState] = None


class HashChainLedger:
    """
    The per-tenant hash-chained event log.

    CHAIN INTEGRITY GUARANTEES:
    - sequence_index is 0, 1, 2, ... within a segment
    - chain[0].previous_hash is the segment start hash
    - chain[i].previous_hash == chain[i-1].hash for i > 0
    - Persisted chains are re-verified when a tenant is loaded

    CONCURRENCY GUARANTEES:
    - Same-tenant appends and drains are serialized by the tenant lock
    - A drain hands each event to exactly one caller
    - No network I/O ever happens under a tenant lock
    """

    def __init__(
        self,
        store: LedgerStore,
        clock_ns: Callable[[], int] = time.time_ns,
    ):
        """
        Args:
            store: Persistence for tenant state
            clock_ns: Source of the wall-clock value used for segment reset hashes
        """
        self._store = store
        self._clock_ns = clock_ns
        self._slots: dict[str, _TenantSlot] = {}
        self._arena_lock = Lock()

    @property
    def store(self) -> LedgerStore:
        return self._store

    # ============================================================
    # TENANT ARENA
    # ============================================================

    def _slot(self, tenant: str) -> _TenantSlot:
        slot = self._slots.get(tenant)
        if slot is not None:
            return slot
        with self._arena_lock:
            slot = self._slots.get(tenant)
            if slot is None:
                slot = _TenantSlot()
                self._slots[tenant] = slot
            return slot

    def _load(self, tenant: str, slot: _TenantSlot) -> TenantLedgerState:
        """Return the slot's state, loading it on first use. Caller holds slot.lock."""
        if slot.state is not None:
            return slot.state

        stored = self._store.load_state(tenant)
        if stored is None:
            state = TenantLedgerState(
                tenant=tenant,
                tail_hash=GENESIS_HASH,
                segment_start_hash=GENESIS_HASH,
            )
        else:
            self._verify_state(stored)
            state = stored
            logger.info(
                "Loaded tenant ledger",
                tenant=tenant,
                pending=len(state.pending_chain),
                flush_count=state.flush_count,
                unsettled=len(state.unsettled_segments),
            )

        slot.state = state
        return state

    def _commit(self, slot: _TenantSlot, new_state: TenantLedgerState) -> None:
        """Persist, then publish. On a store failure the old state stays current."""
        self._store.save_state(new_state)
        slot.state = new_state

    # ============================================================
    # APPEND / DRAIN
    # ============================================================

    def append(self, tenant: str, event: Event) -> ChainedEvent:
        """
        Hash an event onto the tenant's pending chain and persist it.

        Returns:
            The chained event, already durable

        Raises:
            TenantError: If the tenant name is invalid
            ValidationError: If the event cannot be hashed
            StoreError: If the state could not be persisted (nothing is appended)
        """
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)

        with slot.lock:
            state = self._load(tenant, slot)

            try:
                event_hash = Hasher.hash_event(event.hashed_fields(), state.tail_hash)
            except CanonicalSerializationError as e:
                raise ValidationError(f"Event cannot be hashed: {e}") from e

            chained = ChainedEvent(
                **event.model_dump(),
                hash=event_hash,
                previous_hash=state.tail_hash,
                sequence_index=len(state.pending_chain),
            )

            self._commit(slot, state.model_copy(update={
                "pending_chain": [*state.pending_chain, chained],
                "tail_hash": event_hash,
            }))

        logger.debug(
            "Event appended",
            tenant=tenant,
            campaign_id=event.campaign_id,
            sequence_index=chained.sequence_index,
        )
        return chained

    def drain(self, tenant: str) -> DrainedSegment:
        """
        Atomically take every pending event.

        The events move into an unsettled segment in the same write that
        empties the pending chain, so a crash after drain never loses them.
        The tail hash is reset to a fresh value derived from wall-clock time.

        Returns:
            The drained segment; empty (and nothing written) when no events are pending
        """
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)

        with slot.lock:
            state = self._load(tenant, slot)
            if not state.pending_chain:
                return DrainedSegment(tenant=tenant)

            events = list(state.pending_chain)
            flush_index = state.flush_count + 1
            segment_id = f"{flush_index:06d}-{state.tail_hash[:12]}"
            reset_hash = Hasher.segment_reset_hash(self._clock_ns())

            partitions: dict[str, PartitionProgress] = {}
            for event in events:
                if event.campaign_id not in partitions:
                    partitions[event.campaign_id] = PartitionProgress(campaign_id=event.campaign_id)

            segment = UnsettledSegment(
                segment_id=segment_id,
                flush_index=flush_index,
                start_hash=state.segment_start_hash,
                tail_hash=state.tail_hash,
                drained_at=datetime.now(timezone.utc),
                events=events,
                partitions=partitions,
            )

            self._commit(slot, state.model_copy(update={
                "pending_chain": [],
                "tail_hash": reset_hash,
                "segment_start_hash": reset_hash,
                "flush_count": flush_index,
                "unsettled_segments": [*state.unsettled_segments, segment],
            }))

        logger.info(
            "Segment drained",
            tenant=tenant,
            segment_id=segment_id,
            events=len(events),
            campaigns=len(partitions),
        )
        return DrainedSegment.from_unsettled(tenant, segment)

    # ============================================================
    # PARTITION BOOKKEEPING
    # ============================================================

    def unsettled(self, tenant: str) -> list[UnsettledSegment]:
        """Drained segments that still have non-final partitions."""
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)
        with slot.lock:
            state = self._load(tenant, slot)
            return [s.model_copy(deep=True) for s in state.unsettled_segments]

    def record_partition(self, tenant: str, segment_id: str, progress: PartitionProgress) -> bool:
        """
        Persist the progress of one partition.

        Once every partition of the segment is final, the segment (and its
        events) is dropped from the tenant state.

        Returns:
            True if this update settled the whole segment
        """
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)

        with slot.lock:
            state = self._load(tenant, slot)
            segment = state.find_segment(segment_id)
            if segment is None:
                raise LedgerError(f"Unknown segment {segment_id} for tenant {tenant}")
            if progress.campaign_id not in segment.partitions:
                raise LedgerError(
                    f"Campaign {progress.campaign_id} is not part of segment {segment_id}"
                )

            updated = segment.model_copy(update={
                "partitions": {**segment.partitions, progress.campaign_id: progress},
            })
            settled = updated.is_settled

            remaining = [
                s if s.segment_id != segment_id else updated
                for s in state.unsettled_segments
                if not (settled and s.segment_id == segment_id)
            ]
            self._commit(slot, state.model_copy(update={"unsettled_segments": remaining}))

        if settled:
            logger.info("Segment settled", tenant=tenant, segment_id=segment_id)
        return settled

    # ============================================================
    # QUERIES
    # ============================================================

    def pending_count(self, tenant: str) -> int:
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)
        with slot.lock:
            return len(self._load(tenant, slot).pending_chain)

    def state(self, tenant: str) -> TenantLedgerState:
        """A deep copy of the tenant's current state."""
        tenant = normalize_tenant(tenant)
        slot = self._slot(tenant)
        with slot.lock:
            return self._load(tenant, slot).model_copy(deep=True)

    def tenants(self) -> list[str]:
        """Every tenant known in memory or in the store."""
        with self._arena_lock:
            loaded = {name for name, slot in self._slots.items() if slot.state is not None}
        return sorted(loaded | set(self._store.list_tenants()))

    def loaded_tenants(self) -> list[str]:
        with self._arena_lock:
            return sorted(name for name, slot in self._slots.items() if slot.state is not None)

    # ============================================================
    # VERIFICATION
    # ============================================================

    @staticmethod
    def verify_segment(events: Iterable[ChainedEvent], start_hash: str) -> str:
        """
        Recompute every hash of a segment and check its linkage.

        Returns:
            The segment's tail hash (start_hash for an empty segment)

        Raises:
            ChainError: On the first violation found
        """
        prev_hash = start_hash
        for expected_index, event in enumerate(events):
            if event.sequence_index != expected_index:
                raise ChainError(
                    f"Sequence gap or out-of-order event. "
                    f"Expected {expected_index}, got {event.sequence_index}"
                )

            if event.previous_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at index {expected_index}. "
                    f"Expected previous hash '{prev_hash[:16]}...', "
                    f"got '{event.previous_hash[:16]}...'"
                )

            if not Hasher.verify_event(event.hashed_fields(), event.hash, prev_hash):
                raise ChainError(
                    f"Hash verification failed at index {expected_index}. "
                    f"Stored: {event.hash[:16]}..."
                )

            prev_hash = event.hash
        return prev_hash

    @classmethod
    def _verify_state(cls, state: TenantLedgerState) -> None:
        tail = cls.verify_segment(state.pending_chain, state.segment_start_hash)
        if tail != state.tail_hash:
            raise ChainError(
                f"Tail hash of tenant {state.tenant} does not match its pending chain"
            )
        for segment in state.unsettled_segments:
            tail = cls.verify_segment(segment.events, segment.start_hash)
            if tail != segment.tail_hash:
                raise ChainError(
                    f"Tail hash of segment {segment.segment_id} does not match its events"
                )

    def verify_tenant(self, tenant: str) -> bool:
        """
        Verify the tenant's pending chain and every unsettled segment.

        This should be run periodically as a health check.
        """
        try:
            self._verify_state(self.state(tenant))
        except ChainError as e:
            logger.error("Chain verification failed", tenant=tenant, error=str(e))
            return False
        return True

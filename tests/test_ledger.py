"""
Tests for the Hash-Chain Ledger

Covers:
1. Canonical hashing
2. Append and chain linkage
3. Drain and segment reset
4. Tamper detection on load
5. Exactly-once drain under concurrency
"""

import json
import threading

import pytest

from adnet.core import (
    GENESIS_HASH,
    CanonicalSerializationError,
    ChainError,
    HashChainLedger,
    Hasher,
    LedgerError,
    TenantError,
    ValidationError,
    normalize_tenant,
)
from adnet.db import FileLedgerStore, InMemoryLedgerStore, StoreError
from adnet.schemas import Event, EventType, PartitionProgress, PartitionStatus


TENANT = "news.example.com"


def make_event(campaign_id="camp-1", event_type=EventType.VIEW, timestamp=1_700_000_000_000, **kwargs):
    return Event(campaign_id=campaign_id, type=event_type, timestamp=timestamp, **kwargs)


class TestHasher:
    """Canonical hashing. Every persisted chain depends on this."""

    def test_deterministic_hash(self):
        data = {"name": "test", "value": 42}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_sorted_keys(self):
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_golden_canonical_format(self):
        """The exact canonical string. If this changes, old chains stop verifying."""
        canonical = Hasher.canonicalize({"b": 2, "a": "x", "n": None, "nested": {"z": True, "y": []}})
        assert canonical == '{"__canon_v":1,"a":"x","b":2,"nested":{"y":[],"z":true}}'

    def test_null_handling(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_string_preserved(self):
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})

    def test_enum_uses_value(self):
        assert '"type":"click"' in Hasher.canonicalize({"type": EventType.CLICK})

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonicalize({"trust_score": 0.5})

    def test_top_level_must_be_dict(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize([1, 2, 3])

    def test_chain_hash_depends_on_previous(self):
        fields = make_event().hashed_fields()
        other_previous = "a" * 64
        assert Hasher.hash_event(fields, GENESIS_HASH) != Hasher.hash_event(fields, other_previous)

    def test_chain_hash_validates_previous_hash_format(self):
        with pytest.raises(CanonicalSerializationError, match="previous_hash"):
            Hasher.hash_event(make_event().hashed_fields(), "not-a-hash")

    def test_every_hashed_field_changes_the_hash(self):
        base = make_event(actor_address="0xabc", trust_score=10, promotion_id="p1")
        original = Hasher.hash_event(base.hashed_fields(), GENESIS_HASH)
        changes = {
            "campaign_id": "camp-2",
            "promotion_id": "p2",
            "type": EventType.CLICK,
            "actor_address": "0xdef",
            "verified": True,
            "trust_score": 11,
            "timestamp": base.timestamp + 1,
        }
        for name, value in changes.items():
            mutated = base.model_copy(update={name: value})
            assert Hasher.hash_event(mutated.hashed_fields(), GENESIS_HASH) != original, name

    def test_placement_not_hashed(self):
        plain = make_event()
        placed = make_event(placement={"id": "slot-1", "type": "banner"})
        assert Hasher.hash_event(plain.hashed_fields(), GENESIS_HASH) == \
            Hasher.hash_event(placed.hashed_fields(), GENESIS_HASH)

    def test_segment_reset_hash_is_not_genesis(self):
        reset = Hasher.segment_reset_hash(1_700_000_000_000_000_000)
        assert Hasher.is_valid_hash(reset)
        assert reset != GENESIS_HASH


class TestTenantNames:

    def test_normalizes_case_and_trailing_dot(self):
        assert normalize_tenant("News.Example.COM.") == TENANT

    @pytest.mark.parametrize("name", ["", None, "bad host", "../etc", "a/b", "-lead.example.com"])
    def test_rejects_unusable_names(self, name):
        with pytest.raises(TenantError):
            normalize_tenant(name)


class TestAppend:

    @pytest.fixture
    def ledger(self):
        return HashChainLedger(InMemoryLedgerStore(), clock_ns=lambda: 42)

    def test_first_event_links_to_genesis(self, ledger):
        chained = ledger.append(TENANT, make_event())
        assert chained.previous_hash == GENESIS_HASH
        assert chained.sequence_index == 0
        assert chained.hash == Hasher.hash_event(chained.hashed_fields(), GENESIS_HASH)

    def test_chain_integrity(self, ledger):
        chained = [ledger.append(TENANT, make_event(timestamp=i)) for i in range(10)]
        for i in range(1, len(chained)):
            assert chained[i].previous_hash == chained[i - 1].hash
            assert chained[i].sequence_index == i
        assert ledger.state(TENANT).tail_hash == chained[-1].hash

    def test_append_is_durable(self):
        store = InMemoryLedgerStore()
        ledger = HashChainLedger(store)
        chained = ledger.append(TENANT, make_event())
        persisted = store.load_state(TENANT)
        assert persisted.pending_chain == [chained]
        assert persisted.tail_hash == chained.hash

    def test_tenants_are_isolated(self, ledger):
        a = ledger.append("a.example.com", make_event())
        b = ledger.append("b.example.com", make_event())
        # Same event, same genesis: independent chains
        assert a.hash == b.hash
        ledger.append("a.example.com", make_event(timestamp=2))
        assert ledger.pending_count("a.example.com") == 2
        assert ledger.pending_count("b.example.com") == 1

    def test_store_failure_appends_nothing(self):
        class FailingStore(InMemoryLedgerStore):
            fail = False

            def save_state(self, state):
                if self.fail:
                    raise StoreError("disk full")
                super().save_state(state)

        store = FailingStore()
        ledger = HashChainLedger(store)
        first = ledger.append(TENANT, make_event())

        store.fail = True
        with pytest.raises(StoreError):
            ledger.append(TENANT, make_event(timestamp=2))

        store.fail = False
        second = ledger.append(TENANT, make_event(timestamp=3))
        assert second.sequence_index == 1
        assert second.previous_hash == first.hash

    def test_unhashable_event_is_a_validation_error(self, ledger):
        class FloatyEvent(Event):
            def hashed_fields(self):
                return {**super().hashed_fields(), "trust_score": 0.5}

        event = FloatyEvent(campaign_id="camp-1", type=EventType.VIEW, timestamp=1)
        with pytest.raises(ValidationError, match="cannot be hashed"):
            ledger.append(TENANT, event)
        assert ledger.pending_count(TENANT) == 0


class TestDrain:

    @pytest.fixture
    def ledger(self):
        return HashChainLedger(InMemoryLedgerStore(), clock_ns=lambda: 42)

    def test_drain_takes_everything(self, ledger):
        chained = [ledger.append(TENANT, make_event(timestamp=i)) for i in range(3)]
        drained = ledger.drain(TENANT)

        assert drained.events == chained
        assert drained.start_hash == GENESIS_HASH
        assert drained.tail_hash == chained[-1].hash
        assert drained.flush_index == 1
        assert drained.segment_id == f"000001-{chained[-1].hash[:12]}"
        assert ledger.pending_count(TENANT) == 0

    def test_drain_resets_tail_from_clock(self, ledger):
        ledger.append(TENANT, make_event())
        ledger.drain(TENANT)

        reset = Hasher.segment_reset_hash(42)
        state = ledger.state(TENANT)
        assert state.tail_hash == reset
        assert state.segment_start_hash == reset
        assert state.flush_count == 1

        next_event = ledger.append(TENANT, make_event(timestamp=5))
        assert next_event.previous_hash == reset
        assert next_event.sequence_index == 0

    def test_empty_drain_is_a_noop(self):
        store = InMemoryLedgerStore()
        ledger = HashChainLedger(store)
        drained = ledger.drain(TENANT)
        assert drained.is_empty
        assert drained.segment_id is None
        assert store.load_state(TENANT) is None

    def test_drained_events_stay_persisted_until_settled(self, ledger):
        ledger.append(TENANT, make_event("camp-1"))
        ledger.append(TENANT, make_event("camp-2"))
        drained = ledger.drain(TENANT)

        [segment] = ledger.unsettled(TENANT)
        assert segment.segment_id == drained.segment_id
        assert len(segment.events) == 2
        assert list(segment.partitions) == ["camp-1", "camp-2"]

        settled = PartitionProgress(campaign_id="camp-1", status=PartitionStatus.SETTLED)
        assert ledger.record_partition(TENANT, drained.segment_id, settled) is False
        assert len(ledger.unsettled(TENANT)) == 1

        settled = PartitionProgress(campaign_id="camp-2", status=PartitionStatus.REJECTED)
        assert ledger.record_partition(TENANT, drained.segment_id, settled) is True
        assert ledger.unsettled(TENANT) == []

    def test_record_partition_unknown_segment(self, ledger):
        with pytest.raises(LedgerError, match="Unknown segment"):
            ledger.record_partition(TENANT, "000009-abc", PartitionProgress(campaign_id="camp-1"))

    def test_partition_keeps_first_seen_order(self, ledger):
        for campaign_id in ["b", "a", "b", "c", "a"]:
            ledger.append(TENANT, make_event(campaign_id))
        groups = ledger.drain(TENANT).partition()
        assert list(groups) == ["b", "a", "c"]
        assert [e.sequence_index for e in groups["b"]] == [0, 2]

    def test_segments_verify_independently(self, ledger):
        ledger.append(TENANT, make_event())
        first = ledger.drain(TENANT)
        ledger.append(TENANT, make_event(timestamp=9))
        second = ledger.drain(TENANT)

        assert second.start_hash != first.tail_hash
        assert HashChainLedger.verify_segment(first.events, first.start_hash) == first.tail_hash
        assert HashChainLedger.verify_segment(second.events, second.start_hash) == second.tail_hash


class TestChainIntegrity:
    """Tamper detection for persisted chains."""

    def test_tampered_field_detected(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        events = [ledger.append(TENANT, make_event(timestamp=i)) for i in range(3)]
        events[1] = events[1].model_copy(update={"campaign_id": "camp-evil"})

        with pytest.raises(ChainError, match="Hash verification failed at index 1"):
            HashChainLedger.verify_segment(events, GENESIS_HASH)

    def test_reordered_events_detected(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        events = [ledger.append(TENANT, make_event(timestamp=i)) for i in range(3)]
        events[0], events[1] = events[1], events[0]

        with pytest.raises(ChainError, match="Sequence gap"):
            HashChainLedger.verify_segment(events, GENESIS_HASH)

    def test_wrong_start_hash_detected(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        events = [ledger.append(TENANT, make_event())]

        with pytest.raises(ChainError, match="linkage broken"):
            HashChainLedger.verify_segment(events, "f" * 64)

    def test_reload_from_disk(self, tmp_path):
        ledger = HashChainLedger(FileLedgerStore(tmp_path))
        chained = [ledger.append(TENANT, make_event(timestamp=i)) for i in range(3)]

        reloaded = HashChainLedger(FileLedgerStore(tmp_path))
        state = reloaded.state(TENANT)
        assert state.pending_chain == chained
        assert state.tail_hash == chained[-1].hash

        next_event = reloaded.append(TENANT, make_event(timestamp=3))
        assert next_event.previous_hash == chained[-1].hash

    def test_tampered_file_rejected_on_load(self, tmp_path):
        ledger = HashChainLedger(FileLedgerStore(tmp_path))
        for i in range(3):
            ledger.append(TENANT, make_event(timestamp=i))

        path = tmp_path / TENANT / "ledger.json"
        document = json.loads(path.read_text())
        document["pending_chain"][1]["trust_score"] = 99
        path.write_text(json.dumps(document))

        reloaded = HashChainLedger(FileLedgerStore(tmp_path))
        with pytest.raises(ChainError):
            reloaded.state(TENANT)

    def test_tampered_unsettled_segment_rejected_on_load(self, tmp_path):
        ledger = HashChainLedger(FileLedgerStore(tmp_path))
        ledger.append(TENANT, make_event())
        ledger.append(TENANT, make_event(timestamp=2))
        ledger.drain(TENANT)

        path = tmp_path / TENANT / "ledger.json"
        document = json.loads(path.read_text())
        document["unsettled_segments"][0]["events"][0]["type"] = "click"
        path.write_text(json.dumps(document))

        with pytest.raises(ChainError):
            HashChainLedger(FileLedgerStore(tmp_path)).state(TENANT)

    def test_verify_tenant(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        ledger.append(TENANT, make_event())
        assert ledger.verify_tenant(TENANT)


class TestConcurrency:

    def test_drain_hands_each_event_out_once(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        writers, per_writer = 8, 25
        drained = []
        drained_lock = threading.Lock()
        done = threading.Event()

        def write(worker):
            for i in range(per_writer):
                ledger.append(TENANT, make_event(f"camp-{worker}", timestamp=i))

        def drain():
            while not done.is_set():
                segment = ledger.drain(TENANT)
                if not segment.is_empty:
                    HashChainLedger.verify_segment(segment.events, segment.start_hash)
                    with drained_lock:
                        drained.extend(segment.events)

        drainers = [threading.Thread(target=drain) for _ in range(3)]
        for thread in drainers:
            thread.start()
        threads = [threading.Thread(target=write, args=(w,)) for w in range(writers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        done.set()
        for thread in drainers:
            thread.join()

        remaining = ledger.state(TENANT).pending_chain
        hashes = [e.hash for e in drained] + [e.hash for e in remaining]
        assert len(hashes) == writers * per_writer
        assert len(set(hashes)) == len(hashes)

    def test_tenants_do_not_block_each_other(self):
        ledger = HashChainLedger(InMemoryLedgerStore())
        tenants = [f"site{i}.example.com" for i in range(5)]

        def write(tenant):
            for i in range(20):
                ledger.append(tenant, make_event(timestamp=i))

        threads = [threading.Thread(target=write, args=(t,)) for t in tenants]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for tenant in tenants:
            assert ledger.pending_count(tenant) == 20
            assert ledger.verify_tenant(tenant)
        assert ledger.tenants() == sorted(tenants)

"""
Tests for signature verification, reach and the optional identity capabilities.
"""

import json

import pytest
from eth_account import Account

from adnet.core import (
    AnonymousIdentity,
    ClientReportedTrustScore,
    DelegationIdentityProvider,
    NoTrustScore,
    ReachAggregator,
    SignatureVerifier,
    VerificationFailure,
    compute_reach,
)
from adnet.core.reach import count_types
from adnet.core.verifier import build_event_message
from adnet.schemas import Event, EventType, RecordEventRequest


# Well-known test key. Never holds funds.
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = Account.from_key(TEST_KEY).address


def flip_byte(signature: str, index: int = 10) -> str:
    raw = bytearray(bytes.fromhex(signature[2:]))
    raw[index] ^= 0xFF
    return "0x" + raw.hex()


class TestSignatureVerifier:

    def test_message_format(self):
        assert build_event_message("c1", EventType.CLICK, 5) == "adnet:c1:click:5"
        assert build_event_message("c1", "view", 5) == "adnet:c1:view:5"

    def test_round_trip(self):
        signature = SignatureVerifier.sign(TEST_KEY, "c1", "view", 1700000000000)
        outcome = SignatureVerifier.verify(TEST_ADDRESS, signature, "c1", "view", 1700000000000)
        assert outcome.verified
        assert outcome.recovered_address == TEST_ADDRESS
        assert outcome.reason is None

    def test_flipped_byte_fails(self):
        signature = SignatureVerifier.sign(TEST_KEY, "c1", "view", 1700000000000)
        outcome = SignatureVerifier.verify(
            TEST_ADDRESS, flip_byte(signature), "c1", "view", 1700000000000
        )
        assert not outcome.verified
        assert outcome.reason in (
            VerificationFailure.ADDRESS_MISMATCH,
            VerificationFailure.MALFORMED_SIGNATURE,
        )

    def test_address_compare_ignores_case(self):
        signature = SignatureVerifier.sign(TEST_KEY, "c1", EventType.VIEW, 1)
        assert SignatureVerifier.verify(TEST_ADDRESS.lower(), signature, "c1", EventType.VIEW, 1).verified

    def test_signature_binds_to_message(self):
        signature = SignatureVerifier.sign(TEST_KEY, "c1", "view", 1)
        for campaign_id, event_type, timestamp in [("c2", "view", 1), ("c1", "click", 1), ("c1", "view", 2)]:
            outcome = SignatureVerifier.verify(TEST_ADDRESS, signature, campaign_id, event_type, timestamp)
            assert not outcome.verified
            assert outcome.reason == VerificationFailure.ADDRESS_MISMATCH

    def test_someone_elses_address(self):
        other = Account.create().address
        signature = SignatureVerifier.sign(TEST_KEY, "c1", "view", 1)
        outcome = SignatureVerifier.verify(other, signature, "c1", "view", 1)
        assert not outcome.verified
        assert outcome.recovered_address == TEST_ADDRESS

    @pytest.mark.parametrize("signature", ["0xdeadbeef", "not hex at all"])
    def test_garbage_never_raises(self, signature):
        outcome = SignatureVerifier.verify(TEST_ADDRESS, signature, "c1", "view", 1)
        assert not outcome.verified
        assert outcome.reason == VerificationFailure.MALFORMED_SIGNATURE

    def test_missing_parts(self):
        signature = SignatureVerifier.sign(TEST_KEY, "c1", "view", 1)
        assert SignatureVerifier.verify(TEST_ADDRESS, None, "c1", "view", 1).reason == \
            VerificationFailure.MISSING_SIGNATURE
        assert SignatureVerifier.verify(None, signature, "c1", "view", 1).reason == \
            VerificationFailure.MISSING_ADDRESS
        assert SignatureVerifier.verify(TEST_ADDRESS, signature, "c1", "view", None).reason == \
            VerificationFailure.MISSING_TIMESTAMP


def view(address, verified=True, score=None, event_type=EventType.VIEW):
    return Event(
        campaign_id="c1",
        type=event_type,
        actor_address=address,
        verified=verified,
        trust_score=score,
        timestamp=1,
    )


class TestReach:

    def test_dedup_with_trust_floor(self):
        events = [
            view("0xA", score=20),
            view("0xA", score=20),
            view("0xB", score=5),
            view("0xC", verified=False),
        ]
        report = compute_reach(events, min_trust_score=10)
        assert report.reach == 1
        assert report.excluded_low_trust == 1
        assert report.excluded_unverified == 1

    def test_order_independent(self):
        events = [view("0xA", score=20), view("0xB", score=5), view("0xC", verified=False), view("0xD", score=30)]
        expected = compute_reach(events, 10)
        assert compute_reach(list(reversed(events)), 10) == expected
        assert compute_reach(events[1:] + events[:1], 10) == expected

    def test_address_case_deduplicated(self):
        report = compute_reach([view("0xAbC"), view("0xabc")])
        assert report.reach == 1

    def test_clicks_do_not_count(self):
        report = compute_reach([view("0xA", event_type=EventType.CLICK)])
        assert report.reach == 0
        assert report.excluded_low_trust == 0

    def test_unverified_clicks_are_excluded(self):
        report = compute_reach([view("0xA", verified=False, event_type=EventType.CLICK)])
        assert report.excluded_unverified == 1

    def test_missing_score_counts_as_zero(self):
        assert compute_reach([view("0xA")], min_trust_score=0).reach == 1
        report = compute_reach([view("0xA")], min_trust_score=1)
        assert report.reach == 0
        assert report.excluded_low_trust == 1

    def test_aggregator_uses_its_floor(self):
        aggregator = ReachAggregator(min_trust_score=50)
        assert aggregator.compute([view("0xA", score=49)]).reach == 0
        assert aggregator.compute([view("0xA", score=50)]).reach == 1

    def test_count_types(self):
        events = [view("0xA"), view("0xB", event_type=EventType.CLICK), view(None)]
        assert count_types(events) == (2, 1)


class TestTrustScore:

    def test_client_reported(self):
        request = RecordEventRequest.model_validate(
            {"campaignId": "c1", "type": "view", "notabotScore": {"points": 42.7}}
        )
        assert ClientReportedTrustScore().score(request, None) == 42

    def test_disabled(self):
        request = RecordEventRequest.model_validate({"campaignId": "c1", "type": "view", "trustScore": 9})
        assert NoTrustScore().score(request, None) is None


class TestDelegationIdentity:

    TENANT = "news.example.com"

    @pytest.fixture
    def provider(self):
        return DelegationIdentityProvider(clock_ms=lambda: 1_000)

    def token(self, **overrides):
        delegation = {"subject": TEST_ADDRESS, "audience": self.TENANT, "expires": 2_000}
        delegation.update(overrides)
        return json.dumps({"delegation": delegation, "signature": "0xsig"})

    def test_header(self, provider):
        identity = provider.resolve(self.TENANT, {"x-epistery-delegation": self.token()}, {})
        assert identity.address == TEST_ADDRESS
        assert identity.domain == self.TENANT

    def test_cookie(self, provider):
        identity = provider.resolve(self.TENANT, {}, {"epistery_delegation": self.token()})
        assert identity.address == TEST_ADDRESS

    def test_audience_case_insensitive(self, provider):
        token = self.token(audience="News.Example.com")
        assert provider.resolve(self.TENANT, {"x-epistery-delegation": token}, {}) is not None

    @pytest.mark.parametrize("overrides", [
        {"expires": 999},
        {"audience": "other.example.com"},
        {"subject": None},
        {"expires": "tomorrow"},
    ])
    def test_rejected_tokens(self, provider, overrides):
        token = self.token(**overrides)
        assert provider.resolve(self.TENANT, {"x-epistery-delegation": token}, {}) is None

    def test_unsigned_token(self, provider):
        token = json.dumps({"delegation": {"subject": TEST_ADDRESS, "audience": self.TENANT, "expires": 2_000}})
        assert provider.resolve(self.TENANT, {"x-epistery-delegation": token}, {}) is None

    def test_not_json(self, provider):
        assert provider.resolve(self.TENANT, {"x-epistery-delegation": "{broken"}, {}) is None

    def test_no_token(self, provider):
        assert provider.resolve(self.TENANT, {}, {}) is None

    def test_anonymous(self):
        assert AnonymousIdentity().resolve(self.TENANT, {"x-epistery-delegation": self.token()}, {}) is None

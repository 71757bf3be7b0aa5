"""
HTTP API tests.

The publisher (tenant) is the request host: TestClient sends
"testserver" unless a base_url says otherwise.
"""

import json

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from adnet.core import (
    AnonymousIdentity,
    BlockchainGateway,
    DelegationIdentityProvider,
    FlushMode,
    InMemoryBlobStore,
    SettlementConfig,
    SignatureVerifier,
    StaticCampaignDirectory,
)
from adnet.db import InMemoryLedgerStore
from adnet.main import create_app
from adnet.observability import MetricsCollector, check_health
from adnet.services import build_services


TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = Account.from_key(TEST_KEY).address


def make_services(identity=None, threshold=5):
    return build_services(
        store=InMemoryLedgerStore(),
        blob_store=InMemoryBlobStore(),
        campaigns=StaticCampaignDirectory(),
        gateway=BlockchainGateway(client=None),
        config=SettlementConfig(
            threshold=threshold,
            flush_mode=FlushMode.SYNC,
            retry_interval_seconds=0,
        ),
        identity=identity or AnonymousIdentity(),
    )


@pytest.fixture
def services():
    return make_services()


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def view(campaign_id="camp-1", **fields):
    return {"campaignId": campaign_id, "type": "view", "timestamp": 1700000000000, **fields}


class TestRecord:

    def test_records_event(self, client):
        response = client.post("/record", json=view())
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert len(body["eventHash"]) == 64
        assert body["chainIndex"] == 0
        assert body["verified"] is False
        assert body["batchProgress"] == "1/5"

    def test_signed_event(self, client):
        signature = SignatureVerifier.sign(TEST_KEY, "camp-1", "view", 1700000000000)
        response = client.post("/record", json=view(actorAddress=TEST_ADDRESS, signature=signature))
        assert response.json()["verified"] is True

    def test_legacy_field_names(self, client, services):
        client.post("/record", json=view(userAddress=TEST_ADDRESS, notabotScore={"points": 12}))
        [event] = services.ledger.state("testserver").pending_chain
        assert event.actor_address == TEST_ADDRESS
        assert event.trust_score == 12

    def test_placement_kept(self, client, services):
        client.post("/record", json=view(placement={"id": "slot-1", "type": "banner", "pageUrl": "/news"}))
        [event] = services.ledger.state("testserver").pending_chain
        assert event.placement.page_url == "/news"

    @pytest.mark.parametrize("body", [
        {"type": "view"},
        {"campaignId": "  ", "type": "view"},
        {"campaignId": "camp-1", "type": "hover"},
        {"campaignId": "camp-1", "type": "view", "timestamp": -1},
    ])
    def test_invalid_events_rejected(self, client, services, body):
        response = client.post("/record", json=body)
        assert response.status_code == 400
        assert response.json()["status"] == "error"
        assert services.ledger.pending_count("testserver") == 0

    def test_threshold_flush(self, client, services):
        for i in range(5):
            response = client.post("/record", json=view(campaign_id=f"camp-{i % 2}"))
        assert response.json()["batchProgress"] == "5/5"
        assert services.ledger.pending_count("testserver") == 0
        assert len(services.settlement.history("testserver")) == 2

    def test_tenant_is_the_host(self, services):
        app = create_app(services)
        with TestClient(app, base_url="http://News.Example.com") as news:
            news.post("/record", json=view())
            assert news.get("/status").json()["domain"] == "news.example.com"

            blog = TestClient(app, base_url="http://blog.example.com")
            blog.post("/record", json=view())
            blog.post("/record", json=view())
            status = blog.get("/status").json()

            assert status["domain"] == "blog.example.com"
            assert status["chain"]["length"] == 2
            assert services.ledger.pending_count("news.example.com") == 1

    def test_delegated_identity(self):
        services = make_services(identity=DelegationIdentityProvider())
        token = json.dumps({
            "delegation": {"subject": TEST_ADDRESS, "audience": "testserver", "expires": 32503680000000},
            "signature": "0xsig",
        })
        with TestClient(create_app(services)) as client:
            response = client.post("/record", json=view(), headers={"X-Epistery-Delegation": token})
            [event] = services.ledger.state("testserver").pending_chain

        assert response.json()["verified"] is False
        assert event.actor_address == TEST_ADDRESS
        assert not event.verified
        # Pending events are flushed on shutdown
        [record] = services.settlement.history("testserver")
        assert record.event_count == 1


class TestStatusAndHistory:

    def test_status(self, client, services):
        client.post("/record", json=view())
        body = client.get("/status").json()

        assert body["domain"] == "testserver"
        assert body["chain"]["length"] == 1
        assert body["chain"]["threshold"] == 5
        assert body["chain"]["last_hash"] == services.ledger.state("testserver").tail_hash
        assert body["blockchain"] == {"enabled": False, "wallet": None}
        assert body["totals"]["total_events"] == 0

    def test_history_newest_first(self, client):
        for i in range(5):
            client.post("/record", json=view(campaign_id="camp-a"))
        for i in range(5):
            client.post("/record", json=view(campaign_id="camp-b"))

        body = client.get("/history").json()
        assert [b["campaign_id"] for b in body["batches"]] == ["camp-b", "camp-a"]
        assert body["totals"]["total_events"] == 10
        assert body["totals"]["flush_count"] == 2

        limited = client.get("/history", params={"limit": 1}).json()
        assert len(limited["batches"]) == 1
        assert limited["totals"]["total_events"] == 10

    def test_empty_history(self, client):
        body = client.get("/history").json()
        assert body["batches"] == []
        assert body["totals"]["flush_count"] == 0


class TestFlushAndRetry:

    def test_manual_flush(self, client):
        client.post("/record", json=view())
        body = client.post("/flush").json()
        assert body["completed"] is True
        assert len(body["batches"]) == 1
        assert body["batches"][0]["settlement"] == "off_chain"

    def test_empty_flush(self, client):
        body = client.post("/flush").json()
        assert body["completed"] is True
        assert body["batches"] == []

    def test_retry_nothing(self, client):
        body = client.post("/retry").json()
        assert body["batches"] == []


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_ledger_health(self, client):
        client.post("/record", json=view())
        response = client.get("/health/ledger")
        assert response.status_code == 200
        assert response.json()["checks"]["chain_integrity"]["tenants_checked"] == 1

    def test_metrics(self, client):
        client.post("/record", json=view())
        body = client.get("/metrics").json()
        assert body["events_recorded"] >= 1
        assert body["requests_total"] >= 1


class TestMetricsCollector:

    def test_partition_outcomes(self):
        metrics = MetricsCollector()
        for outcome in ["confirmed", "off_chain", "off_chain", "rejected", "failed", "not_attempted"]:
            metrics.record_partition(outcome)
        summary = metrics.get_summary()
        assert summary["partitions_confirmed"] == 1
        assert summary["partitions_off_chain"] == 2
        assert summary["partitions_rejected"] == 1
        assert summary["partitions_failed"] == 2

    def test_check_health_without_ledger(self):
        status = check_health(store=InMemoryLedgerStore())
        assert status.healthy
        assert status.checks["ledger_store"]["backend"] == "InMemoryLedgerStore"

"""
Demonstration: One Settlement Round

Records a handful of ad events for a publisher, lets the threshold
trigger a flush, and checks the uploaded summaries offline.

Everything runs in memory: no IPFS node, no chain, no campaign factory.

Run with: python -m examples.demo_settlement
"""

import json

from eth_account import Account

from adnet.core import (
    AnonymousIdentity,
    BlockchainGateway,
    FlushMode,
    InMemoryBlobStore,
    SettlementConfig,
    SignatureVerifier,
    StaticCampaignDirectory,
)
from adnet.db import InMemoryLedgerStore
from adnet.schemas import RecordEventRequest
from adnet.services import build_services
from tools.verify import SummaryVerifier

PUBLISHER = "news.example.com"


def main():
    print("=" * 60)
    print("Adnet - Settlement Round Demonstration")
    print("=" * 60)
    print()

    blob_store = InMemoryBlobStore()
    services = build_services(
        store=InMemoryLedgerStore(),
        blob_store=blob_store,
        campaigns=StaticCampaignDirectory(),
        gateway=BlockchainGateway(client=None),
        config=SettlementConfig(threshold=4, flush_mode=FlushMode.SYNC),
        identity=AnonymousIdentity(),
    )

    viewers = [Account.create(), Account.create()]

    # ================================================================
    # STEP 1: RECORD EVENTS
    # ================================================================
    print("=" * 60)
    print("STEP 1: RECORD EVENTS")
    print("=" * 60)

    requests = []
    for i, viewer in enumerate(viewers):
        timestamp = 1_700_000_000_000 + i
        requests.append(RecordEventRequest(
            campaign_id="spring-sale",
            type="view",
            timestamp=timestamp,
            actor_address=viewer.address,
            signature=SignatureVerifier.sign(viewer.key, "spring-sale", "view", timestamp),
        ))
    requests.append(RecordEventRequest(campaign_id="spring-sale", type="click", timestamp=1_700_000_000_010))
    requests.append(RecordEventRequest(campaign_id="bike-week", type="view", timestamp=1_700_000_000_020))

    for request in requests:
        response = services.collector.record(PUBLISHER, request)
        print(f"[OK] {request.type.value:5} {request.campaign_id:12} "
              f"#{response.chain_index} verified={response.verified} "
              f"progress={response.batch_progress}")
        print(f"   Event Hash: {response.event_hash[:16]}...")
    print()

    # ================================================================
    # STEP 2: SETTLEMENT
    # ================================================================
    print("=" * 60)
    print("STEP 2: SETTLEMENT (threshold reached)")
    print("=" * 60)

    records = services.settlement.history(PUBLISHER)
    for record in records:
        print(f"[OK] {record.campaign_id}: {record.settlement.value}")
        print(f"   Views: {record.views}  Clicks: {record.clicks}  Reach: {record.reach}")
        print(f"   Content: {record.content_address[:24]}...")
    print()

    # ================================================================
    # STEP 3: OFFLINE VERIFICATION
    # ================================================================
    print("=" * 60)
    print("STEP 3: OFFLINE VERIFICATION")
    print("=" * 60)

    for record in records:
        summary = json.loads(blob_store.get(record.content_address))
        report = SummaryVerifier(summary).verify()
        print(f"  {record.campaign_id:12} | {report.event_count} events | {report.result.value}")

    totals = services.settlement.totals(PUBLISHER)
    print()
    print("=" * 60)
    print("DEMONSTRATION COMPLETE")
    print("=" * 60)
    print()
    print(f"Flushes: {totals.flush_count}  Events settled: {totals.total_events}")
    print("Each summary can be checked by anyone holding its content address.")


if __name__ == "__main__":
    main()

"""
Service Graph

Builds the shared ledger, settlement, scheduler and collector from the
environment. The app (adnet.main) and the operator CLI (tools/manage.py)
both start here, so they always agree on where state lives.

Mode is determined by environment variables:
- ADNET_DATA_DIR / ADNET_STORE_DRIVER: where ledger state lives
- ADNET_RPC_URL + ADNET_PRIVATE_KEY: on-chain settlement (else off-chain only)
- ADNET_FACTORY_URL, ADNET_IPFS_URL, ADNET_IPFS_GATEWAY: downstream services
- ADNET_PUBLISHER_ADDRESS: publisher identity when no wallet is configured
- ADNET_DELEGATION_ENABLED: accept delegation tokens (default: true)
- ADNET_TRUST_SCORE_ENABLED: record client trust scores (default: true)
"""

import os
from dataclasses import dataclass
from typing import Optional

from .core import (
    AnonymousIdentity,
    BatchSettlement,
    BlobStore,
    BlockchainGateway,
    CampaignDirectory,
    ClientReportedTrustScore,
    DelegationIdentityProvider,
    EventCollector,
    HashChainLedger,
    HttpCampaignDirectory,
    IdentityProvider,
    IpfsBlobStore,
    NoTrustScore,
    ReachAggregator,
    SettlementConfig,
    SettlementScheduler,
    TrustScoreSource,
)
from .db import LedgerStore, StoreConfig, create_store
from .observability import get_logger, get_metrics

logger = get_logger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


@dataclass
class Services:
    """Everything a request handler or CLI command may need."""
    store: LedgerStore
    ledger: HashChainLedger
    blob_store: BlobStore
    campaigns: CampaignDirectory
    gateway: BlockchainGateway
    settlement: BatchSettlement
    scheduler: SettlementScheduler
    collector: EventCollector
    identity: IdentityProvider
    config: SettlementConfig

    def close(self) -> None:
        self.blob_store.close()
        self.campaigns.close()


def build_services(
    store: Optional[LedgerStore] = None,
    blob_store: Optional[BlobStore] = None,
    campaigns: Optional[CampaignDirectory] = None,
    gateway: Optional[BlockchainGateway] = None,
    config: Optional[SettlementConfig] = None,
    identity: Optional[IdentityProvider] = None,
    trust_source: Optional[TrustScoreSource] = None,
    publisher_address: Optional[str] = None,
) -> Services:
    """
    Wire the service graph. Anything not passed in is built from the environment.
    """
    config = config or SettlementConfig.from_env()
    store = store or create_store(StoreConfig.from_env())
    campaigns = campaigns or HttpCampaignDirectory()
    blob_store = blob_store or IpfsBlobStore()
    gateway = gateway or BlockchainGateway.from_config()

    if identity is None:
        identity = (
            DelegationIdentityProvider()
            if _env_flag("ADNET_DELEGATION_ENABLED", True)
            else AnonymousIdentity()
        )
    if trust_source is None:
        trust_source = (
            ClientReportedTrustScore()
            if _env_flag("ADNET_TRUST_SCORE_ENABLED", True)
            else NoTrustScore()
        )

    ledger = HashChainLedger(store)
    settlement = BatchSettlement(
        ledger,
        blob_store=blob_store,
        campaigns=campaigns,
        gateway=gateway,
        reach=ReachAggregator(config.min_trust_score),
        publisher_address=publisher_address or os.environ.get("ADNET_PUBLISHER_ADDRESS"),
        factory_url=getattr(campaigns, "factory_url", None),
        max_attempts=config.max_settlement_attempts,
        metrics=get_metrics(),
    )
    scheduler = SettlementScheduler(settlement, ledger, config)
    collector = EventCollector(ledger, scheduler, trust_source=trust_source)

    logger.info(
        "Services ready",
        store_type=type(store).__name__,
        blockchain_enabled=gateway.enabled,
        threshold=config.threshold,
        flush_mode=config.flush_mode.value,
    )
    return Services(
        store=store,
        ledger=ledger,
        blob_store=blob_store,
        campaigns=campaigns,
        gateway=gateway,
        settlement=settlement,
        scheduler=scheduler,
        collector=collector,
        identity=identity,
        config=config,
    )

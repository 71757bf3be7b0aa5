# Core ledger and settlement services
from .hasher import GENESIS_HASH, CanonicalSerializationError, Hasher
from .ledger import (
    ChainError,
    DrainedSegment,
    HashChainLedger,
    LedgerError,
    TenantError,
    ValidationError,
    normalize_tenant,
)
from .verifier import SignatureVerifier, VerificationFailure, VerificationOutcome
from .reach import ReachAggregator, ReachReport, compute_reach
from .blobstore import BlobStore, BlobStoreError, ContentRef, InMemoryBlobStore, IpfsBlobStore
from .campaigns import (
    CampaignDirectory,
    CampaignDirectoryError,
    HttpCampaignDirectory,
    StaticCampaignDirectory,
)
from .gateway import (
    BlockchainGateway,
    ContractRejectedError,
    GatewayConfig,
    GatewayError,
    GatewayUnavailableError,
    RevertReason,
    SubmissionReceipt,
    format_bytes32,
)
from .identity import (
    AnonymousIdentity,
    ClientReportedTrustScore,
    DelegationIdentityProvider,
    IdentityProvider,
    NoTrustScore,
    TrustScoreSource,
)
from .settlement import BatchSettlement
from .scheduler import FlushMode, SettlementConfig, SettlementScheduler
from .collector import EventCollector

__all__ = [
    "GENESIS_HASH",
    "Hasher",
    "CanonicalSerializationError",
    "HashChainLedger",
    "DrainedSegment",
    "LedgerError",
    "ValidationError",
    "ChainError",
    "TenantError",
    "normalize_tenant",
    "SignatureVerifier",
    "VerificationFailure",
    "VerificationOutcome",
    "ReachAggregator",
    "ReachReport",
    "compute_reach",
    "BlobStore",
    "BlobStoreError",
    "ContentRef",
    "InMemoryBlobStore",
    "IpfsBlobStore",
    "CampaignDirectory",
    "CampaignDirectoryError",
    "HttpCampaignDirectory",
    "StaticCampaignDirectory",
    "BlockchainGateway",
    "ContractRejectedError",
    "GatewayConfig",
    "GatewayError",
    "GatewayUnavailableError",
    "RevertReason",
    "SubmissionReceipt",
    "format_bytes32",
    "AnonymousIdentity",
    "ClientReportedTrustScore",
    "DelegationIdentityProvider",
    "IdentityProvider",
    "NoTrustScore",
    "TrustScoreSource",
    "BatchSettlement",
    "FlushMode",
    "SettlementConfig",
    "SettlementScheduler",
    "EventCollector",
]

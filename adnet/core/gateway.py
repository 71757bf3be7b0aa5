"""
Blockchain Gateway

Submits settled batches to each campaign's wallet contract:

    submitBatch(string cid, uint256 views, uint256 clicks, uint256 reach, bytes32 lastHash)

The publisher wallet must hold PUBLISHER_ROLE on the contract.

Failures come back typed:
- ContractRejectedError: the contract said no (budget, inactive, role).
  Final. Retrying would only burn gas.
- GatewayUnavailableError: RPC down, timed out, or the receipt never came.
  Retryable. Carries tx_hash when the transaction was already broadcast,
  so a retry can look for the receipt before sending a second one.

With no RPC URL or key configured the gateway is disabled and
submit_batch returns None (settlement records the batch off-chain).

Configuration (environment variables):
- ADNET_RPC_URL: JSON-RPC endpoint
- ADNET_PRIVATE_KEY: Publisher wallet key (hex)
- ADNET_RECEIPT_TIMEOUT_SECONDS: How long to wait for a receipt (default: 120)
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from ..observability import get_logger

logger = get_logger(__name__)


ZERO_BYTES32 = "0x" + "0" * 64

CAMPAIGN_WALLET_ABI = [
    {
        "type": "function",
        "name": "submitBatch",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "ipfsCID", "type": "string"},
            {"name": "impressions", "type": "uint256"},
            {"name": "clicks", "type": "uint256"},
            {"name": "reach", "type": "uint256"},
            {"name": "lastHash", "type": "bytes32"},
        ],
        "outputs": [],
    },
]


class RevertReason(str, Enum):
    BUDGET_EXHAUSTED = "budget_exhausted"
    CAMPAIGN_INACTIVE = "campaign_inactive"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


class GatewayError(Exception):
    """Base exception for blockchain gateway errors."""
    pass


class ContractRejectedError(GatewayError):
    """The contract refused the batch. Never retried automatically."""

    def __init__(self, reason: RevertReason, message: str = "", tx_hash: Optional[str] = None):
        super().__init__(message or reason.value)
        self.reason = reason
        self.tx_hash = tx_hash


class GatewayUnavailableError(GatewayError):
    """Infrastructure failure. Safe to retry."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


def format_bytes32(value: Optional[str]) -> str:
    """
    Format a hex hash as a bytes32 literal.

    Strips 0x, keeps the first 64 hex characters, right-pads with '0'.
    Empty input gives 32 zero bytes.
    """
    if not value:
        return ZERO_BYTES32
    clean = value[2:] if value.startswith(("0x", "0X")) else value
    return "0x" + clean[:64].ljust(64, "0")


def classify_revert(message: str) -> RevertReason:
    """Map a revert message to the reason settlement records."""
    text = (message or "").lower()
    if "budget exceeded" in text or "budget exhausted" in text or "insufficient budget" in text:
        return RevertReason.BUDGET_EXHAUSTED
    if "campaign inactive" in text or "not active" in text or "paused" in text:
        return RevertReason.CAMPAIGN_INACTIVE
    if "accesscontrol" in text or "missing role" in text or "unauthorized" in text:
        return RevertReason.UNAUTHORIZED
    return RevertReason.UNKNOWN


@dataclass(frozen=True)
class SubmissionReceipt:
    tx_hash: str
    block_number: int


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TxLookup:
    status: TxStatus
    block_number: Optional[int] = None


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class GatewayConfig:
    rpc_url: Optional[str] = None
    private_key: Optional[str] = None
    receipt_timeout_seconds: float = 120.0

    @property
    def enabled(self) -> bool:
        return bool(self.rpc_url and self.private_key)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            rpc_url=os.environ.get("ADNET_RPC_URL") or None,
            private_key=os.environ.get("ADNET_PRIVATE_KEY") or None,
            receipt_timeout_seconds=float(os.environ.get("ADNET_RECEIPT_TIMEOUT_SECONDS", "120")),
        )


# ============================================================
# CONTRACT CLIENTS
# ============================================================

class ContractClient(ABC):
    """The raw chain operations the gateway needs."""

    @property
    @abstractmethod
    def wallet_address(self) -> str:
        pass

    @abstractmethod
    def submit_batch(
        self,
        contract_address: str,
        content_address: str,
        views: int,
        clicks: int,
        reach: int,
        last_hash: str,
    ) -> SubmissionReceipt:
        """Send the transaction and wait for its receipt."""
        pass

    @abstractmethod
    def lookup(self, tx_hash: str) -> TxLookup:
        """Where a previously broadcast transaction has got to."""
        pass


class Web3ContractClient(ContractClient):
    """
    web3.py client for a single publisher wallet.

    Nonces are assigned under a lock: two partitions settling at once
    must not send two transactions with the same nonce.
    """

    def __init__(self, rpc_url: str, private_key: str, receipt_timeout_seconds: float = 120.0):
        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self._account = Account.from_key(private_key)
        self._receipt_timeout = receipt_timeout_seconds
        self._nonce_lock = Lock()

    @property
    def wallet_address(self) -> str:
        return self._account.address

    def submit_batch(self, contract_address, content_address, views, clicks, reach, last_hash):
        contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CAMPAIGN_WALLET_ABI,
        )
        call = contract.functions.submitBatch(
            content_address, views, clicks, reach, bytes.fromhex(last_hash[2:])
        )

        with self._nonce_lock:
            # build_transaction estimates gas, so a revert surfaces here
            # as ContractLogicError before anything is broadcast.
            tx = call.build_transaction({
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
                "chainId": self._w3.eth.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = Web3.to_hex(self._w3.eth.send_raw_transaction(signed.raw_transaction))

        logger.info("Transaction submitted", tx_hash=tx_hash, contract=contract_address)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except TimeExhausted as e:
            raise GatewayUnavailableError(f"No receipt after {self._receipt_timeout}s", tx_hash=tx_hash) from e
        except Exception as e:
            # Already broadcast: the error carries the hash so retry confirms first.
            raise GatewayUnavailableError(f"Receipt polling failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] == 0:
            raise ContractRejectedError(
                RevertReason.UNKNOWN,
                f"Transaction reverted in block {receipt['blockNumber']}",
                tx_hash=tx_hash,
            )
        return SubmissionReceipt(tx_hash=tx_hash, block_number=receipt["blockNumber"])

    def lookup(self, tx_hash: str) -> TxLookup:
        try:
            receipt = self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None

        if receipt is not None:
            status = TxStatus.CONFIRMED if receipt["status"] == 1 else TxStatus.REVERTED
            return TxLookup(status=status, block_number=receipt["blockNumber"])

        try:
            self._w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return TxLookup(status=TxStatus.UNKNOWN)
        return TxLookup(status=TxStatus.PENDING)


# ============================================================
# GATEWAY
# ============================================================

class BlockchainGateway:
    """
    Typed front door to the contract client.

    Every failure leaving this class is a GatewayError subclass.
    """

    def __init__(self, client: Optional[ContractClient] = None):
        self._client = client

    @classmethod
    def from_config(cls, config: Optional[GatewayConfig] = None) -> "BlockchainGateway":
        config = config or GatewayConfig.from_env()
        if not config.enabled:
            logger.info("Missing RPC URL or private key, running without blockchain")
            return cls(client=None)

        client = Web3ContractClient(
            config.rpc_url,
            config.private_key,
            receipt_timeout_seconds=config.receipt_timeout_seconds,
        )
        logger.info("Blockchain gateway enabled", wallet=client.wallet_address)
        return cls(client=client)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @property
    def wallet_address(self) -> Optional[str]:
        return self._client.wallet_address if self._client is not None else None

    def submit_batch(
        self,
        contract_address: Optional[str],
        content_address: str,
        views: int,
        clicks: int,
        reach: int,
        segment_tail_hash: str,
    ) -> Optional[SubmissionReceipt]:
        """
        Submit one partition's summary.

        Returns:
            The receipt, or None when disabled or the campaign has no contract

        Raises:
            ContractRejectedError: The contract refused (final)
            GatewayUnavailableError: Anything else went wrong (retryable)
        """
        if self._client is None:
            logger.debug("Blockchain not enabled, skipping contract submission")
            return None
        if not contract_address:
            logger.debug("No contract address, skipping contract submission")
            return None

        last_hash = format_bytes32(segment_tail_hash)
        logger.info(
            "Submitting batch",
            contract=contract_address,
            content_address=content_address,
            views=views,
            clicks=clicks,
            reach=reach,
            last_hash=last_hash[:18],
        )

        try:
            receipt = self._client.submit_batch(
                contract_address, content_address, views, clicks, reach, last_hash
            )
        except GatewayError:
            raise
        except Exception as e:
            raise self._classify(e) from e

        logger.info("Transaction confirmed", tx_hash=receipt.tx_hash, block_number=receipt.block_number)
        return receipt

    def confirm(self, tx_hash: str) -> Optional[SubmissionReceipt]:
        """
        Look up a transaction broadcast by an earlier attempt.

        Returns:
            The receipt if it was mined, None if the node has never heard of
            it (the caller may submit again)

        Raises:
            ContractRejectedError: It was mined and reverted
            GatewayUnavailableError: Still pending, or the node is unreachable
        """
        if self._client is None:
            return None

        try:
            found = self._client.lookup(tx_hash)
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayUnavailableError(f"Receipt lookup failed: {e}", tx_hash=tx_hash) from e

        if found.status == TxStatus.CONFIRMED:
            return SubmissionReceipt(tx_hash=tx_hash, block_number=found.block_number)
        if found.status == TxStatus.REVERTED:
            raise ContractRejectedError(
                RevertReason.UNKNOWN,
                f"Transaction reverted in block {found.block_number}",
                tx_hash=tx_hash,
            )
        if found.status == TxStatus.PENDING:
            raise GatewayUnavailableError("Transaction still pending", tx_hash=tx_hash)
        return None

    @staticmethod
    def _classify(error: Exception) -> GatewayError:
        message = str(error)
        if isinstance(error, ContractLogicError) or "revert" in message.lower():
            return ContractRejectedError(classify_revert(message), message)
        if isinstance(error, (Web3Exception, OSError)):
            return GatewayUnavailableError(message)
        return GatewayUnavailableError(f"{type(error).__name__}: {message}")

"""
Shared fakes for the settlement path. Nothing here touches the network.
"""

from typing import Optional

import pytest

from adnet.core import BlobStoreError, InMemoryBlobStore
from adnet.core.gateway import ContractClient, SubmissionReceipt, TxLookup, TxStatus


WALLET = "0x" + "ab" * 20
CONTRACT = "0x" + "11" * 20


class FakeContractClient(ContractClient):
    """Records every submission; raises submit_error when set."""

    def __init__(self):
        self.submissions: list[dict] = []
        self.lookups: list[str] = []
        self.submit_error: Optional[Exception] = None
        self.lookup_result = TxLookup(status=TxStatus.UNKNOWN)
        self.next_block = 100

    @property
    def wallet_address(self) -> str:
        return WALLET

    def submit_batch(self, contract_address, content_address, views, clicks, reach, last_hash):
        self.submissions.append({
            "contract_address": contract_address,
            "content_address": content_address,
            "views": views,
            "clicks": clicks,
            "reach": reach,
            "last_hash": last_hash,
        })
        if self.submit_error is not None:
            raise self.submit_error
        self.next_block += 1
        return SubmissionReceipt(tx_hash="0x" + f"{len(self.submissions):064x}", block_number=self.next_block)

    def lookup(self, tx_hash: str) -> TxLookup:
        self.lookups.append(tx_hash)
        return self.lookup_result


class FlakyBlobStore(InMemoryBlobStore):
    """Fails the first `failures` puts, then behaves."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.puts = 0

    def put(self, data: bytes, filename: str = "events.json"):
        self.puts += 1
        if self.failures > 0:
            self.failures -= 1
            raise BlobStoreError("IPFS node unreachable")
        return super().put(data, filename)


@pytest.fixture
def contract_client():
    return FakeContractClient()


@pytest.fixture
def flaky_blob_store():
    """Factory: flaky_blob_store(failures=1)."""
    return FlakyBlobStore

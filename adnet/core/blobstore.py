"""
Content-Addressed Blob Store

Batch summaries are uploaded before anything goes on-chain; the
contract only ever sees the content address.

- IpfsBlobStore: POST multipart "file" to {ipfs_url}/add, read "Hash"
- InMemoryBlobStore: address = SHA-256 of the bytes (dev, tests)

Configuration (environment variables):
- ADNET_IPFS_URL: IPFS HTTP API base (default: https://rootz.digital/api/v0)
- ADNET_IPFS_GATEWAY: Gateway used to build retrieval URLs (default: https://rootz.digital)
- ADNET_HTTP_TIMEOUT_SECONDS: Timeout for every outbound HTTP call (default: 30)
"""

import hashlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import httpx

from ..observability import get_logger

logger = get_logger(__name__)

DEFAULT_IPFS_URL = "https://rootz.digital/api/v0"
DEFAULT_IPFS_GATEWAY = "https://rootz.digital"


class BlobStoreError(Exception):
    """Raised when content could not be stored."""
    pass


@dataclass(frozen=True)
class ContentRef:
    address: str
    url: str


@dataclass
class IpfsConfig:
    api_url: str = DEFAULT_IPFS_URL
    gateway_url: str = DEFAULT_IPFS_GATEWAY
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "IpfsConfig":
        return cls(
            api_url=os.environ.get("ADNET_IPFS_URL", DEFAULT_IPFS_URL),
            gateway_url=os.environ.get("ADNET_IPFS_GATEWAY", DEFAULT_IPFS_GATEWAY),
            timeout_seconds=float(os.environ.get("ADNET_HTTP_TIMEOUT_SECONDS", "30")),
        )


class BlobStore(ABC):
    @abstractmethod
    def put(self, data: bytes, filename: str = "events.json") -> ContentRef:
        """
        Store bytes and return their address.

        Raises:
            BlobStoreError: If the content was not stored
        """
        pass

    def close(self) -> None:
        pass


class IpfsBlobStore(BlobStore):
    """Uploads through an IPFS node's HTTP API."""

    def __init__(self, config: Optional[IpfsConfig] = None, client: Optional[httpx.Client] = None):
        self.config = config or IpfsConfig.from_env()
        self._client = client or httpx.Client(timeout=self.config.timeout_seconds)
        self._owns_client = client is None

    def put(self, data: bytes, filename: str = "events.json") -> ContentRef:
        url = f"{self.config.api_url.rstrip('/')}/add"
        try:
            response = self._client.post(
                url,
                files={"file": (filename, data, "application/json")},
            )
            response.raise_for_status()
            content_hash = response.json()["Hash"]
        except httpx.HTTPError as e:
            raise BlobStoreError(f"IPFS upload failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise BlobStoreError(f"Unexpected IPFS response: {e}") from e

        ref = ContentRef(
            address=content_hash,
            url=f"{self.config.gateway_url.rstrip('/')}/ipfs/{content_hash}",
        )
        logger.info("Uploaded to IPFS", content_address=ref.address, size=len(data))
        return ref

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class InMemoryBlobStore(BlobStore):
    """Content-addressed dict. Suitable for development and testing only."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = Lock()

    def put(self, data: bytes, filename: str = "events.json") -> ContentRef:
        address = hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[address] = bytes(data)
        return ContentRef(address=address, url=f"memory://{address}")

    def get(self, address: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(address)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)

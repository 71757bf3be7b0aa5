"""
Campaign Directory

Settlement needs one thing from the campaign factory: the contract
address a campaign's batches are submitted to.

- HttpCampaignDirectory: the factory's HTTP API, cached with a TTL
    GET {factory}/api/ads?active=true   -> {"status": "success", "contracts": [...]}
    GET {factory}/api/campaign/{id}     -> {"contract": {...}} or the campaign itself
- StaticCampaignDirectory: a fixed list (offline, tests)

A stale cache is preferred over no answer: if the factory is down but
we listed campaigns before, that list is used.

Configuration (environment variables):
- ADNET_FACTORY_URL: Factory base URL (default: https://adnet.geistm.com)
- ADNET_CAMPAIGN_CACHE_SECONDS: Directory cache TTL (default: 300)
- ADNET_HTTP_TIMEOUT_SECONDS: Timeout for every outbound HTTP call (default: 30)
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger
from ..schemas import Campaign

logger = get_logger(__name__)

DEFAULT_FACTORY_URL = "https://adnet.geistm.com"


class CampaignDirectoryError(Exception):
    """Raised when the directory cannot be reached and nothing is cached."""
    pass


@dataclass
class DirectoryConfig:
    factory_url: str = DEFAULT_FACTORY_URL
    cache_seconds: float = 300.0
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "DirectoryConfig":
        return cls(
            factory_url=os.environ.get("ADNET_FACTORY_URL", DEFAULT_FACTORY_URL),
            cache_seconds=float(os.environ.get("ADNET_CAMPAIGN_CACHE_SECONDS", "300")),
            timeout_seconds=float(os.environ.get("ADNET_HTTP_TIMEOUT_SECONDS", "30")),
        )


class CampaignDirectory(ABC):
    @abstractmethod
    def list_active_campaigns(self) -> list[Campaign]:
        pass

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """None when the directory does not know the campaign."""
        pass

    def find_contract_address(self, campaign_id: str) -> Optional[str]:
        """
        The campaign's contract address, or None if it has none.

        Looks in the active list first, then asks for the campaign directly.

        Raises:
            CampaignDirectoryError: If the directory could not answer
        """
        for campaign in self.list_active_campaigns():
            if campaign.matches(campaign_id):
                return campaign.contract_address

        campaign = self.get_campaign(campaign_id)
        return campaign.contract_address if campaign is not None else None

    def close(self) -> None:
        pass


class StaticCampaignDirectory(CampaignDirectory):
    def __init__(self, campaigns: Iterable[Campaign] = ()):
        self._campaigns = list(campaigns)

    def list_active_campaigns(self) -> list[Campaign]:
        return [c for c in self._campaigns if c.active]

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        for campaign in self._campaigns:
            if campaign.matches(campaign_id):
                return campaign
        return None


class HttpCampaignDirectory(CampaignDirectory):
    """Factory-backed directory; the active list and single lookups are TTL-cached."""

    def __init__(
        self,
        config: Optional[DirectoryConfig] = None,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or DirectoryConfig.from_env()
        self._client = client or httpx.Client(timeout=self.config.timeout_seconds)
        self._owns_client = client is None
        self._clock = clock
        self._lock = Lock()
        self._cache: Optional[list[Campaign]] = None
        self._cache_expiry = 0.0
        self._by_id: dict[str, tuple[Optional[Campaign], float]] = {}

    @property
    def factory_url(self) -> str:
        return self.config.factory_url.rstrip("/")

    def list_active_campaigns(self) -> list[Campaign]:
        with self._lock:
            if self._cache is not None and self._clock() < self._cache_expiry:
                return list(self._cache)
            stale = self._cache

        try:
            response = self._client.get(f"{self.factory_url}/api/ads", params={"active": "true"})
            response.raise_for_status()
            body = _json_object(response)
            if body.get("status") != "success":
                raise CampaignDirectoryError(f"Factory answered status={body.get('status')!r}")
            campaigns = [Campaign.model_validate(c) for c in body.get("contracts") or []]
        except (httpx.HTTPError, ValueError, PydanticValidationError, CampaignDirectoryError) as e:
            if stale is not None:
                logger.warning("Factory unreachable, using stale campaign list", error=str(e))
                return list(stale)
            raise CampaignDirectoryError(f"Failed to fetch campaigns: {e}") from e

        with self._lock:
            self._cache = campaigns
            self._cache_expiry = self._clock() + self.config.cache_seconds
        logger.info("Cached campaigns from factory", count=len(campaigns))
        return list(campaigns)

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """A single campaign, cached per id with the same TTL (unknown ids too)."""
        with self._lock:
            cached = self._by_id.get(campaign_id)
        if cached is not None and self._clock() < cached[1]:
            return cached[0]

        try:
            campaign = self._fetch_campaign(campaign_id)
        except CampaignDirectoryError as e:
            if cached is not None:
                logger.warning("Factory unreachable, using stale campaign", campaign_id=campaign_id, error=str(e))
                return cached[0]
            raise

        with self._lock:
            self._by_id[campaign_id] = (campaign, self._clock() + self.config.cache_seconds)
        return campaign

    def _fetch_campaign(self, campaign_id: str) -> Optional[Campaign]:
        try:
            response = self._client.get(f"{self.factory_url}/api/campaign/{campaign_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            body = _json_object(response)
            data = body.get("contract") or body
            if not isinstance(data, dict):
                raise CampaignDirectoryError(f"Factory returned a {type(data).__name__} for campaign {campaign_id}")
            return Campaign.model_validate({"id": campaign_id, **data})
        except (httpx.HTTPError, ValueError, PydanticValidationError) as e:
            raise CampaignDirectoryError(f"Failed to fetch campaign {campaign_id}: {e}") from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _json_object(response: httpx.Response) -> dict:
    body = response.json()
    if not isinstance(body, dict):
        raise CampaignDirectoryError(f"Factory returned a JSON {type(body).__name__}, expected an object")
    return body

"""
Optional Identity Capabilities

Two things the collector can learn about a user besides the signature:
- a likely-human trust score (TrustScoreSource)
- an address vouched for by a delegation token (IdentityProvider)

Both are injected, and both have a disabled variant so the collector
never branches on "is this feature configured".

A delegation identity only fills in actor_address when the request has
none. It never marks an event verified: only a signature does that.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from ..observability import get_logger
from ..schemas import RecordEventRequest

logger = get_logger(__name__)

DELEGATION_HEADER = "x-epistery-delegation"
DELEGATION_COOKIE = "epistery_delegation"


# ============================================================
# TRUST SCORE
# ============================================================

class TrustScoreSource(ABC):
    @abstractmethod
    def score(self, request: RecordEventRequest, actor_address: Optional[str]) -> Optional[int]:
        pass


class ClientReportedTrustScore(TrustScoreSource):
    """Trust whatever score the client attached (the notabot points)."""

    def score(self, request: RecordEventRequest, actor_address: Optional[str]) -> Optional[int]:
        return request.trust_score


class NoTrustScore(TrustScoreSource):
    """Disabled variant: every event is recorded without a score."""

    def score(self, request: RecordEventRequest, actor_address: Optional[str]) -> Optional[int]:
        return None


# ============================================================
# IDENTITY
# ============================================================

@dataclass(frozen=True)
class ResolvedIdentity:
    address: str
    domain: str
    scope: Optional[str] = None


class IdentityProvider(ABC):
    @abstractmethod
    def resolve(
        self,
        tenant: str,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
    ) -> Optional[ResolvedIdentity]:
        """Return who the request speaks for, or None if anonymous."""
        pass


class AnonymousIdentity(IdentityProvider):
    """Disabled variant: every request is anonymous."""

    def resolve(self, tenant, headers, cookies) -> Optional[ResolvedIdentity]:
        return None


class DelegationIdentityProvider(IdentityProvider):
    """
    Reads a delegation token from the X-Epistery-Delegation header or the
    epistery_delegation cookie:

        {"delegation": {"subject": "0x..", "audience": "<host>", "expires": <ms>},
         "signature": "0x.."}

    The token is accepted when it is well formed, unexpired, and its
    audience is the tenant the request was made to.
    """

    def __init__(self, clock_ms: Callable[[], int] = lambda: int(time.time() * 1000)):
        self._clock_ms = clock_ms

    def resolve(self, tenant, headers, cookies) -> Optional[ResolvedIdentity]:
        raw = headers.get(DELEGATION_HEADER) or cookies.get(DELEGATION_COOKIE)
        if not raw:
            return None

        try:
            token = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Delegation token is not JSON", tenant=tenant)
            return None
        if not isinstance(token, dict):
            return None

        delegation = token.get("delegation")
        if not isinstance(delegation, dict) or not token.get("signature"):
            logger.debug("Delegation token has an invalid structure", tenant=tenant)
            return None

        subject = delegation.get("subject")
        audience = delegation.get("audience")
        expires = delegation.get("expires")
        if not isinstance(subject, str) or not isinstance(expires, (int, float)):
            return None

        if self._clock_ms() > expires:
            logger.debug("Delegation token expired", tenant=tenant)
            return None
        if not isinstance(audience, str) or audience.lower() != tenant:
            logger.debug("Delegation token audience mismatch", tenant=tenant, audience=audience)
            return None

        return ResolvedIdentity(address=subject, domain=audience, scope=delegation.get("scope"))

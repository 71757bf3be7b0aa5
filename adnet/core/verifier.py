"""
Signature Verification

The browser client signs every event with the user's wallet using
personal-sign (EIP-191) over a fixed message:

    adnet:{campaign_id}:{event_type}:{timestamp}

An event is verified when the address recovered from that signature
equals the address the client claims. Anything else, including garbage
input, is simply "not verified": verification never raises.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from ..schemas import EventType


def build_event_message(campaign_id: str, event_type: EventType | str, timestamp: int) -> str:
    """The exact string the client signs."""
    if isinstance(event_type, EventType):
        event_type = event_type.value
    return f"adnet:{campaign_id}:{event_type}:{timestamp}"


class VerificationFailure(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    MISSING_ADDRESS = "missing_address"
    MISSING_TIMESTAMP = "missing_timestamp"
    MALFORMED_SIGNATURE = "malformed_signature"
    ADDRESS_MISMATCH = "address_mismatch"


@dataclass(frozen=True)
class VerificationOutcome:
    verified: bool
    recovered_address: Optional[str] = None
    reason: Optional[VerificationFailure] = None


class SignatureVerifier:
    """
    Recovers the signer of an event message and compares it to the claim.

    Pure: no I/O, no shared state. Safe to call from any thread.
    """

    @staticmethod
    def recover(message: str, signature: str) -> str:
        """Recover the checksummed address that signed `message`."""
        return Account.recover_message(encode_defunct(text=message), signature=signature)

    @classmethod
    def verify(
        cls,
        claimed_address: Optional[str],
        signature: Optional[str],
        campaign_id: str,
        event_type: EventType | str,
        timestamp: Optional[int],
    ) -> VerificationOutcome:
        if not signature:
            return VerificationOutcome(False, reason=VerificationFailure.MISSING_SIGNATURE)
        if not claimed_address:
            return VerificationOutcome(False, reason=VerificationFailure.MISSING_ADDRESS)
        if timestamp is None:
            # Nothing to rebuild the signed message from
            return VerificationOutcome(False, reason=VerificationFailure.MISSING_TIMESTAMP)

        message = build_event_message(campaign_id, event_type, timestamp)
        try:
            recovered = cls.recover(message, signature)
        except Exception:
            # eth_account raises a mix of ValueError, TypeError and
            # eth_keys BadSignature for bad input; all mean the same here.
            return VerificationOutcome(False, reason=VerificationFailure.MALFORMED_SIGNATURE)

        if recovered.lower() != claimed_address.strip().lower():
            return VerificationOutcome(
                False,
                recovered_address=recovered,
                reason=VerificationFailure.ADDRESS_MISMATCH,
            )
        return VerificationOutcome(True, recovered_address=recovered)

    @staticmethod
    def sign(
        private_key: str,
        campaign_id: str,
        event_type: EventType | str,
        timestamp: int,
    ) -> str:
        """
        Sign an event message the way the browser client does.

        Used by tools and tests; the collector itself never signs.
        """
        message = build_event_message(campaign_id, event_type, timestamp)
        signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
        return "0x" + bytes(signed.signature).hex()

"""
Event Hashing

Every chained event is hashed as

    SHA256(canonical({...hashed event fields, "previous_hash": previous}))

so the link to the previous entry is part of the hashed object itself.
Reordering, retyping or dropping a hashed field changes that hash and
every hash after it.

Canonical form (version 1):
- "__canon_v": 1 is added to the top-level object
- keys sorted at every depth, compact separators, ASCII output
- None values are dropped; "", [] and {} are kept
- enums are written as their value
- floats are rejected: trust scores and timestamps are integers
- the top level must be an object

Persisted chains are only verifiable while this stays the same. Any
change to these rules needs a new version number.
"""

import hashlib
import hmac
import json
import re
from enum import Enum
from typing import Any


# Start hash of a tenant's first segment
GENESIS_HASH = "0" * 64

_HEX_HASH = re.compile(r"[0-9a-fA-F]{64}")


class CanonicalSerializationError(Exception):
    pass


def _canonical(value: Any, where: str) -> Any:
    if isinstance(value, Enum):
        return value.value
    # bool before int: bool is an int subclass and must stay true/false
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise CanonicalSerializationError(
            f"{where or 'value'} is a float ({value!r}); hashed fields take integers only"
        )
    if isinstance(value, dict):
        return _canonical_object(value, where)
    if isinstance(value, (list, tuple)):
        return [_canonical(item, f"{where}[{i}]") for i, item in enumerate(value)]
    if hasattr(value, "model_dump"):
        return _canonical_object(value.model_dump(mode="python"), where)
    raise CanonicalSerializationError(
        f"{where or 'value'} has type {type(value).__name__}, which has no canonical form"
    )


def _canonical_object(data: dict, where: str) -> dict[str, Any]:
    out = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise CanonicalSerializationError(f"non-string key {key!r} under {where or 'top level'}")
        if value is not None:
            out[key] = _canonical(value, f"{where}.{key}" if where else key)
    return dict(sorted(out.items()))


class Hasher:
    """Canonical serialization and SHA-256 hashing for chained events."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        The canonical JSON string for an object or pydantic model.

        Raises:
            CanonicalSerializationError: If data has no canonical form
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"only objects can be canonicalized, not {type(data).__name__}"
            )
        return json.dumps(
            {"__canon_v": cls.SERIALIZATION_VERSION, **_canonical_object(data, "")},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: Any) -> str:
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @staticmethod
    def is_valid_hash(value: str) -> bool:
        return isinstance(value, str) and bool(_HEX_HASH.fullmatch(value))

    @classmethod
    def hash_event(cls, fields: dict[str, Any], previous_hash: str) -> str:
        """
        Chain hash of one event.

        Args:
            fields: The event's hashed fields (Event.hashed_fields())
            previous_hash: Hash of the prior event, or the segment start hash

        Returns:
            64 lowercase hex characters
        """
        if not cls.is_valid_hash(previous_hash):
            raise CanonicalSerializationError(
                f"previous_hash must be 64 hex characters, got {previous_hash!r}"
            )
        if "previous_hash" in fields:
            raise CanonicalSerializationError("event fields must not carry their own previous_hash")
        return cls.hash_data({**fields, "previous_hash": previous_hash.lower()})

    @classmethod
    def verify_event(cls, fields: dict[str, Any], expected_hash: str, previous_hash: str) -> bool:
        try:
            computed = cls.hash_event(fields, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed.encode("utf-8"), expected_hash.lower().encode("utf-8"))

    @staticmethod
    def segment_reset_hash(now_ns: int) -> str:
        """Start hash of a new segment, derived from wall-clock time."""
        return hashlib.sha256(str(now_ns).encode("utf-8")).hexdigest()

"""
Ledger Store Abstraction

This module defines the LedgerStore interface and provides two implementations:
- InMemoryLedgerStore: For development and testing
- FileLedgerStore: One directory per tenant, survives restarts

The LedgerStore is responsible for:
- Atomic replacement of a tenant's whole ledger state
- Append-only history of batch records
- Listing known tenants

The HashChainLedger retains responsibility for:
- Hashing and chain linkage
- Per-tenant locking
- Deciding what the next state is

STATE CONTRACT:
save_state() either fully replaces the previous state or leaves it
untouched. A crash in the middle of a write never produces a
half-written state document.

    <data_dir>/<tenant>/ledger.json     current TenantLedgerState
    <data_dir>/<tenant>/history.jsonl   one BatchRecord per line, append-only
"""

import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from ..schemas import BatchRecord, TenantLedgerState


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class StoreCorruptedError(StoreError):
    """Raised when a persisted document cannot be parsed back."""
    pass


# Tenants are host names; this also keeps them safe as directory names.
_TENANT_DIR_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*$")

STATE_FILENAME = "ledger.json"
HISTORY_FILENAME = "history.jsonl"


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger persistence.

    Implementations must be safe to call from multiple threads, but
    callers guarantee that a single tenant's state is only written by
    one thread at a time.
    """

    @abstractmethod
    def load_state(self, tenant: str) -> Optional[TenantLedgerState]:
        """Return the persisted state, or None for a tenant never seen."""
        pass

    @abstractmethod
    def save_state(self, state: TenantLedgerState) -> None:
        """Atomically replace the tenant's persisted state."""
        pass

    @abstractmethod
    def append_history(self, tenant: str, records: list[BatchRecord]) -> None:
        """Append records to the tenant's history. Never rewrites."""
        pass

    @abstractmethod
    def list_history(self, tenant: str) -> list[BatchRecord]:
        """All history records for a tenant, oldest first."""
        pass

    @abstractmethod
    def list_tenants(self) -> list[str]:
        """Every tenant with persisted state."""
        pass

    def ping(self) -> bool:
        """Cheap reachability check used by health endpoints."""
        return True


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (state is lost on restart)
    """

    def __init__(self):
        self._states: dict[str, TenantLedgerState] = {}
        self._history: dict[str, list[BatchRecord]] = {}
        self._lock = Lock()

    def load_state(self, tenant: str) -> Optional[TenantLedgerState]:
        with self._lock:
            state = self._states.get(tenant)
            return state.model_copy(deep=True) if state is not None else None

    def save_state(self, state: TenantLedgerState) -> None:
        with self._lock:
            self._states[state.tenant] = state.model_copy(deep=True)

    def append_history(self, tenant: str, records: list[BatchRecord]) -> None:
        with self._lock:
            self._history.setdefault(tenant, []).extend(records)

    def list_history(self, tenant: str) -> list[BatchRecord]:
        with self._lock:
            return list(self._history.get(tenant, []))

    def list_tenants(self) -> list[str]:
        with self._lock:
            return sorted(self._states)

    def clear(self) -> None:
        """Clear everything (for testing only)."""
        with self._lock:
            self._states.clear()
            self._history.clear()


# ============================================================
# FILE IMPLEMENTATION
# ============================================================

class FileLedgerStore(LedgerStore):
    """
    Directory-per-tenant store.

    State is written to a temporary file in the same directory, fsynced,
    then moved over ledger.json with os.replace (atomic on POSIX and
    Windows). History lines are appended and fsynced.
    """

    def __init__(self, data_dir: str | Path):
        self._root = Path(data_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._history_lock = Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _tenant_dir(self, tenant: str, create: bool = False) -> Path:
        if not _TENANT_DIR_PATTERN.match(tenant) or ".." in tenant:
            raise StoreError(f"Tenant name not usable as a directory: {tenant!r}")
        path = self._root / tenant
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    def load_state(self, tenant: str) -> Optional[TenantLedgerState]:
        path = self._tenant_dir(tenant) / STATE_FILENAME
        if not path.exists():
            return None
        try:
            return TenantLedgerState.model_validate_json(path.read_text(encoding="utf-8"))
        except PydanticValidationError as e:
            raise StoreCorruptedError(f"Unreadable ledger state at {path}: {e}") from e
        except OSError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e

    def save_state(self, state: TenantLedgerState) -> None:
        directory = self._tenant_dir(state.tenant, create=True)
        target = directory / STATE_FILENAME
        payload = state.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(prefix=".ledger-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StoreError(f"Failed to write {target}: {e}") from e

    def append_history(self, tenant: str, records: list[BatchRecord]) -> None:
        if not records:
            return
        path = self._tenant_dir(tenant, create=True) / HISTORY_FILENAME
        lines = "".join(record.model_dump_json() + "\n" for record in records)
        with self._history_lock:
            try:
                with open(path, "a", encoding="utf-8") as handle:
                    handle.write(lines)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as e:
                raise StoreError(f"Failed to append to {path}: {e}") from e

    def list_history(self, tenant: str) -> list[BatchRecord]:
        path = self._tenant_dir(tenant) / HISTORY_FILENAME
        if not path.exists():
            return []
        records = []
        with open(path, encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(BatchRecord.model_validate(json.loads(line)))
                except (json.JSONDecodeError, PydanticValidationError) as e:
                    raise StoreCorruptedError(
                        f"Unreadable history line {line_number} in {path}: {e}"
                    ) from e
        return records

    def list_tenants(self) -> list[str]:
        return sorted(
            entry.name
            for entry in self._root.iterdir()
            if entry.is_dir() and (entry / STATE_FILENAME).exists()
        )

    def ping(self) -> bool:
        return self._root.is_dir() and os.access(self._root, os.W_OK)

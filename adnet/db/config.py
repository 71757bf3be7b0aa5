"""
Store Configuration

Environment Variables:
    ADNET_DATA_DIR: Directory holding one sub-directory per tenant
    ADNET_STORE_DRIVER: Which driver to use
        - "memory" (default if no data dir is configured)
        - "file" (default if ADNET_DATA_DIR is set)
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..observability import get_logger
from .store import FileLedgerStore, InMemoryLedgerStore, LedgerStore

logger = get_logger(__name__)


class StoreDriver(str, Enum):
    """Supported LedgerStore drivers."""
    MEMORY = "memory"
    FILE = "file"


@dataclass
class StoreConfig:
    """Ledger persistence configuration."""
    driver: StoreDriver = StoreDriver.MEMORY
    data_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """
        Load configuration from environment variables.

        Auto-detects the driver when ADNET_STORE_DRIVER is unset:
        file if ADNET_DATA_DIR is set, memory otherwise.
        """
        data_dir = os.getenv("ADNET_DATA_DIR") or None
        explicit = os.getenv("ADNET_STORE_DRIVER", "").lower()

        if explicit:
            try:
                driver = StoreDriver(explicit)
            except ValueError:
                raise ValueError(
                    f"Unknown ADNET_STORE_DRIVER: {explicit}. "
                    f"Valid values: memory, file"
                )
        else:
            driver = StoreDriver.FILE if data_dir else StoreDriver.MEMORY

        if driver == StoreDriver.FILE and not data_dir:
            raise ValueError("ADNET_STORE_DRIVER=file requires ADNET_DATA_DIR")

        return cls(driver=driver, data_dir=data_dir)


def create_store(config: Optional[StoreConfig] = None) -> LedgerStore:
    """Build the LedgerStore the configuration asks for."""
    config = config or StoreConfig.from_env()

    if config.driver == StoreDriver.FILE:
        logger.info("Using file ledger store", data_dir=config.data_dir)
        return FileLedgerStore(config.data_dir)

    logger.warning("Using in-memory ledger store - state is lost on restart")
    return InMemoryLedgerStore()

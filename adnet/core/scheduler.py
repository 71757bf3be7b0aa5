"""
Settlement Scheduler

Decides WHEN settlement runs; BatchSettlement decides HOW.

Triggers:
- threshold: the collector asks for a flush when a tenant's pending chain
  reaches the threshold
- manual: POST /flush or the CLI, with a bounded wait
- periodic: every ADNET_FLUSH_INTERVAL_SECONDS, flush every tenant with
  pending events (off by default)
- retry: every ADNET_RETRY_INTERVAL_SECONDS, retry unsettled partitions
- shutdown: flush everything, best effort, within the grace period

CONFIGURATION:
- ADNET_THRESHOLD: Pending events that trigger a flush (default: 5)
- ADNET_MIN_TRUST_SCORE: Trust floor for reach (default: 0)
- ADNET_FLUSH_MODE: sync or background (default: background)
- ADNET_FLUSH_INTERVAL_SECONDS: Periodic flush, 0 = off (default: 0)
- ADNET_RETRY_INTERVAL_SECONDS: Periodic retry, 0 = off (default: 300)
- ADNET_MAX_SETTLEMENT_ATTEMPTS: Automatic attempts per partition (default: 5)
- ADNET_FLUSH_TIMEOUT_SECONDS: Manual flush wait (default: 30)
- ADNET_SHUTDOWN_GRACE_SECONDS: Shutdown flush budget (default: 10)
- ADNET_FLUSH_WORKERS: Background flush threads (default: 4)

USAGE:
    scheduler = SettlementScheduler(settlement, ledger, config)
    scheduler.start()

    # Threshold reached
    scheduler.request_flush("news.example.com")

    # Stop gracefully
    scheduler.shutdown()
"""

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..observability import get_logger
from ..schemas import BatchRecord
from .ledger import HashChainLedger
from .settlement import BatchSettlement

logger = get_logger(__name__)


class FlushMode(str, Enum):
    SYNC = "sync"              # Flush on the caller's thread
    BACKGROUND = "background"  # Flush on the worker pool


@dataclass
class SettlementConfig:
    """Configuration for flush triggering and retry."""
    threshold: int = 5
    min_trust_score: int = 0
    flush_mode: FlushMode = FlushMode.BACKGROUND
    flush_interval_seconds: float = 0
    retry_interval_seconds: float = 300
    max_settlement_attempts: int = 5
    flush_timeout_seconds: float = 30
    shutdown_grace_seconds: float = 10
    flush_workers: int = 4

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.flush_mode = FlushMode(self.flush_mode)

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        """Load configuration from environment variables."""
        return cls(
            threshold=int(os.environ.get("ADNET_THRESHOLD", "5")),
            min_trust_score=int(os.environ.get("ADNET_MIN_TRUST_SCORE", "0")),
            flush_mode=FlushMode(os.environ.get("ADNET_FLUSH_MODE", "background").lower()),
            flush_interval_seconds=float(os.environ.get("ADNET_FLUSH_INTERVAL_SECONDS", "0")),
            retry_interval_seconds=float(os.environ.get("ADNET_RETRY_INTERVAL_SECONDS", "300")),
            max_settlement_attempts=int(os.environ.get("ADNET_MAX_SETTLEMENT_ATTEMPTS", "5")),
            flush_timeout_seconds=float(os.environ.get("ADNET_FLUSH_TIMEOUT_SECONDS", "30")),
            shutdown_grace_seconds=float(os.environ.get("ADNET_SHUTDOWN_GRACE_SECONDS", "10")),
            flush_workers=int(os.environ.get("ADNET_FLUSH_WORKERS", "4")),
        )


class SettlementScheduler:
    """
    Runs settlement on the right thread at the right time.

    A threshold flush already queued for a tenant is not queued twice;
    whichever one runs drains everything pending.
    """

    TICK_SECONDS = 1.0

    def __init__(
        self,
        settlement: BatchSettlement,
        ledger: HashChainLedger,
        config: Optional[SettlementConfig] = None,
    ):
        self._settlement = settlement
        self._ledger = ledger
        self._config = config or SettlementConfig.from_env()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._queued: set[str] = set()
        self._queued_lock = threading.Lock()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_flush_sweep = time.monotonic()
        self._last_retry_sweep = time.monotonic()

    @property
    def config(self) -> SettlementConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._config.flush_workers,
                    thread_name_prefix="adnet-flush",
                )
            return self._executor

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(self) -> None:
        """Start the periodic sweep thread (if any sweep is configured)."""
        if self._config.flush_interval_seconds <= 0 and self._config.retry_interval_seconds <= 0:
            logger.info("Periodic flush and retry disabled")
            return

        if self._running:
            logger.warning("Settlement scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="adnet-scheduler", daemon=True)
        self._thread.start()

        logger.info(
            f"Settlement scheduler started (threshold={self._config.threshold}, "
            f"flush_interval={self._config.flush_interval_seconds}s, "
            f"retry_interval={self._config.retry_interval_seconds}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweep thread. Does not flush."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Settlement scheduler stopped")

    def shutdown(self) -> dict[str, int]:
        """
        Stop sweeping and flush every tenant with pending events.

        Best effort within shutdown_grace_seconds: failures and timeouts
        are logged, never raised. Events not flushed stay persisted.

        Returns:
            tenant -> number of records produced, for tenants that finished
        """
        self.stop()
        grace = self._config.shutdown_grace_seconds
        pool = self._pool()

        futures: dict[Future, str] = {}
        for tenant in self._ledger.loaded_tenants():
            try:
                if self._ledger.pending_count(tenant) == 0:
                    continue
            except Exception as e:
                logger.error("Cannot read tenant at shutdown", tenant=tenant, error=str(e))
                continue
            futures[pool.submit(self._settlement.flush, tenant)] = tenant

        finished: dict[str, int] = {}
        if futures:
            logger.info("Flushing tenants before shutdown", tenants=len(futures), grace_seconds=grace)
            done, not_done = wait(futures, timeout=grace)
            for future in done:
                tenant = futures[future]
                try:
                    finished[tenant] = len(future.result())
                except Exception as e:
                    logger.error("Shutdown flush failed", tenant=tenant, error=str(e))
            for future in not_done:
                logger.error("Shutdown flush did not finish in time", tenant=futures[future])

        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
        return finished

    def _run_loop(self) -> None:
        """Background thread main loop."""
        while not self._stop_event.is_set():
            now = time.monotonic()
            try:
                interval = self._config.flush_interval_seconds
                if interval > 0 and now - self._last_flush_sweep >= interval:
                    self._last_flush_sweep = now
                    self.flush_all()

                interval = self._config.retry_interval_seconds
                if interval > 0 and now - self._last_retry_sweep >= interval:
                    self._last_retry_sweep = now
                    self.retry_all()
            except Exception as e:
                logger.exception(f"Error in settlement sweep: {e}")

            self._stop_event.wait(timeout=self.TICK_SECONDS)

    # ============================================================
    # TRIGGERS
    # ============================================================

    def request_flush(self, tenant: str) -> Optional[Future]:
        """
        Threshold trigger.

        In sync mode the flush runs now, on this thread, and None is
        returned. In background mode a Future is returned, or None when a
        flush for the tenant was already queued.
        """
        if self._config.flush_mode == FlushMode.SYNC:
            try:
                self._settlement.flush(tenant)
            except Exception as e:
                # The event that crossed the threshold is already durable.
                logger.exception(f"Threshold flush failed for {tenant}: {e}")
            return None

        with self._queued_lock:
            if tenant in self._queued:
                return None
            self._queued.add(tenant)

        def run() -> list[BatchRecord]:
            with self._queued_lock:
                self._queued.discard(tenant)
            return self._settlement.flush(tenant)

        future = self._pool().submit(run)
        future.add_done_callback(lambda f: self._log_failure(tenant, f))
        return future

    def flush_now(self, tenant: str, timeout: Optional[float] = None) -> Optional[list[BatchRecord]]:
        """
        Manual flush with a bounded wait.

        Returns:
            The records, or None if the flush is still running after the
            timeout (it keeps running; its records land in history)
        """
        if self._config.flush_mode == FlushMode.SYNC:
            return self._settlement.flush(tenant)

        timeout = self._config.flush_timeout_seconds if timeout is None else timeout
        future = self._pool().submit(self._settlement.flush, tenant)
        done, _ = wait([future], timeout=timeout)
        if not done:
            logger.warning("Manual flush still running after timeout", tenant=tenant, timeout=timeout)
            return None
        return future.result()

    def flush_all(self) -> dict[str, list[BatchRecord]]:
        """Flush every tenant that has pending events (periodic sweep)."""
        results = {}
        for tenant in self._ledger.tenants():
            if self._ledger.pending_count(tenant) == 0:
                continue
            try:
                results[tenant] = self._settlement.flush(tenant)
            except Exception as e:
                logger.exception(f"Periodic flush failed for {tenant}: {e}")
        return results

    def retry_all(self) -> dict[str, list[BatchRecord]]:
        """Retry every tenant with unsettled segments (periodic sweep)."""
        results = {}
        for tenant in self._settlement.recover():
            try:
                records = self._settlement.retry(tenant)
            except Exception as e:
                logger.exception(f"Retry failed for {tenant}: {e}")
                continue
            if records:
                results[tenant] = records
        return results

    @staticmethod
    def _log_failure(tenant: str, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Background flush failed", tenant=tenant, error=str(error))

    def get_status(self) -> dict:
        with self._queued_lock:
            queued = sorted(self._queued)
        return {
            "running": self._running,
            "flush_mode": self._config.flush_mode.value,
            "threshold": self._config.threshold,
            "flush_interval_seconds": self._config.flush_interval_seconds,
            "retry_interval_seconds": self._config.retry_interval_seconds,
            "max_settlement_attempts": self._config.max_settlement_attempts,
            "queued_flushes": queued,
        }

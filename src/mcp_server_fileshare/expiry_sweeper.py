"""
Expiry Sweeper

Background thread that removes expired sessions: once shortly after start-up
and then on a fixed interval. A failed run is logged (and optionally posted to
Slack) and the schedule carries on; it never takes the process down.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from .errors import OperationTimeout, SweepInProgress
from .models import format_timestamp
from .session_engine import SessionEngine
from .slack_utils import send_sweep_failure_alert

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs ``SessionEngine.cleanup_expired`` on a timer."""

    def __init__(
        self,
        engine: SessionEngine,
        interval_seconds: float = 3600,
        startup_delay_seconds: float = 30,
        include_orphans: bool = True,
        orphan_grace_seconds: float = 3600,
    ) -> None:
        """
        Initialize ExpirySweeper.

        Args:
            engine: Engine whose stores are swept
            interval_seconds: Pause between runs
            startup_delay_seconds: Pause before the first run
            include_orphans: Also delete blobs without a file record
            orphan_grace_seconds: Minimum age of a blob before it counts as orphaned
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if startup_delay_seconds < 0:
            raise ValueError("startup_delay_seconds must not be negative")
        self._engine = engine
        self._interval = interval_seconds
        self._startup_delay = startup_delay_seconds
        self._include_orphans = include_orphans
        self._orphan_grace = timedelta(seconds=orphan_grace_seconds)

        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None

        self.last_run_at: datetime | None = None
        self.last_cleaned: int | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread; calling it twice is a no-op."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            f"Expiry sweeper started (first run in {self._startup_delay:g}s, "
            f"then every {self._interval:g}s)"
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the thread to exit and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry sweeper stopped")

    def _loop(self) -> None:
        delay = self._startup_delay
        while not self._stop_event.wait(delay):
            self.run_once()
            delay = self._interval

    def run_once(self) -> int | None:
        """
        Execute one sweep now.

        The orphan scan runs after the expiry pass; if it fails, the failure
        is recorded but the expiry pass's count is still kept and returned.

        Returns:
            Number of sessions removed, or None when the run was skipped
            because another one is in flight or when the expiry pass failed
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Skipping sweep: previous run still in progress")
            return None
        try:
            cleaned = self._attempt(self._engine.cleanup_expired)
            if cleaned is None:
                return None
            self.last_run_at = self._engine.now()
            self.last_cleaned = cleaned
            self.last_error = None
            if self._include_orphans:
                self._attempt(self._engine.cleanup_orphans, grace=self._orphan_grace)
            return cleaned
        finally:
            self._run_lock.release()

    def _attempt(self, cleanup: Callable[..., int], **kwargs: Any) -> int | None:
        """Run one cleanup pass, returning None when it was skipped or failed."""
        try:
            return cleanup(**kwargs)
        except SweepInProgress:
            logger.info("Skipping sweep: a cleanup pass is already running")
        except OperationTimeout as e:
            logger.warning(f"Sweep timed out, storage provider unreachable: {e.message}")
            self._record_failure(e.message)
        except Exception as e:
            logger.exception("Sweep failed")
            self._record_failure(str(e))
        return None

    def _record_failure(self, message: str) -> None:
        self.last_run_at = self._engine.now()
        self.last_error = message
        backends = (
            f"{self._engine.metadata_store.backend.value}/{self._engine.blob_store.backend.value}"
        )
        send_sweep_failure_alert(message, backends)

    def status(self) -> dict[str, Any]:
        """Snapshot for the health endpoint."""
        return {
            "running": self.running,
            "lastRunAt": format_timestamp(self.last_run_at) if self.last_run_at else None,
            "lastCleaned": self.last_cleaned,
            "lastError": self.last_error,
        }

"""
Unit tests for ExpirySweeper

The sweeper drives a real engine; failures are injected by patching the
engine's cleanup methods.
"""

import threading
import time
from unittest.mock import patch

import pytest

from mcp_server_fileshare.errors import OperationTimeout, StorageFailure, SweepInProgress
from mcp_server_fileshare.expiry_sweeper import ExpirySweeper


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()


class TestRunOnce:
    """Test suite for single sweeps."""

    def test_removes_expired_sessions(self, engine, clock):
        engine.create_session()
        engine.create_session()
        clock.advance(hours=25)
        sweeper = ExpirySweeper(engine)

        assert sweeper.run_once() == 2
        assert sweeper.last_cleaned == 2
        assert sweeper.last_run_at == clock.now
        assert sweeper.last_error is None
        assert engine.health().total_sessions == 0

    def test_nothing_to_do(self, engine):
        sweeper = ExpirySweeper(engine)
        assert sweeper.run_once() == 0
        assert sweeper.status()["lastCleaned"] == 0

    def test_orphan_scan_is_optional(self, engine):
        with patch.object(engine, "cleanup_orphans", return_value=0) as orphans:
            ExpirySweeper(engine, include_orphans=False).run_once()
            orphans.assert_not_called()
            ExpirySweeper(engine, orphan_grace_seconds=60).run_once()
            assert orphans.call_args.kwargs["grace"].total_seconds() == 60

    def test_failure_is_recorded_and_alerted(self, engine):
        sweeper = ExpirySweeper(engine)
        with (
            patch.object(engine, "cleanup_expired", side_effect=StorageFailure("bucket gone")),
            patch("mcp_server_fileshare.expiry_sweeper.send_sweep_failure_alert") as alert,
        ):
            assert sweeper.run_once() is None

        assert sweeper.last_error == "bucket gone"
        assert sweeper.last_cleaned is None
        alert.assert_called_once_with("bucket gone", "json/local")

    def test_orphan_failure_keeps_expiry_count(self, engine, clock):
        """A failed orphan scan does not discard the sessions already removed."""
        engine.create_session()
        engine.create_session()
        clock.advance(hours=25)
        sweeper = ExpirySweeper(engine)
        with (
            patch.object(engine, "cleanup_orphans", side_effect=StorageFailure("disk gone")),
            patch("mcp_server_fileshare.expiry_sweeper.send_sweep_failure_alert") as alert,
        ):
            assert sweeper.run_once() == 2

        assert sweeper.last_cleaned == 2
        assert sweeper.last_run_at == clock.now
        assert sweeper.last_error == "disk gone"
        alert.assert_called_once_with("disk gone", "json/local")
        assert engine.health().total_sessions == 0

    def test_timeout_is_recorded(self, engine):
        sweeper = ExpirySweeper(engine)
        with (
            patch.object(
                engine, "cleanup_expired", side_effect=OperationTimeout("cleanup_expired", 10)
            ),
            patch("mcp_server_fileshare.expiry_sweeper.send_sweep_failure_alert") as alert,
        ):
            assert sweeper.run_once() is None
        assert "timed out" in sweeper.last_error
        alert.assert_called_once()

    def test_success_clears_previous_error(self, engine):
        sweeper = ExpirySweeper(engine)
        with (
            patch.object(engine, "cleanup_expired", side_effect=StorageFailure("down")),
            patch("mcp_server_fileshare.expiry_sweeper.send_sweep_failure_alert"),
        ):
            sweeper.run_once()
        assert sweeper.run_once() == 0
        assert sweeper.last_error is None

    def test_engine_pass_in_progress_is_skipped(self, engine):
        sweeper = ExpirySweeper(engine)
        with (
            patch.object(engine, "cleanup_expired", side_effect=SweepInProgress()),
            patch("mcp_server_fileshare.expiry_sweeper.send_sweep_failure_alert") as alert,
        ):
            assert sweeper.run_once() is None
        alert.assert_not_called()
        assert sweeper.last_error is None

    def test_overlapping_runs_are_skipped(self, engine):
        sweeper = ExpirySweeper(engine, include_orphans=False)
        entered = threading.Event()
        release = threading.Event()

        def slow(*args, **kwargs):
            entered.set()
            release.wait(5)
            return 0

        with patch.object(engine, "cleanup_expired", side_effect=slow) as cleanup:
            worker = threading.Thread(target=sweeper.run_once)
            worker.start()
            assert entered.wait(5)
            assert sweeper.run_once() is None
            release.set()
            worker.join(5)

        assert cleanup.call_count == 1


class TestScheduling:
    """Test suite for the background thread."""

    @pytest.mark.parametrize(
        "kwargs", [{"interval_seconds": 0}, {"startup_delay_seconds": -1}]
    )
    def test_invalid_schedule(self, engine, kwargs):
        with pytest.raises(ValueError):
            ExpirySweeper(engine, **kwargs)

    def test_start_runs_after_delay_then_stops(self, engine):
        sweeper = ExpirySweeper(engine, interval_seconds=60, startup_delay_seconds=0.05)
        sweeper.start()
        try:
            assert sweeper.running
            assert wait_for(lambda: sweeper.last_run_at is not None)
        finally:
            sweeper.stop()
        assert not sweeper.running

    def test_start_twice_is_noop(self, engine):
        sweeper = ExpirySweeper(engine, startup_delay_seconds=60)
        sweeper.start()
        try:
            thread = sweeper._thread
            sweeper.start()
            assert sweeper._thread is thread
        finally:
            sweeper.stop()

    def test_status_snapshot(self, engine, clock):
        sweeper = ExpirySweeper(engine, startup_delay_seconds=60)
        assert sweeper.status() == {
            "running": False,
            "lastRunAt": None,
            "lastCleaned": None,
            "lastError": None,
        }
        sweeper.run_once()
        status = sweeper.status()
        assert status["lastRunAt"] == clock.now.isoformat()
        assert status["lastCleaned"] == 0

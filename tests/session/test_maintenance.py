# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for health probing and the maintenance loop."""

import threading
import time
from unittest.mock import MagicMock

from spectre.container import ContainerState
from spectre.errors import ProvisioningError
from spectre.session.maintenance import MaintenanceLoop, probe_sessions
from spectre.types import CleanupReport, HealthResult, Session

from tests.conftest import FakeRuntime


def _sessions(runtime: FakeRuntime, count: int) -> list[Session]:
    sessions = []
    for i in range(count):
        container_id = runtime.add_orphan()
        sessions.append(
            Session(
                session_id=container_id,
                user_id=1,
                repository_id=1,
                branch_name=f"b{i}",
                container_url="http://x.test",
            )
        )
    return sessions


class TestProbeSessions:
    """Tests for probe_sessions."""

    def test_empty(self, fake_runtime: FakeRuntime) -> None:
        """No sessions, no probes."""
        assert (
            probe_sessions(
                fake_runtime, [], probe_timeout=0.5, max_workers=4
            )
            == []
        )

    def test_results_in_input_order(self, fake_runtime: FakeRuntime) -> None:
        """Results line up with the input, healthy or not."""
        sessions = _sessions(fake_runtime, 6)
        fake_runtime.set_state(sessions[1].session_id, ContainerState.EXITED)
        fake_runtime.set_state(
            sessions[4].session_id, ContainerState.NOT_FOUND
        )

        results = probe_sessions(
            fake_runtime, sessions, probe_timeout=0.5, max_workers=4
        )

        assert [r.session_id for r in results] == [
            s.session_id for s in sessions
        ]
        assert [r.healthy for r in results] == [
            True,
            False,
            True,
            True,
            False,
            True,
        ]
        assert results[1].error is not None
        assert results[0].error is None

    def test_hung_probe_bounded(self, fake_runtime: FakeRuntime) -> None:
        """A hung probe is reported after about one probe timeout."""
        sessions = _sessions(fake_runtime, 3)
        fake_runtime.hung.add(sessions[0].session_id)

        start = time.monotonic()
        results = probe_sessions(
            fake_runtime, sessions, probe_timeout=0.5, max_workers=4
        )
        elapsed = time.monotonic() - start

        assert elapsed < 2.0
        assert results[0].healthy is False
        assert results[0].error is not None
        assert "timed out" in results[0].error
        assert results[1].healthy and results[2].healthy

    def test_many_hung_probes_bounded_by_waves(
        self, fake_runtime: FakeRuntime
    ) -> None:
        """Hung probes fill waves, not one timeout per session."""
        sessions = _sessions(fake_runtime, 8)
        fake_runtime.hung.update(s.session_id for s in sessions)

        start = time.monotonic()
        results = probe_sessions(
            fake_runtime, sessions, probe_timeout=0.3, max_workers=4
        )
        elapsed = time.monotonic() - start

        # Two waves of 0.3s plus scheduling grace
        assert elapsed < 2.0
        assert not any(r.healthy for r in results)

    def test_probe_exception(self) -> None:
        """A probe that raises yields an unhealthy result."""
        runtime = MagicMock()
        runtime.probe.side_effect = ProvisioningError("podman down")
        session = Session(
            session_id="c1",
            user_id=1,
            repository_id=1,
            branch_name="main",
            container_url="http://x.test",
        )

        results = probe_sessions(
            runtime, [session], probe_timeout=0.5, max_workers=2
        )

        assert results == [
            HealthResult("c1", False, "Probe failed: podman down")
        ]


class TestMaintenanceLoop:
    """Tests for MaintenanceLoop."""

    def test_run_once_order(self) -> None:
        """Health checks run before cleanup."""
        manager = MagicMock()
        manager.perform_health_checks.return_value = []
        manager.cleanup_inactive_sessions.return_value = CleanupReport()

        MaintenanceLoop(manager, interval=60).run_once()

        names = [c[0] for c in manager.method_calls]
        assert names == [
            "perform_health_checks",
            "cleanup_inactive_sessions",
        ]

    def test_run_once_survives_health_failure(self) -> None:
        """Cleanup still runs when health checks fail."""
        manager = MagicMock()
        manager.perform_health_checks.side_effect = RuntimeError("boom")
        manager.cleanup_inactive_sessions.return_value = CleanupReport()

        MaintenanceLoop(manager, interval=60).run_once()

        manager.cleanup_inactive_sessions.assert_called_once()

    def test_runs_periodically_and_stops(self) -> None:
        """The loop ticks on its interval and exits promptly on stop."""
        manager = MagicMock()
        manager.perform_health_checks.return_value = []
        manager.cleanup_inactive_sessions.return_value = CleanupReport()
        ticked = threading.Event()
        manager.cleanup_inactive_sessions.side_effect = (
            lambda: ticked.set() or CleanupReport()
        )
        loop = MaintenanceLoop(manager, interval=0.05)

        loop.start()
        assert loop.running
        assert ticked.wait(timeout=5)

        start = time.monotonic()
        loop.stop(timeout=5)
        assert time.monotonic() - start < 2
        assert not loop.running

    def test_stop_before_first_tick(self) -> None:
        """Stopping a loop with a long interval does not wait for it."""
        manager = MagicMock()
        loop = MaintenanceLoop(manager, interval=3600)

        loop.start()
        start = time.monotonic()
        loop.stop(timeout=5)

        assert time.monotonic() - start < 2
        manager.perform_health_checks.assert_not_called()

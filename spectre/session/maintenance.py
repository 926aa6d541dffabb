# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Health probing and the periodic maintenance loop.

``probe_sessions`` fans probes out over a bounded pool.  A probe that
hangs is reported unhealthy once its own timeout elapses and is then
abandoned: the pool is shut down without waiting, so total latency is
roughly one probe timeout per wave of ``max_workers`` probes rather than
one timeout per session.
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import threading
import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING

from spectre.container import ContainerRuntime
from spectre.types import HealthResult, Session


if TYPE_CHECKING:
    from spectre.session.manager import SessionManager


logger = logging.getLogger(__name__)

#: Extra time allowed for the last wave of probes to be scheduled.
SCHEDULING_GRACE = 0.5


def _result_from(future: Future[bool], session_id: str) -> HealthResult:
    error = future.exception()
    if error is not None:
        return HealthResult(session_id, False, f"Probe failed: {error}")
    if future.result():
        return HealthResult(session_id, True)
    return HealthResult(
        session_id, False, "Container is not running or reports unhealthy"
    )


def probe_sessions(
    runtime: ContainerRuntime,
    sessions: Sequence[Session],
    *,
    probe_timeout: float,
    max_workers: int,
) -> list[HealthResult]:
    """Probe every session's container concurrently.

    Args:
        runtime: Runtime to probe with.
        sessions: Sessions to probe.
        probe_timeout: Seconds a single probe may run, counted from when a
            worker picks it up.
        max_workers: Maximum concurrent probes.

    Returns:
        One HealthResult per session, in input order.
    """
    if not sessions:
        return []

    started: dict[str, float] = {}
    started_lock = threading.Lock()

    def run_probe(session: Session) -> bool:
        with started_lock:
            started[session.session_id] = time.monotonic()
        return runtime.probe(session.session_id, probe_timeout)

    workers = max(1, min(max_workers, len(sessions)))
    waves = math.ceil(len(sessions) / workers)
    deadline = time.monotonic() + probe_timeout * waves + SCHEDULING_GRACE

    pool = ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="HealthProbe"
    )
    results: dict[str, HealthResult] = {}
    try:
        pending: dict[Future[bool], str] = {
            pool.submit(run_probe, session): session.session_id
            for session in sessions
        }

        while pending:
            now = time.monotonic()
            if now >= deadline:
                break

            wake = deadline
            with started_lock:
                begun = dict(started)
            for future, session_id in list(pending.items()):
                if future.done() or session_id not in begun:
                    continue
                expires = begun[session_id] + probe_timeout
                if now >= expires:
                    del pending[future]
                    logger.warning(
                        "Health probe for %s timed out after %ss",
                        session_id,
                        probe_timeout,
                    )
                    results[session_id] = HealthResult(
                        session_id,
                        False,
                        f"Probe timed out after {probe_timeout}s",
                    )
                else:
                    wake = min(wake, expires)

            if not pending:
                break

            done, _ = concurrent.futures.wait(
                pending,
                timeout=max(wake - now, 0.01),
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
            for future in done:
                session_id = pending.pop(future)
                results[session_id] = _result_from(future, session_id)

        for future, session_id in pending.items():
            logger.warning(
                "Health probe for %s did not complete before the deadline",
                session_id,
            )
            results[session_id] = HealthResult(
                session_id, False, "Probe did not complete before deadline"
            )
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    return [results[session.session_id] for session in sessions]


class MaintenanceLoop:
    """Background thread running health checks then cleanup periodically.

    Args:
        manager: Session manager to maintain.
        interval: Seconds between ticks.
    """

    def __init__(self, manager: SessionManager, interval: float) -> None:
        self._manager = manager
        self._interval = interval
        self._shutdown_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="SessionMaintenance"
        )
        self._thread.start()
        logger.info("Maintenance loop started (interval: %ss)", self._interval)

    def stop(self, timeout: float | None = 10) -> None:
        """Signal the loop to exit and wait for the current tick."""
        self._shutdown_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Maintenance thread did not exit in time")
            self._thread = None
        logger.info("Maintenance loop stopped")

    def run_once(self) -> None:
        """Run one maintenance pass: health checks, then cleanup.

        A failure in either step is logged; the other still runs.
        """
        try:
            results = self._manager.perform_health_checks()
            unhealthy = sum(1 for result in results if not result.healthy)
            logger.info(
                "Health check complete: %d sessions, %d unhealthy",
                len(results),
                unhealthy,
            )
        except Exception as e:
            logger.exception("Error during health checks: %s", e)

        try:
            report = self._manager.cleanup_inactive_sessions()
            if report.cleaned or report.errors:
                logger.info(
                    "Cleanup complete: %d stopped, %d errors",
                    len(report.cleaned),
                    len(report.errors),
                )
            else:
                logger.debug("Cleanup complete. No sessions stopped")
        except Exception as e:
            logger.exception("Error during cleanup: %s", e)

    def _run(self) -> None:
        while not self._shutdown_event.wait(timeout=self._interval):
            self.run_once()

# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Orchestrator service: component wiring and the ``spectre`` CLI.

``SpectreService`` builds every component once from configuration and
passes them to each other by reference.  The authorization and
persistence layer embeds the service and calls the session manager,
mirror service, and branch policy directly.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from spectre.config import ConfigError, SpectreConfig
from spectre.container import ContainerRuntime, PodmanRuntime
from spectre.git_mirror import GitMirrorService
from spectre.logging import configure_logging
from spectre.policy import BranchLedger, BranchPolicy, InMemoryBranchLedger
from spectre.session.maintenance import MaintenanceLoop
from spectre.session.manager import SessionManager
from spectre.session.store import JsonSessionStore, SessionStore


logger = logging.getLogger(__name__)


class SpectreService:
    """Owns the mirror service, session manager, policy, and maintenance.

    Args:
        config: Complete orchestrator configuration.
        runtime: Container runtime. Defaults to the configured CLI.
        store: Session store. Defaults to the configured JSON file.
        ledger: Branch ledger. Defaults to an in-memory ledger.
    """

    def __init__(
        self,
        config: SpectreConfig,
        *,
        runtime: ContainerRuntime | None = None,
        store: SessionStore | None = None,
        ledger: BranchLedger | None = None,
    ) -> None:
        self.config = config
        self._shutdown_event = threading.Event()
        self._started = False
        self._stopped = False

        self.git_mirror = GitMirrorService(
            config.storage.mirrors_dir,
            config.storage.workspaces_dir,
            git_timeout=config.git.timeout,
            deploy_keys_dir=config.storage.deploy_keys_dir,
            push_new_branches=config.git.push_new_branches,
        )
        if runtime is None:
            runtime = PodmanRuntime(
                container_command=config.container.command,
                url_template=config.container.url_template,
            )
        if store is None:
            store = JsonSessionStore(config.storage.sessions_file)
        self.sessions = SessionManager(runtime, self.git_mirror, store, config)
        self.branch_policy = BranchPolicy(
            self.git_mirror, ledger or InMemoryBranchLedger()
        )
        self.maintenance = MaintenanceLoop(
            self.sessions, config.maintenance.interval_seconds
        )

    def start(self, run_maintenance: bool = True) -> None:
        """Start the session manager and, if enabled, the maintenance loop."""
        logger.info("Starting spectre service...")
        self.sessions.start()
        if run_maintenance and self.config.maintenance.enabled:
            self.maintenance.start()
        self._started = True
        logger.info("Service started")

    def run_maintenance_once(self) -> None:
        """Run a single health-check and cleanup pass."""
        self.maintenance.run_once()

    def request_shutdown(self) -> None:
        """Wake up wait(). Safe to call from a signal handler."""
        self._shutdown_event.set()

    def wait(self) -> None:
        """Block until request_shutdown() is called."""
        while not self._shutdown_event.wait(timeout=1.0):
            pass

    def stop(self) -> None:
        """Stop maintenance and every running session. Idempotent."""
        if self._stopped or not self._started:
            return
        self._stopped = True
        logger.info("Stopping spectre service...")
        self._shutdown_event.set()
        self.maintenance.stop()
        self.sessions.stop()
        logger.info("Service stopped")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code (0=success, 1=config error, 2=startup, 3=runtime error).
    """
    parser = argparse.ArgumentParser(
        description="Spectre IDE session orchestrator",
        epilog=(
            "Keeps repository mirrors and container-backed IDE sessions "
            "healthy."
        ),
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one maintenance pass (health checks, cleanup) and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help=(
            "Path to spectre.yaml config file"
            " (default: ~/.config/spectre/spectre.yaml)"
        ),
    )
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    try:
        config = SpectreConfig.from_yaml(config_path=args.config)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    try:
        service = SpectreService(config)
        service.start(run_maintenance=not args.once)
    except Exception as e:
        logger.exception("Failed to start service: %s", e)
        return 2

    if args.once:
        try:
            service.run_maintenance_once()
            return 0
        except Exception as e:
            logger.exception("Maintenance pass failed: %s", e)
            return 3

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        service.request_shutdown()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        service.wait()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())

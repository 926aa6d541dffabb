# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the podman/docker CLI runtime."""

import subprocess
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from spectre.container import (
    MANAGED_LABEL,
    ContainerSpec,
    ContainerState,
    Mount,
    PodmanRuntime,
)
from spectre.container.runtime import _parse_state
from spectre.errors import ProvisioningError


CONTAINER_ID = "a" * 64


def _completed(
    returncode: int = 0, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


def _spec(**kwargs: object) -> ContainerSpec:
    defaults: dict[str, object] = {
        "name": "spectre-u1-r2-main-abc123",
        "image": "codercom/code-server:latest",
    }
    defaults.update(kwargs)
    return ContainerSpec(**defaults)  # type: ignore[arg-type]


@pytest.fixture
def mock_run() -> Iterator[MagicMock]:
    with patch("spectre.container.runtime.subprocess.run") as mock:
        yield mock


class TestBuildRunCommand:
    """Tests for PodmanRuntime.build_run_command."""

    def test_minimal(self) -> None:
        """The managed label and hardening flags are always present."""
        args = PodmanRuntime().build_run_command(_spec())

        assert args[:4] == ["run", "-d", "--name", "spectre-u1-r2-main-abc123"]
        assert "no-new-privileges" in args
        assert f"{MANAGED_LABEL}=true" in args
        assert "--memory" not in args
        assert "--network" not in args
        image_index = args.index("codercom/code-server:latest")
        assert args[image_index + 1 :] == [
            "--bind-addr",
            "0.0.0.0:8080",
            "--auth",
            "none",
        ]

    def test_full(self) -> None:
        """Limits, network, mounts, env, and labels are passed through."""
        spec = _spec(
            labels={"spectre.user-id": "1"},
            mounts=(
                Mount(Path("/ws"), "/home/coder/workspace"),
                Mount(Path("/ext"), "/ext", read_only=True),
            ),
            env={"DISABLE_TELEMETRY": "true"},
            memory="2g",
            cpus=1.5,
            network="ide-net",
            port=9000,
        )

        args = PodmanRuntime().build_run_command(spec)

        assert ["--memory", "2g"] == args[
            args.index("--memory") : args.index("--memory") + 2
        ]
        assert "1.5" in args
        assert "ide-net" in args
        assert "/ws:/home/coder/workspace:rw" in args
        assert "/ext:/ext:ro" in args
        assert "DISABLE_TELEMETRY=true" in args
        assert "spectre.user-id=1" in args
        assert "0.0.0.0:9000" in args


class TestStart:
    """Tests for PodmanRuntime.start."""

    def test_success(self, mock_run: MagicMock) -> None:
        """The container ID comes from the last stdout line."""
        mock_run.return_value = _completed(stdout=f"pulling\n{CONTAINER_ID}\n")
        runtime = PodmanRuntime(url_template="https://{name}.ide.test")

        handle = runtime.start(_spec(), timeout=30)

        assert handle.container_id == CONTAINER_ID
        assert handle.url == "https://spectre-u1-r2-main-abc123.ide.test"
        assert mock_run.call_args.args[0][0] == "podman"
        assert mock_run.call_args.kwargs["timeout"] == 30

    def test_failure_removes_by_name(self, mock_run: MagicMock) -> None:
        """A failed run cleans up the named container."""
        mock_run.side_effect = [
            _completed(returncode=125, stderr="image not known"),
            _completed(),
        ]

        with pytest.raises(ProvisioningError, match="image not known"):
            PodmanRuntime().start(_spec(), timeout=30)

        cleanup = mock_run.call_args_list[1].args[0]
        assert cleanup == ["podman", "rm", "-f", "spectre-u1-r2-main-abc123"]

    def test_timeout_removes_by_name(self, mock_run: MagicMock) -> None:
        """A timed-out run is converted and cleaned up."""
        mock_run.side_effect = [
            subprocess.TimeoutExpired(cmd="podman", timeout=5),
            _completed(),
        ]

        with pytest.raises(ProvisioningError, match="timed out"):
            PodmanRuntime().start(_spec(), timeout=5)

        assert mock_run.call_count == 2

    @pytest.mark.parametrize("stdout", ["", "\n", "  \n\n"])
    def test_empty_output_removes_by_name(
        self, mock_run: MagicMock, stdout: str
    ) -> None:
        """A run that prints no container ID is a failed start."""
        mock_run.side_effect = [_completed(stdout=stdout), _completed()]

        with pytest.raises(ProvisioningError, match="no container ID"):
            PodmanRuntime().start(_spec(), timeout=30)

        cleanup = mock_run.call_args_list[1].args[0]
        assert cleanup == ["podman", "rm", "-f", "spectre-u1-r2-main-abc123"]

    def test_missing_binary(self, mock_run: MagicMock) -> None:
        """A missing CLI surfaces as ProvisioningError."""
        mock_run.side_effect = FileNotFoundError("docker")

        with pytest.raises(ProvisioningError, match="Failed to run docker"):
            PodmanRuntime(container_command="docker").start(_spec(), 5)


class TestStopRemove:
    """Tests for stop and remove idempotence."""

    def test_stop(self, mock_run: MagicMock) -> None:
        """Stop leaves one second of the timeout for the CLI itself."""
        mock_run.return_value = _completed()

        PodmanRuntime().stop(CONTAINER_ID, timeout=10)

        assert mock_run.call_args.args[0] == [
            "podman",
            "stop",
            "-t",
            "9",
            CONTAINER_ID,
        ]

    @pytest.mark.parametrize(
        "stderr",
        [
            "Error: no such container abc",
            "Error: container abc not found",
        ],
    )
    def test_not_found_is_success(
        self, mock_run: MagicMock, stderr: str
    ) -> None:
        """Stopping or removing a missing container is a no-op."""
        mock_run.return_value = _completed(returncode=125, stderr=stderr)
        runtime = PodmanRuntime()

        runtime.stop(CONTAINER_ID, timeout=10)
        runtime.remove(CONTAINER_ID, timeout=10)

    def test_other_errors_raise(self, mock_run: MagicMock) -> None:
        """Real failures raise ProvisioningError."""
        mock_run.return_value = _completed(
            returncode=125, stderr="permission denied"
        )
        runtime = PodmanRuntime()

        with pytest.raises(ProvisioningError, match="Failed to stop"):
            runtime.stop(CONTAINER_ID, timeout=10)
        with pytest.raises(ProvisioningError, match="Failed to remove"):
            runtime.remove(CONTAINER_ID, timeout=10)


class TestInspect:
    """Tests for inspect, probe, and state parsing."""

    def test_running(self, mock_run: MagicMock) -> None:
        """A running container probes healthy."""
        mock_run.return_value = _completed(stdout='{"Status": "running"}')
        runtime = PodmanRuntime()

        assert runtime.inspect(CONTAINER_ID, 2) is ContainerState.RUNNING
        assert runtime.probe(CONTAINER_ID, 2) is True

    def test_not_found(self, mock_run: MagicMock) -> None:
        """Missing containers inspect as NOT_FOUND and probe unhealthy."""
        mock_run.return_value = _completed(
            returncode=125, stderr="Error: no such object"
        )
        runtime = PodmanRuntime()

        assert runtime.inspect(CONTAINER_ID, 2) is ContainerState.NOT_FOUND
        assert runtime.probe(CONTAINER_ID, 2) is False

    def test_inspect_failure_raises(self, mock_run: MagicMock) -> None:
        """Other inspect failures are errors, not states."""
        mock_run.return_value = _completed(returncode=1, stderr="boom")

        with pytest.raises(ProvisioningError, match="Failed to inspect"):
            PodmanRuntime().inspect(CONTAINER_ID, 2)

    @pytest.mark.parametrize(
        ("output", "expected"),
        [
            ('{"Status": "exited"}', ContainerState.EXITED),
            ('{"Status": "Running"}', ContainerState.RUNNING),
            (
                '{"Status": "running", "Health": {"Status": "unhealthy"}}',
                ContainerState.UNHEALTHY,
            ),
            (
                '{"Status": "running", "Healthcheck": '
                '{"Status": "unhealthy"}}',
                ContainerState.UNHEALTHY,
            ),
            (
                '{"Status": "running", "Health": {"Status": "healthy"}}',
                ContainerState.RUNNING,
            ),
            ('{"Status": "weird"}', ContainerState.UNKNOWN),
            ("[1, 2]", ContainerState.UNKNOWN),
            ("not json", ContainerState.UNKNOWN),
        ],
    )
    def test_parse_state(self, output: str, expected: ContainerState) -> None:
        """JSON state output maps to ContainerState."""
        assert _parse_state(output) is expected


class TestListManaged:
    """Tests for list_managed."""

    def test_lists_full_ids(self, mock_run: MagicMock) -> None:
        """IDs are listed untruncated and filtered by the managed label."""
        mock_run.return_value = _completed(stdout=f"{CONTAINER_ID}\n\n")

        ids = PodmanRuntime().list_managed(timeout=5)

        assert ids == [CONTAINER_ID]
        args = mock_run.call_args.args[0]
        assert "--no-trunc" in args
        assert f"label={MANAGED_LABEL}=true" in args

    def test_failure_raises(self, mock_run: MagicMock) -> None:
        """A failed listing raises."""
        mock_run.return_value = _completed(returncode=1, stderr="down")

        with pytest.raises(ProvisioningError, match="list managed"):
            PodmanRuntime().list_managed(timeout=5)

# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container runtime abstraction for IDE session containers."""

from spectre.container.runtime import (
    EXTENSIONS_MOUNT,
    MANAGED_LABEL,
    WORKSPACE_MOUNT,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    ContainerState,
    Mount,
    PodmanRuntime,
)


__all__ = [
    "EXTENSIONS_MOUNT",
    "MANAGED_LABEL",
    "WORKSPACE_MOUNT",
    "ContainerHandle",
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerState",
    "Mount",
    "PodmanRuntime",
]

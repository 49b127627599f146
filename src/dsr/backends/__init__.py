"""Execution backends: act containers on the Linux host, ssh on native hosts."""

from dsr.backends.base import Backend, BuildRequest, TargetPaths, classify_transient
from dsr.backends.containerized import ContainerizedBackend, collect_artifacts
from dsr.backends.native import NativeBackend, render_build_command

__all__ = [
    "Backend",
    "BuildRequest",
    "ContainerizedBackend",
    "NativeBackend",
    "TargetPaths",
    "classify_transient",
    "collect_artifacts",
    "render_build_command",
]

"""Bounded subprocess supervision for build commands."""

from dsr.sandbox.process_runner import (
    CapturedCommand,
    ProcessOutcome,
    ProcessRegistry,
    ProcessRunner,
    capture,
)

__all__ = [
    "CapturedCommand",
    "ProcessOutcome",
    "ProcessRegistry",
    "ProcessRunner",
    "capture",
]

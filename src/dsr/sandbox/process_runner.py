"""
dsr — bounded subprocess execution.

File: src/dsr/sandbox/process_runner.py

Purpose
- Run long build commands (``act``, ``ssh``) under a hard deadline without ever
  leaving orphaned children behind.

Functional requirements
- Every command starts in its own process group so a container engine or ssh
  session and all of its descendants are signalled together.
- On deadline expiry or interrupt the group receives SIGTERM, then SIGKILL once
  the grace period has elapsed.
- stdout and stderr are merged and drained by a pump thread that tees each line
  into the durable log file and the live diagnostic sink.
- ``run`` never blocks past ``timeout + grace`` plus a short join slack.
"""

from __future__ import annotations

import collections
import contextlib
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

_POLL_INTERVAL_SECONDS: Final[float] = 0.2
_GROUP_POLL_SECONDS: Final[float] = 0.05
_JOIN_SLACK_SECONDS: Final[float] = 2.0
_TAIL_LIMIT_CHARS: Final[int] = 64 * 1024


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    """Terminal state of one supervised command."""

    command: tuple[str, ...]
    returncode: int | None
    timed_out: bool
    interrupted: bool
    duration_seconds: float
    tail: str

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and not self.interrupted and self.returncode == 0


@dataclass(frozen=True, slots=True)
class CapturedCommand:
    """Result of a short probe command whose output is captured in memory."""

    command: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and not self.interrupted and self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"


class ProcessRegistry:
    """Live process groups, so one interrupt can reach every running build."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: dict[int, subprocess.Popen[str]] = {}
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def register(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes[proc.pid] = proc
        if self._cancelled.is_set():
            _signal_group(proc, signal.SIGTERM)

    def unregister(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes.pop(proc.pid, None)

    def active_pids(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._processes))

    def terminate_all(self) -> int:
        """Mark the registry cancelled and SIGTERM every live group.

        Returns immediately. Each supervising ``run`` call escalates to SIGKILL
        after its own grace period, so this is safe to call from a signal handler.
        """

        self._cancelled.set()
        with self._lock:
            live = list(self._processes.values())
        for proc in live:
            _signal_group(proc, signal.SIGTERM)
        return len(live)


class ProcessRunner:
    def __init__(
        self,
        *,
        registry: ProcessRegistry | None = None,
        live_sink: TextIO | None = None,
        redactor: Callable[[str], str] | None = None,
    ) -> None:
        self.registry = registry if registry is not None else ProcessRegistry()
        self._live_sink = live_sink
        self._redactor = redactor
        self._sink_lock = threading.Lock()

    def run(
        self,
        command: Sequence[str],
        *,
        log_file: Path,
        timeout_seconds: float,
        grace_seconds: float,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        label: str = "",
    ) -> ProcessOutcome:
        """Run ``command`` to completion, deadline, or interrupt.

        Output is appended to ``log_file`` so retries of the same target keep the
        history of earlier attempts.
        """

        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        argv = tuple(command)
        if not argv:
            raise ValueError("command must not be empty")
        log_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = f"[{label}] " if label else ""
        run_env = dict(os.environ)
        if env is not None:
            run_env.update(env)

        tail: collections.deque[str] = collections.deque()
        tail_size = 0
        started = time.monotonic()
        deadline = started + timeout_seconds
        timed_out = False
        interrupted = False

        with log_file.open("a", encoding="utf-8", errors="replace") as log_handle:
            log_handle.write(f"$ {' '.join(argv)}\n")
            log_handle.flush()

            if self.registry.cancelled:
                return ProcessOutcome(argv, None, False, True, 0.0, "")

            proc = subprocess.Popen(
                list(argv),
                cwd=None if cwd is None else str(cwd),
                env=run_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
            self.registry.register(proc)

            def _emit(raw_line: str) -> None:
                nonlocal tail_size
                line = self._redactor(raw_line) if self._redactor is not None else raw_line
                log_handle.write(line)
                log_handle.flush()
                tail.append(line)
                tail_size += len(line)
                while tail_size > _TAIL_LIMIT_CHARS and tail:
                    tail_size -= len(tail.popleft())
                if self._live_sink is not None:
                    with self._sink_lock:
                        self._live_sink.write(f"{prefix}{line}")
                        self._live_sink.flush()

            def _pump() -> None:
                stream = proc.stdout
                if stream is None:
                    return
                try:
                    for line in iter(stream.readline, ""):
                        _emit(line)
                finally:
                    with contextlib.suppress(OSError):
                        stream.close()

            pump = threading.Thread(target=_pump, name=f"dsr-pump-{proc.pid}", daemon=True)
            pump.start()

            try:
                while proc.poll() is None:
                    if self.registry.cancelled:
                        interrupted = True
                        _terminate_process_group(proc, grace_seconds=grace_seconds)
                        break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        timed_out = True
                        _terminate_process_group(proc, grace_seconds=grace_seconds)
                        break
                    with contextlib.suppress(subprocess.TimeoutExpired):
                        proc.wait(timeout=min(_POLL_INTERVAL_SECONDS, remaining))
                if not (timed_out or interrupted) and (
                    self.registry.cancelled or _group_alive(proc.pid)
                ):
                    # The leader is gone but the group is not: interrupted, or
                    # descendants were left running in the background.
                    _terminate_process_group(proc, grace_seconds=grace_seconds)
                returncode = proc.wait(timeout=_JOIN_SLACK_SECONDS)
            except subprocess.TimeoutExpired:
                returncode = None
            finally:
                self.registry.unregister(proc)

            pump.join(timeout=_JOIN_SLACK_SECONDS)
            duration = time.monotonic() - started
            # terminate_all may reach the group before the loop sees the cancel flag.
            if not timed_out and returncode != 0 and self.registry.cancelled:
                interrupted = True
            if timed_out:
                log_handle.write(f"dsr: deadline of {timeout_seconds:g}s exceeded; killed\n")
            elif interrupted:
                log_handle.write("dsr: interrupted; killed\n")

        return ProcessOutcome(
            command=argv,
            returncode=returncode,
            timed_out=timed_out,
            interrupted=interrupted and not timed_out,
            duration_seconds=duration,
            tail="".join(tail),
        )

    def capture(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        grace_seconds: float = 1.0,
    ) -> CapturedCommand:
        """``capture`` bound to this runner's registry."""

        return capture(
            command,
            timeout_seconds=timeout_seconds,
            grace_seconds=grace_seconds,
            registry=self.registry,
        )


def capture(
    command: Sequence[str],
    *,
    timeout_seconds: float,
    grace_seconds: float = 1.0,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    registry: ProcessRegistry | None = None,
) -> CapturedCommand:
    """Run a short probe command with captured output and a timeout.

    Like ``ProcessRunner.run`` the command gets its own process group, and with a
    ``registry`` it is reachable by ``terminate_all``.
    """

    argv = tuple(command)
    if registry is not None and registry.cancelled:
        return CapturedCommand(argv, None, "", "", timed_out=False, interrupted=True)
    run_env = dict(os.environ)
    if env is not None:
        run_env.update(env)
    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=None if cwd is None else str(cwd),
            env=run_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as exc:
        return CapturedCommand(
            command=argv, returncode=127, stdout="", stderr=str(exc), timed_out=False
        )

    if registry is not None:
        registry.register(proc)
    timed_out = False
    try:
        try:
            stdout, stderr = proc.communicate(timeout=max(timeout_seconds, 0.0))
        except subprocess.TimeoutExpired:
            timed_out = True
            _terminate_process_group(proc, grace_seconds=grace_seconds)
            stdout, stderr = _drain(proc)
        else:
            if (registry is not None and registry.cancelled) or _group_alive(proc.pid):
                _terminate_process_group(proc, grace_seconds=grace_seconds)
    finally:
        if registry is not None:
            registry.unregister(proc)

    returncode = None if timed_out else proc.returncode
    interrupted = (
        not timed_out and returncode != 0 and registry is not None and registry.cancelled
    )
    return CapturedCommand(
        command=argv,
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        interrupted=interrupted,
    )


def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
    try:
        stdout, stderr = proc.communicate(timeout=_JOIN_SLACK_SECONDS)
    except subprocess.TimeoutExpired:
        return "", ""
    return _coerce_stream(stdout), _coerce_stream(stderr)


def _terminate_process_group(proc: subprocess.Popen[str], *, grace_seconds: float) -> None:
    """SIGTERM the group, then SIGKILL it if anything survives the grace period.

    Survival is judged on the whole group, not the leader: a descendant that
    ignores SIGTERM outlives its parent and still gets the SIGKILL.
    """

    _signal_group(proc, signal.SIGTERM)
    deadline = time.monotonic() + max(grace_seconds, 0.0)
    while time.monotonic() < deadline:
        if proc.poll() is not None and not _group_alive(proc.pid):
            return
        time.sleep(_GROUP_POLL_SECONDS)
    _signal_group(proc, signal.SIGKILL)


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_group(proc: subprocess.Popen[str], sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        with contextlib.suppress(OSError):
            proc.send_signal(sig)


def _coerce_stream(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "CapturedCommand",
    "ProcessOutcome",
    "ProcessRegistry",
    "ProcessRunner",
    "capture",
]

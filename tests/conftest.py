"""
dsr — shared test fixtures.

File: tests/conftest.py

Purpose
- Isolate git and XDG state per test, and build throwaway repositories, engine
  configs, and fake ``act``/``docker``/``ssh`` executables on demand.
"""

from __future__ import annotations

import os
import stat
import subprocess
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from dsr.config.schema import EngineConfig, default_config, merge_config

WORKFLOW_YAML = """\
name: release
on:
  push:
    tags: ["v*"]
jobs:
  build-linux:
    runs-on: ubuntu-latest
    steps:
      - run: make build
  build-macos:
    runs-on: macos-14
    steps:
      - run: make build
  build-windows:
    runs-on: windows-latest
    steps:
      - run: make build
"""


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = (
            f"git command failed: git {' '.join(args)}\n"
            f"stdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        )
        raise AssertionError(msg)
    return completed


def commit_file(worktree: Path, rel_path: str, content: str, message: str) -> str:
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(worktree, "add", "--all")
    run_git(worktree, "commit", "-m", message)
    return run_git(worktree, "rev-parse", "HEAD").stdout.strip()


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(autouse=True)
def isolated_git_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    # Kept outside ``tmp_path`` so tests that list their tmp_path see only their own files.
    env_root = tmp_path_factory.mktemp("isolated-env")
    home = env_root / "home"
    xdg = env_root / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("XDG_STATE_HOME", str(env_root / "xdg-state"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "dsr tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "dsr-tests@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "dsr tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "dsr-tests@example.invalid")
    monkeypatch.delenv("DSR_CONFIG", raising=False)


@pytest.fixture
def make_repo(tmp_path: Path) -> Callable[..., Path]:
    """Create a git repository holding a release workflow, optionally tagged."""

    def _make(name: str = "repo", *, tag: str | None = "v1.0.0") -> Path:
        repo = tmp_path / name
        repo.mkdir()
        run_git(repo, "-c", "init.defaultBranch=main", "init")
        commit_file(repo, ".github/workflows/release.yml", WORKFLOW_YAML, "add workflow")
        commit_file(repo, "main.go", "package main\n\nfunc main() {}\n", "add source")
        if tag is not None:
            run_git(repo, "tag", "-a", tag, "-m", f"release {tag}")
        return repo

    return _make


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., EngineConfig]:
    """Build an ``EngineConfig`` rooted in ``tmp_path`` with nested overrides."""

    def _make(overrides: Mapping[str, Any] | None = None) -> EngineConfig:
        base: dict[str, Any] = merge_config(
            default_config(),  # type: ignore[arg-type]
            {
                "paths": {
                    "state_dir": str(tmp_path / "state"),
                    "repos_dir": str(tmp_path / "repos.d"),
                },
                "build": {
                    "timeout_seconds": 30,
                    "kill_grace_seconds": 1,
                    "retry_backoff_seconds": 0.0,
                    "retry_backoff_max_seconds": 0.0,
                },
            },
        )
        return EngineConfig.from_mapping(merge_config(base, dict(overrides or {})))

    return _make


@pytest.fixture
def fake_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A bin directory placed first on PATH for fake toolchain executables."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


@pytest.fixture
def git() -> Callable[..., subprocess.CompletedProcess[str]]:
    return run_git


@pytest.fixture
def commit() -> Callable[[Path, str, str, str], str]:
    return commit_file


@pytest.fixture
def script() -> Callable[[Path, str], Path]:
    return write_script

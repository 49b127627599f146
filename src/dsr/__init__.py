"""
dsr — release build orchestration engine

File: src/dsr/__init__.py

Purpose
- Package root. Builds a tool's release artifacts for every target platform,
  in act containers on the Linux host and natively on macOS and Windows hosts,
  and records them in a content-addressed manifest.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

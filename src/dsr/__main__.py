"""Module entrypoint for ``python -m dsr``."""

from __future__ import annotations

from dsr.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())

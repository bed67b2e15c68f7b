"""Module entrypoint for ``python -m patchflow``."""

from __future__ import annotations

from patchflow.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())

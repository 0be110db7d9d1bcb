"""Console entrypoint; the CLI lives in `multi_backend_orchestrator.orchestrator.main`."""

from __future__ import annotations

from multi_backend_orchestrator.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())

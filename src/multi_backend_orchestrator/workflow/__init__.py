"""Workflow engine.

This package holds:
- Workflow and step definitions, and the TOML loader
- The dependency scheduler and quorum gating
- Prompt interpolation, output parsing and edit application
- Retry with exponential backoff
- The executor that drives steps through their lifecycle
"""

__all__: list[str] = []

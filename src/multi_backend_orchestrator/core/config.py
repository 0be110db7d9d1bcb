"""Core configuration for the orchestrator.

Settings are read, in priority order, from explicit arguments, environment
variables (`ORCHESTRATOR_` prefix, `__` as the nested delimiter), a `.env`
file and finally an `orchestrator.toml` file.
"""

import logging
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from multi_backend_orchestrator.orchestrator.logging import configure_logging

DEFAULT_CONFIG_FILE = Path("orchestrator.toml")


class BackendConfig(BaseModel):
    """Configuration for a single backend."""

    kind: Literal["command", "openai", "ollama"] = Field(
        default="command",
        description="Adapter used to reach the backend",
    )
    enabled: bool = Field(default=True, description="Include the backend in the registry")

    # Command backends
    command: str | None = Field(default=None, description="Executable to run")
    args: list[str] = Field(default_factory=list, description="Arguments before the prompt")
    prompt_separator: bool = Field(
        default=True,
        description="Pass '--' before the prompt so it is never read as a flag",
    )
    skip_lines: int = Field(default=0, ge=0, description="Leading output lines to drop")
    parse: Literal["raw", "codex_json"] = Field(
        default="raw",
        description="How to extract the answer from stdout",
    )

    # API backends
    model: str | None = Field(default=None, description="Model identifier")
    endpoint: str | None = Field(default=None, description="Base URL for HTTP backends")
    api_key_env: str | None = Field(
        default=None,
        description="Environment variable holding the API key",
    )
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Client-side request timeout in seconds",
    )


class DefaultsConfig(BaseModel):
    """Fallback workflow defaults."""

    parallel: bool = Field(default=True, description="Run independent steps concurrently")
    max_parallel: int | None = Field(
        default=None,
        ge=1,
        description="Maximum concurrently running steps (None = unbounded)",
    )
    timeout: float = Field(default=300.0, gt=0, description="Per-attempt timeout in seconds")
    command_wrapper: str | None = Field(
        default=None,
        description="Wrapper for shell commands, e.g. \"docker exec box sh -c {cmd}\"",
    )

    @field_validator("command_wrapper")
    @classmethod
    def _wrapper_has_placeholder(cls, value: str | None) -> str | None:
        if value is not None and "{cmd}" not in value:
            raise ValueError("command_wrapper must contain a '{cmd}' placeholder")
        return value


def default_backends() -> dict[str, BackendConfig]:
    return {
        "codex": BackendConfig(
            command="codex",
            args=["exec", "--json", "-s", "read-only"],
            parse="codex_json",
        ),
        "gemini": BackendConfig(
            command="npx",
            args=["@google/gemini-cli"],
            prompt_separator=False,
            skip_lines=1,
        ),
        "claude": BackendConfig(
            command="claude",
            args=["-p", "--output-format", "text"],
        ),
        "ollama": BackendConfig(
            kind="ollama",
            endpoint="http://localhost:11434",
            model="llama3.2",
        ),
    }


class OrchestratorConfig(BaseSettings):
    """Main configuration for the orchestrator."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    defaults: DefaultsConfig = Field(
        default_factory=DefaultsConfig,
        description="Workflow defaults",
    )
    backends: dict[str, BackendConfig] = Field(
        default_factory=default_backends,
        description="Backend registry, keyed by the name steps refer to",
    )

    workflows_dir: Path = Field(
        default=Path(".orchestrator/workflows"),
        description="Project-local workflow directory",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_nested_delimiter="__",
        env_file=".env",
        toml_file=DEFAULT_CONFIG_FILE,
        extra="ignore",
    )

    @field_validator("backends", mode="before")
    @classmethod
    def _merge_default_backends(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        merged: dict[str, object] = {
            name: backend.model_dump() for name, backend in default_backends().items()
        }
        for name, override in value.items():
            base = merged.get(name)
            if isinstance(override, dict) and isinstance(base, dict):
                merged[name] = {**base, **override}
            else:
                merged[name] = override
        return merged

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @classmethod
    def from_file(cls, path: Path) -> "OrchestratorConfig":
        """Load settings using an explicit TOML file instead of the default."""

        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
        with path.open("rb") as f:
            data = tomllib.load(f)
        return cls(**data)

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("multi_backend_orchestrator").setLevel(logging.DEBUG)

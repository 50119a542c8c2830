"""Pydantic configuration models for the computer-use web tester."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError


# Load .env file if present
load_dotenv()

ExecutionMode = Literal["docker", "process"]


def _env_overrides(data: Any, env_mapping: dict[str, str]) -> Any:
    """Fill unset fields from environment variables."""
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if field_name not in data or data[field_name] is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class AgentConfig(BaseModel):
    """Remote agent (Anthropic Messages API) configuration."""

    model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model identifier sent to the remote agent service",
    )
    api_key: Optional[str] = Field(
        default=None,
        description="API key for the remote agent service",
    )
    base_url: Optional[str] = Field(
        default=None,
        description="Override for the agent service endpoint",
    )
    max_tokens: int = Field(
        default=4096,
        ge=256,
        le=32768,
        description="Token budget for each agent response",
    )
    max_iterations: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Hard cap on agent round-trips per run",
    )
    iteration_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Pause between iterations in seconds",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for transient agent service failures",
    )
    request_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Per-request timeout for the agent service in seconds",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _env_overrides(
            data,
            {
                "api_key": "ANTHROPIC_API_KEY",
                "model": "COMPUTER_USE_MODEL",
                "base_url": "ANTHROPIC_BASE_URL",
            },
        )


class DisplayConfig(BaseModel):
    """Virtual display geometry shared by both backends."""

    width: int = Field(default=1280, ge=320, le=3840)
    height: int = Field(default=720, ge=240, le=2160)
    display_number: int = Field(
        default=99,
        ge=0,
        description="X display number used inside the container",
    )

    @property
    def display(self) -> str:
        return f":{self.display_number}"


class DockerConfig(BaseModel):
    """Container backend configuration."""

    base_image: str = Field(default="ubuntu:22.04")
    name_prefix: str = Field(
        default="computer-use-test-",
        description="Container name prefix, also used to find orphans",
    )
    docker_host: Optional[str] = Field(
        default=None,
        description="Docker daemon URL; defaults to the environment",
    )
    command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Hard timeout for a single exec in seconds",
    )
    provision_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Timeout for a single provisioning step in seconds",
    )
    readiness_attempts: int = Field(default=10, ge=1, le=60)
    readiness_wait_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    stop_timeout: int = Field(default=5, ge=0, le=60)
    browser_start_wait: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds to let Chrome paint after launch",
    )

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"docker_host": "DOCKER_HOST"})


class BrowserConfig(BaseModel):
    """Process backend (Playwright) configuration."""

    headless: bool = Field(default=True)
    executable_path: Optional[str] = Field(
        default=None,
        description="System Chromium binary; the bundled browser is used when unset",
    )
    navigation_timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    type_delay_ms: int = Field(
        default=50,
        ge=0,
        le=1000,
        description="Delay between typed characters",
    )

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"executable_path": "CHROMIUM_EXECUTABLE_PATH"})


class RunDefaults(BaseModel):
    """Defaults applied to every run unless the caller overrides them."""

    website_url: str = Field(default="app.giftround.com")
    max_run_duration: int = Field(
        default=300,
        ge=10,
        le=3600,
        description="Upper bound for the wall-clock budget of a run in seconds",
    )
    take_screenshots: bool = Field(default=True)
    execution_mode: ExecutionMode = Field(default="process")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        data = _env_overrides(
            data,
            {
                "website_url": "WEBSITE_URL",
                "max_run_duration": "MAX_TEST_DURATION",
                "execution_mode": "EXECUTION_MODE",
            },
        )
        if isinstance(data, dict) and not data.get("execution_mode"):
            if os.getenv("USE_DOCKER") == "true" or os.getenv("DOCKER_AVAILABLE") == "true":
                data["execution_mode"] = "docker"
        return data


class ServiceConfig(BaseModel):
    """Root configuration model combining all config sections."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    run: RunDefaults = Field(default_factory=RunDefaults)

    max_concurrent_runs: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Number of runs admitted at the same time",
    )
    verbose: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"max_concurrent_runs": "MAX_CONCURRENT_TESTS"})


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> ServiceConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file
    3. Environment variables
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is not None and not config_path.exists():
        raise ConfigFileNotFoundError(str(config_path))

    if config_path is None:
        config_path = Path("config.json")

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in {".yaml", ".yml"}:
                import yaml
                config_data = yaml.safe_load(f) or {}
            else:
                config_data = json.load(f)

    config = ServiceConfig.model_validate(config_data)

    if cli_overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, cli_overrides)
        config = ServiceConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "backend": ("run", "execution_mode"),
        "website_url": ("run", "website_url"),
        "no_screenshots": ("run", "take_screenshots"),  # inverted
        "max_iterations": ("agent", "max_iterations"),
        "model": ("agent", "model"),
        "parallel": ("max_concurrent_runs", None),
        "verbose": ("verbose", None),
        "headful": ("browser", "headless"),  # inverted
    }

    for key, value in overrides.items():
        if value is None:
            continue

        if key in ("no_screenshots", "headful"):
            section, field = override_mapping[key]
            config_dict[section][field] = not value
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value

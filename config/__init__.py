"""Configuration module for the computer-use web tester."""
from config.models import (
    AgentConfig,
    BrowserConfig,
    DisplayConfig,
    DockerConfig,
    ExecutionMode,
    RunDefaults,
    ServiceConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "BrowserConfig",
    "DisplayConfig",
    "DockerConfig",
    "ExecutionMode",
    "RunDefaults",
    "ServiceConfig",
    "load_config",
]

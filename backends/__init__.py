"""Actuation backends and the factory that picks one per run."""
from __future__ import annotations

import logging
from typing import Optional

from backends.base import (
    DEFAULT_SETTLE_DELAYS,
    ActionResult,
    ActuationBackend,
    BackendState,
    to_playwright_key,
    to_xdotool_key,
)
from backends.container import ContainerBackend
from backends.process import ProcessBackend
from config import ServiceConfig
from exceptions import ConfigurationError

__all__ = [
    "DEFAULT_SETTLE_DELAYS",
    "ActionResult",
    "ActuationBackend",
    "BackendState",
    "ContainerBackend",
    "ProcessBackend",
    "create_backend",
    "to_playwright_key",
    "to_xdotool_key",
]


def create_backend(
    mode: str,
    run_id: str,
    config: ServiceConfig,
    logger: Optional[logging.Logger] = None,
) -> ActuationBackend:
    """Build the backend for an execution mode, bound to one run."""
    if mode == "docker":
        return ContainerBackend(
            run_id,
            display=config.display,
            docker_config=config.docker,
            logger=logger,
        )
    if mode == "process":
        return ProcessBackend(
            run_id,
            display=config.display,
            browser_config=config.browser,
            logger=logger,
        )
    raise ConfigurationError(f"Unknown execution mode: {mode}", {"supported": ["docker", "process"]})

"""Typed objects for a single computer-use test run."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from config import ExecutionMode
from execution_log import TRAIL_FORMAT_VERSION, ExecutionLog, ScreenshotRecord, ScreenshotTrail


class RunState(str, Enum):
    """States of the agent execution loop."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    NAVIGATING = "navigating"
    ITERATING = "iterating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED)


@dataclass
class RunOptions:
    """Per-run configuration supplied by the caller."""

    timeout_seconds: float = 300
    take_screenshots: bool = True
    website_url: str = "app.giftround.com"
    max_iterations: int = 20
    execution_mode: ExecutionMode = "process"

    @property
    def target_url(self) -> str:
        """Website URL with a scheme, https:// when none was given."""
        if self.website_url.startswith(("https://", "http://", "file://", "about:")):
            return self.website_url
        return f"https://{self.website_url}"


@dataclass
class TestRun:
    """State owned by one run from start to terminal state."""

    __test__ = False

    instruction: str
    options: RunOptions
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: RunState = RunState.IDLE
    state_history: List[RunState] = field(default_factory=list)
    iterations: int = 0
    conversation: List[Dict[str, Any]] = field(default_factory=list)
    logger: Optional[logging.Logger] = None
    log: ExecutionLog = field(init=False)
    screenshots: ScreenshotTrail = field(default_factory=ScreenshotTrail)

    def __post_init__(self) -> None:
        self.log = ExecutionLog(self.run_id, self.logger)
        self.state_history.append(self.state)

    def transition(self, state: RunState) -> None:
        if self.state.is_terminal:
            return
        self.state = state
        self.state_history.append(state)
        self.log.add(f"State -> {state.value}", level=logging.DEBUG)


@dataclass
class RunResult:
    """Outcome of a run, returned on every exit path."""

    run_id: str
    success: bool
    message: str
    started_at: datetime
    finished_at: datetime
    execution_mode: str
    iterations: int = 0
    log: str = ""
    screenshots: List[ScreenshotRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    final_state: RunState = RunState.IDLE

    @property
    def duration(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    @property
    def status(self) -> str:
        return "passed" if self.success else "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "duration": round(self.duration, 3),
            "iterations": self.iterations,
            "screenshots": [s.to_dict() for s in self.screenshots],
            "log": self.log,
            "error": self.error,
            "errorType": self.error_type,
            "testId": self.run_id,
            "executionMode": self.execution_mode,
            "finalState": self.final_state.value,
            "timestamp": self.finished_at.astimezone(timezone.utc).isoformat(),
            "trailVersion": TRAIL_FORMAT_VERSION,
        }

"""Pytest fixtures for the computer-use tester."""
from __future__ import annotations

import asyncio
import base64
import copy
import io
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from backends.base import DEFAULT_SETTLE_DELAYS, ActuationBackend
from config import AgentConfig, DisplayConfig, DockerConfig, ServiceConfig
from run_types import RunOptions, TestRun

ENV_VARS = [
    "ANTHROPIC_API_KEY",
    "COMPUTER_USE_MODEL",
    "ANTHROPIC_BASE_URL",
    "DOCKER_HOST",
    "CHROMIUM_EXECUTABLE_PATH",
    "WEBSITE_URL",
    "MAX_TEST_DURATION",
    "EXECUTION_MODE",
    "USE_DOCKER",
    "DOCKER_AVAILABLE",
    "MAX_CONCURRENT_TESTS",
]


def make_png(width: int = 1280, height: int = 720) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buffer, format="PNG")
    return buffer.getvalue()


class FakeBackend(ActuationBackend):
    """In-memory backend that records every call in order."""

    execution_mode = "process"

    def __init__(self, run_id: str = "run-1", display: Optional[DisplayConfig] = None, image: bytes = b""):
        super().__init__(run_id, display=display, settle_delays={k: 0.0 for k in DEFAULT_SETTLE_DELAYS})
        self.image = image or make_png(self.display.width, self.display.height)
        self.events: List[Any] = []
        self.stop_calls = 0
        self.start_error: Optional[Exception] = None
        self.navigate_error: Optional[Exception] = None
        self.capture_error: Optional[Exception] = None
        self.navigate_delay = 0.0
        self.capture_delay = 0.0

    async def _start(self) -> None:
        self.events.append("start")
        if self.start_error:
            raise self.start_error

    async def _stop(self) -> None:
        self.stop_calls += 1
        self.events.append("stop")

    async def navigate(self, url: str) -> None:
        self._ensure_ready()
        self.events.append(("navigate", url))
        if self.navigate_delay:
            await asyncio.sleep(self.navigate_delay)
        if self.navigate_error:
            raise self.navigate_error

    async def _capture(self) -> bytes:
        self.events.append("capture")
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        if self.capture_error:
            raise self.capture_error
        return self.image

    async def _click(self, x: int, y: int) -> None:
        self.events.append(("click", x, y))

    async def _type(self, text: str) -> None:
        self.events.append(("type", text))

    async def _key(self, symbol: str) -> None:
        self.events.append(("key", symbol))

    async def _scroll(self, x: int, y: int, dx: int, dy: int) -> None:
        self.events.append(("scroll", x, y, dx, dy))

    async def settle(self, action: str) -> None:
        self.events.append(("settle", action))
        await super().settle(action)


class ScriptedAgentClient:
    """Agent client that replays canned responses and records each request."""

    def __init__(self, responses: List[List[Any]], repeat_last: bool = False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls: List[Dict[str, Any]] = []

    async def create_message(self, messages, tools, system=None):
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools, "system": system})
        if self.repeat_last and len(self.responses) == 1:
            content = self.responses[0]
        else:
            content = self.responses.pop(0)
        return SimpleNamespace(content=content)


def text_block(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="text", text=text)


def tool_use_block(block_id: str, name: str, tool_input: Dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", id=block_id, name=name, input=tool_input)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of config defaults."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def png_bytes() -> bytes:
    """A 1280x720 PNG matching the default display."""
    return make_png()


@pytest.fixture
def png_base64(png_bytes: bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


@pytest.fixture
def service_config() -> ServiceConfig:
    """Config with no pauses between iterations."""
    return ServiceConfig(
        agent=AgentConfig(api_key="test-key", iteration_delay=0.0),
        docker=DockerConfig(readiness_wait_seconds=0.0, browser_start_wait=0.0),
    )


@pytest.fixture
def run_options() -> RunOptions:
    return RunOptions(
        timeout_seconds=30,
        take_screenshots=True,
        website_url="example.com",
        max_iterations=20,
        execution_mode="process",
    )


@pytest.fixture
def sample_run(run_options: RunOptions) -> TestRun:
    return TestRun(instruction="take a screenshot of the homepage", options=run_options)


@pytest.fixture
def fake_backend(sample_run: TestRun) -> FakeBackend:
    return FakeBackend(run_id=sample_run.run_id)


@pytest.fixture
def fake_backend_cls():
    return FakeBackend


@pytest.fixture
def make_client():
    """Factory for scripted agent clients."""
    return ScriptedAgentClient


@pytest.fixture
def blocks() -> SimpleNamespace:
    """Builders for response content blocks."""
    return SimpleNamespace(text=text_block, tool_use=tool_use_block)


@pytest.fixture
def mock_docker_client() -> MagicMock:
    """Docker SDK client whose execs succeed with empty output."""
    client = MagicMock()
    container = MagicMock()
    container.id = "abc123"
    container.status = "running"
    container.put_archive = MagicMock(return_value=True)
    client.containers.create = MagicMock(return_value=container)
    client.api.exec_create = MagicMock(return_value={"Id": "exec-1"})
    client.api.exec_start = MagicMock(return_value=(b"", None))
    client.api.exec_inspect = MagicMock(return_value={"ExitCode": 0})
    return client


@pytest.fixture
def mock_manager() -> MagicMock:
    """ContainerManager stand-in for adapter tests."""
    manager = MagicMock()
    manager.initialize = AsyncMock()
    manager.cleanup = AsyncMock()
    manager.execute = AsyncMock(return_value="")
    manager.get_file = AsyncMock(return_value="")
    manager.write_file = AsyncMock()
    manager.get_logs = AsyncMock(return_value="")
    return manager


@pytest.fixture
def mock_browser(png_bytes: bytes) -> MagicMock:
    """ProcessBrowser stand-in for adapter tests."""
    browser = MagicMock()
    browser.is_started = True
    browser.start = AsyncMock()
    browser.close = AsyncMock()
    browser.navigate = AsyncMock()
    browser.screenshot = AsyncMock(return_value=png_bytes)
    browser.click = AsyncMock()
    browser.type_text = AsyncMock()
    browser.press_key = AsyncMock()
    browser.scroll = AsyncMock()
    browser.get_url = MagicMock(return_value="https://example.com/")
    browser.get_console_errors = MagicMock(return_value=[])
    return browser

"""Computer-use agent loop: screenshot, ask the agent, act, repeat."""
from __future__ import annotations

import asyncio
import base64
import io
import logging
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from agent_client import AgentClient
from backends.base import ActuationBackend
from config import ServiceConfig
from exceptions import ComputerUseError, IterationBudgetExhausted
from prompts import (
    SCREENSHOT_UNAVAILABLE,
    get_instruction_prompt,
    get_situational_prompt,
    get_system_prompt,
)
from run_types import RunState, TestRun
from tools import ToolExecutor

# Upper bound on the final screenshot once the run has been cancelled.
ERROR_SCREENSHOT_TIMEOUT = 2.0


def decode_image_size(image_base64: str) -> Tuple[int, int]:
    """(width, height) of a base64 image, with or without a data-URI prefix."""
    if image_base64.startswith("data:"):
        image_base64 = image_base64.split(",", 1)[1]
    with Image.open(io.BytesIO(base64.b64decode(image_base64))) as image:
        return image.size


class ComputerUseAgent:
    """Drives one run through Initializing, Navigating and Iterating.

    The backend is entered as an async context manager around the whole
    execution, so it is torn down exactly once on every exit path,
    including cancellation by the runner's deadline.
    """

    def __init__(
        self,
        backend: ActuationBackend,
        client: AgentClient,
        run: TestRun,
        config: Optional[ServiceConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend
        self.client = client
        self.run = run
        self.config = config or ServiceConfig()
        self.logger = logger or logging.getLogger("agent")
        self.executor = ToolExecutor(backend, run, display=self.config.display, logger=self.logger)

    async def execute(self) -> int:
        """Run to a terminal state and return the number of agent exchanges."""
        async with self.backend:
            try:
                await self._initialize()
                await self._navigate()
                return await self._iterate()
            except asyncio.CancelledError:
                self.run.log.add("Run cancelled", level=logging.WARNING)
                try:
                    await asyncio.wait_for(self._record_screenshot("Error state"), ERROR_SCREENSHOT_TIMEOUT)
                except asyncio.TimeoutError:
                    self.run.log.add("Final screenshot timed out", level=logging.WARNING)
                self.run.transition(RunState.FAILED)
                raise
            except Exception as e:
                self.run.log.add(f"Error: {e}", level=logging.ERROR)
                await self._record_screenshot("Error state")
                self.run.transition(RunState.FAILED)
                raise

    # ─────────────────────────────────────────────────────────────────────────
    # States
    # ─────────────────────────────────────────────────────────────────────────

    async def _initialize(self) -> None:
        self.run.transition(RunState.INITIALIZING)
        self.run.log.add(f"Initializing {self.backend.execution_mode} backend")
        await self.backend.initialize()
        self.run.log.add("Backend ready")
        await self._record_screenshot("Initial state")

    async def _navigate(self) -> None:
        self.run.transition(RunState.NAVIGATING)
        url = self.run.options.target_url
        self.run.log.add(f"Navigating to {url}")
        await self.backend.navigate(url)
        self.run.log.add(f"Successfully navigated to {url}")
        await self._record_screenshot(f"Navigated to {url}")

    async def _iterate(self) -> int:
        self.run.transition(RunState.ITERATING)
        tools = self.executor.tool_definitions()
        system = get_system_prompt(self.backend.supports_shell)
        max_iterations = self.run.options.max_iterations
        self.run.conversation.append(
            {
                "role": "user",
                "content": get_instruction_prompt(
                    self.run.instruction, self.run.options.target_url, self.config.display
                ),
            }
        )

        for iteration in range(1, max_iterations + 1):
            self.run.iterations = iteration
            self.run.log.add(f"Agent iteration {iteration}")

            observation = await self._observe(iteration)
            response = await self.client.create_message(self._outgoing(observation), tools, system)
            content = [self._block_to_param(block) for block in getattr(response, "content", None) or []]

            for block in content:
                if block.get("type") == "text" and block.get("text"):
                    self.run.log.add(f"Agent: {block['text']}")

            tool_uses = [block for block in content if block.get("type") == "tool_use"]
            if not tool_uses:
                self.run.conversation.append({"role": "assistant", "content": content})
                self.run.log.add("Agent indicates task completion")
                self.run.transition(RunState.COMPLETED)
                return iteration

            tool_use = tool_uses[0]
            if len(tool_uses) > 1:
                self.run.log.add(
                    f"Agent requested {len(tool_uses)} tool calls; only the first is executed",
                    level=logging.WARNING,
                )
                content = [b for b in content if b.get("type") != "tool_use" or b is tool_use]

            result = await self.executor.execute(tool_use.get("name", ""), tool_use.get("input"))
            tool_result: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": tool_use.get("id"),
                "content": result.output,
            }
            if result.is_error:
                tool_result["is_error"] = True
            self.run.conversation.append({"role": "assistant", "content": content})
            self.run.conversation.append({"role": "user", "content": [tool_result]})

            if iteration < max_iterations:
                await asyncio.sleep(self.config.agent.iteration_delay)

        raise IterationBudgetExhausted(max_iterations, self.run.run_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _observe(self, iteration: int) -> List[Dict[str, Any]]:
        """Fresh screenshot plus the situational prompt, as user content blocks."""
        try:
            image = await self.backend.screenshot()
        except ComputerUseError as e:
            self.run.log.add(f"Screenshot failed: {e.message}", level=logging.WARNING)
            return [{"type": "text", "text": SCREENSHOT_UNAVAILABLE.format(error=e.message)}]

        self._check_dimensions(image)
        return [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": image},
            },
            {"type": "text", "text": get_situational_prompt(iteration)},
        ]

    def _outgoing(self, observation: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Conversation with the observation appended to a copy of the last user turn.

        Screenshots are never stored in the conversation itself.
        """
        history = self.run.conversation
        last = history[-1]
        content = last["content"]
        blocks = [{"type": "text", "text": content}] if isinstance(content, str) else list(content)
        return [*history[:-1], {"role": last["role"], "content": blocks + observation}]

    def _check_dimensions(self, image: str) -> None:
        display = self.config.display
        try:
            width, height = decode_image_size(image)
        except (UnidentifiedImageError, ValueError, OSError) as e:
            self.logger.warning(f"[{self.run.run_id}] Could not decode screenshot: {e}")
            return
        if (width, height) != (display.width, display.height):
            self.logger.warning(
                f"[{self.run.run_id}] Screenshot is {width}x{height}, display is {display.width}x{display.height}"
            )

    async def _record_screenshot(self, step: str) -> None:
        """Append to the trail if enabled; failures are logged, not raised."""
        if not self.run.options.take_screenshots or not self.backend.is_ready:
            return
        try:
            image = await self.backend.screenshot()
        except ComputerUseError as e:
            self.run.log.add(f"Failed to capture screenshot '{step}': {e.message}", level=logging.WARNING)
            return
        self.run.screenshots.append(step, image)
        self.run.log.add(f"Screenshot captured: {step}")

    @staticmethod
    def _block_to_param(block: Any) -> Dict[str, Any]:
        """Response content block as a request-ready dict."""
        if isinstance(block, dict):
            return dict(block)
        block_type = getattr(block, "type", None)
        if block_type == "text":
            return {"type": "text", "text": block.text}
        if block_type == "tool_use":
            return {
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": dict(block.input or {}),
            }
        if hasattr(block, "model_dump"):
            return block.model_dump(exclude_none=True)
        return {"type": block_type}

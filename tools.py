"""Tool vocabulary offered to the agent and dispatch of one tool call to a backend."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from backends.base import ActionResult, ActuationBackend
from config import DisplayConfig
from exceptions import ActuationError, ComputerUseError, ProtocolViolation
from run_types import TestRun

COMPUTER_TOOL = "computer"
BASH_TOOL = "bash"
EDITOR_TOOL = "str_replace_editor"

COMPUTER_ACTIONS = ("screenshot", "left_click", "type", "key", "scroll", "wait")
ACTION_ALIASES = {"click": "left_click"}
MAX_WAIT_SECONDS = 10.0


class ToolExecutor:
    """Turns one agent tool invocation into backend calls and a text result.

    Never raises for actuation or protocol problems; those come back as
    ``ActionResult(is_error=True)`` so the agent can see its mistake.
    """

    def __init__(
        self,
        backend: ActuationBackend,
        run: TestRun,
        display: Optional[DisplayConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend
        self.run = run
        self.display = display or backend.display
        self.logger = logger or logging.getLogger("tools")

    def tool_definitions(self) -> List[Dict[str, Any]]:
        """Tool vocabulary for this backend; shell tools only where supported."""
        computer: Dict[str, Any] = {
            "type": "computer_20250124",
            "name": COMPUTER_TOOL,
            "display_width_px": self.display.width,
            "display_height_px": self.display.height,
        }
        if self.backend.supports_shell:
            computer["display_number"] = self.display.display_number
        tools = [computer]
        if self.backend.supports_shell:
            tools.append({"type": "bash_20250124", "name": BASH_TOOL})
            tools.append({"type": "text_editor_20250124", "name": EDITOR_TOOL})
        return tools

    async def execute(self, name: str, tool_input: Optional[Dict[str, Any]]) -> ActionResult:
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        try:
            if name == COMPUTER_TOOL:
                result = await self._computer(tool_input)
            elif name == BASH_TOOL and self.backend.supports_shell:
                command = tool_input.get("command")
                self.run.log.add(f"Executing bash: {command}")
                result = await self.backend.run_shell(command)  # type: ignore[attr-defined]
            elif name == EDITOR_TOOL and self.backend.supports_shell:
                params = {k: v for k, v in tool_input.items() if k not in ("command", "path")}
                result = await self.backend.edit_text(  # type: ignore[attr-defined]
                    tool_input.get("command"), tool_input.get("path"), **params
                )
            else:
                raise ProtocolViolation(f"Unknown tool: {name}", tool=name)
        except ComputerUseError as e:
            result = ActionResult(f"Error: {e.message}", is_error=True)
        except Exception as e:
            self.logger.exception(f"[{self.run.run_id}] Unexpected failure in tool {name}")
            result = ActionResult(f"Error: {e}", is_error=True)

        if result.is_error:
            self.run.log.add(f"Tool execution failed: {result.output}", level=logging.WARNING)
        elif name == COMPUTER_TOOL:
            self.run.log.add(result.output)
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # computer tool
    # ─────────────────────────────────────────────────────────────────────────

    async def _computer(self, tool_input: Dict[str, Any]) -> ActionResult:
        raw_action = tool_input.get("action")
        action = ACTION_ALIASES.get(raw_action, raw_action)
        if action not in COMPUTER_ACTIONS:
            raise ProtocolViolation(
                f"Unknown computer action: {raw_action}", tool=COMPUTER_TOOL, action=str(raw_action)
            )

        if action == "screenshot":
            image = await self.backend.screenshot()
            if self.run.options.take_screenshots:
                self.run.screenshots.append("Screenshot taken", image)
            return ActionResult("Screenshot taken")

        if action == "left_click":
            x, y = self._coordinate(tool_input)
            return await self.backend.click(x, y)

        if action == "type":
            return await self.backend.type(tool_input.get("text"))

        if action == "key":
            symbol = tool_input.get("text", tool_input.get("key"))
            return await self.backend.key(symbol)

        if action == "scroll":
            if tool_input.get("coordinate") is None:
                x, y = self.display.width // 2, self.display.height // 2
            else:
                x, y = self._coordinate(tool_input)
            direction = tool_input.get("scroll_direction", tool_input.get("direction"))
            amount = tool_input.get("scroll_amount", tool_input.get("clicks"))
            return await self.backend.scroll(x, y, direction, amount)

        return await self._wait(tool_input.get("duration", 1))

    def _coordinate(self, tool_input: Dict[str, Any]) -> Tuple[Any, Any]:
        coordinate = tool_input.get("coordinate")
        if not isinstance(coordinate, (list, tuple)) or len(coordinate) != 2:
            raise ActuationError(f"coordinate must be an [x, y] pair, got {coordinate!r}")
        return coordinate[0], coordinate[1]

    async def _wait(self, duration: Any) -> ActionResult:
        try:
            seconds = float(duration)
        except (TypeError, ValueError) as e:
            raise ActuationError(f"Invalid wait duration: {duration!r}", action="wait") from e
        seconds = min(max(seconds, 0.0), MAX_WAIT_SECONDS)
        await asyncio.sleep(seconds)
        return ActionResult(f"Waited {seconds:g}s")

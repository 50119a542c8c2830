"""Actuation through xdotool and scrot inside an isolated container."""
from __future__ import annotations

import asyncio
import base64
import logging
import posixpath
import shlex
import time
from typing import Any, Dict, List, Optional

from backends.base import ActionResult, ActuationBackend, to_xdotool_key
from config import DisplayConfig, DockerConfig
from container import ContainerManager
from exceptions import (
    ActuationError,
    CommandError,
    ContainerError,
    NavigationError,
    ProtocolViolation,
)

CHROME_FLAGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
    "--remote-debugging-port=9222",
    "--start-maximized",
    "--user-data-dir=/tmp/chrome-profile",
]

# xdotool mouse buttons for wheel notches.
SCROLL_BUTTONS = {"up": 4, "down": 5, "left": 6, "right": 7}

EDITOR_COMMANDS = ("view", "create", "str_replace", "insert", "undo_edit")


class ContainerBackend(ActuationBackend):
    """Backend driving Chrome on the container's virtual display."""

    execution_mode = "docker"
    supports_shell = True

    def __init__(
        self,
        run_id: str,
        display: Optional[DisplayConfig] = None,
        docker_config: Optional[DockerConfig] = None,
        manager: Optional[ContainerManager] = None,
        settle_delays: Optional[Dict[str, float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(run_id, display=display, settle_delays=settle_delays, logger=logger)
        self.docker_config = docker_config or DockerConfig()
        self.manager = manager or ContainerManager(
            run_id, config=self.docker_config, display=self.display, logger=self.logger
        )
        self._edit_history: Dict[str, List[bytes]] = {}

    async def _start(self) -> None:
        await self.manager.initialize()

    async def _stop(self) -> None:
        await self.manager.cleanup()

    async def navigate(self, url: str) -> None:
        self._ensure_ready()
        flags = " ".join(CHROME_FLAGS)
        size = f"--window-size={self.display.width},{self.display.height}"
        command = f"nohup google-chrome {flags} {size} {shlex.quote(url)} > /tmp/chrome.log 2>&1 &"
        try:
            await self.manager.execute(command)
            await asyncio.sleep(self.docker_config.browser_start_wait)
            await self.manager.execute("pgrep -x chrome > /dev/null")
        except CommandError as exc:
            raise NavigationError(f"Failed to navigate to website: {exc.message}", url=url) from exc
        except Exception as exc:
            raise NavigationError(f"Failed to navigate to website: {exc}", url=url) from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Screen actuation
    # ─────────────────────────────────────────────────────────────────────────

    async def _capture(self) -> str:
        filename = f"/tmp/screenshot_{time.time_ns()}.png"
        try:
            await self.manager.execute(f"scrot {filename}")
            return await self.manager.get_file(filename)
        finally:
            try:
                await self.manager.execute(f"rm -f {filename}")
            except ContainerError as exc:
                self.logger.debug(f"[{self.run_id}] Could not remove {filename}: {exc}")

    async def _click(self, x: int, y: int) -> None:
        await self.manager.execute(f"xdotool mousemove {x} {y} click 1")

    async def _type(self, text: str) -> None:
        await self.manager.execute(f"xdotool type --delay 12 -- {shlex.quote(text)}")

    async def _key(self, symbol: str) -> None:
        await self.manager.execute(f"xdotool key -- {shlex.quote(to_xdotool_key(symbol))}")

    async def _scroll(self, x: int, y: int, dx: int, dy: int) -> None:
        if dy:
            button, notches = SCROLL_BUTTONS["down" if dy > 0 else "up"], abs(dy)
        else:
            button, notches = SCROLL_BUTTONS["right" if dx > 0 else "left"], abs(dx)
        await self.manager.execute(f"xdotool mousemove {x} {y} click --repeat {notches} {button}")

    # ─────────────────────────────────────────────────────────────────────────
    # Shell and file editing (container only)
    # ─────────────────────────────────────────────────────────────────────────

    async def run_shell(self, command: Any) -> ActionResult:
        async def op() -> str:
            if not isinstance(command, str) or not command.strip():
                raise ActuationError("Command must be a non-empty string", action="bash")
            output = await self.manager.execute(command)
            return output or "Command executed successfully"

        return await self._guard("bash", op, settle=False)

    async def edit_text(self, command: Any, path: Any, **params: Any) -> ActionResult:
        async def op() -> str:
            if command not in EDITOR_COMMANDS:
                raise ProtocolViolation(
                    f"Unknown editor command: {command}", tool="str_replace_editor", action=str(command)
                )
            if not isinstance(path, str) or not path.startswith("/"):
                raise ActuationError(f"Path must be absolute: {path!r}", action=command)
            handler = getattr(self, f"_edit_{command}")
            return await handler(path, **params)

        return await self._guard("edit", op, settle=False)

    async def _read_bytes(self, path: str) -> bytes:
        return base64.b64decode(await self.manager.get_file(path))

    async def _write_bytes(self, path: str, data: bytes) -> None:
        directory = posixpath.dirname(path)
        if directory:
            await self.manager.execute(f"mkdir -p {shlex.quote(directory)}")
        await self.manager.write_file(path, data)

    async def _remember(self, path: str) -> None:
        try:
            previous = await self._read_bytes(path)
        except Exception:
            return
        self._edit_history.setdefault(path, []).append(previous)

    async def _edit_view(self, path: str, view_range: Optional[List[int]] = None, **_: Any) -> str:
        quoted = shlex.quote(path)
        try:
            await self.manager.execute(f"test -d {quoted}")
            return await self.manager.execute(f"find {quoted} -maxdepth 2 -not -path '*/.*'")
        except CommandError:
            pass
        if view_range:
            start, end = int(view_range[0]), int(view_range[1])
            end_expr = "$" if end == -1 else str(end)
            return await self.manager.execute(f"cat -n {quoted} | sed -n '{start},{end_expr}p'")
        return await self.manager.execute(f"cat -n {quoted}")

    async def _edit_create(self, path: str, file_text: Optional[str] = None, **_: Any) -> str:
        if file_text is None:
            raise ActuationError("file_text is required for create", action="create")
        await self._remember(path)
        await self._write_bytes(path, file_text.encode("utf-8"))
        return f"File created successfully at: {path}"

    async def _edit_str_replace(
        self, path: str, old_str: Optional[str] = None, new_str: str = "", **_: Any
    ) -> str:
        if not old_str:
            raise ActuationError("old_str is required for str_replace", action="str_replace")
        content = (await self._read_bytes(path)).decode("utf-8", errors="replace")
        occurrences = content.count(old_str)
        if occurrences == 0:
            raise ActuationError(
                f"No replacement was performed, old_str did not appear verbatim in {path}",
                action="str_replace",
            )
        if occurrences > 1:
            raise ActuationError(
                f"No replacement was performed, old_str appears {occurrences} times in {path}",
                action="str_replace",
            )
        await self._remember(path)
        await self._write_bytes(path, content.replace(old_str, new_str or "").encode("utf-8"))
        return f"The file {path} has been edited."

    async def _edit_insert(
        self, path: str, insert_line: Optional[int] = None, new_str: Optional[str] = None, **_: Any
    ) -> str:
        if insert_line is None or new_str is None:
            raise ActuationError("insert_line and new_str are required for insert", action="insert")
        lines = (await self._read_bytes(path)).decode("utf-8", errors="replace").split("\n")
        line = int(insert_line)
        if not 0 <= line <= len(lines):
            raise ActuationError(f"insert_line {line} is outside 0..{len(lines)}", action="insert")
        lines[line:line] = new_str.split("\n")
        await self._remember(path)
        await self._write_bytes(path, "\n".join(lines).encode("utf-8"))
        return f"The file {path} has been edited."

    async def _edit_undo_edit(self, path: str, **_: Any) -> str:
        history = self._edit_history.get(path)
        if not history:
            raise ActuationError(f"No edit history found for {path}", action="undo_edit")
        await self._write_bytes(path, history.pop())
        return f"Last edit to {path} undone successfully."

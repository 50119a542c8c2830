"""Uniform actuation contract shared by the container and process backends."""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, Optional, Tuple

from config import DisplayConfig
from exceptions import (
    ActuationError,
    BackendNotReadyError,
    ComputerUseError,
    TeardownError,
)

# Post-action pauses so the next screenshot shows the finished effect.
DEFAULT_SETTLE_DELAYS: Dict[str, float] = {
    "click": 1.0,
    "type": 0.5,
    "key": 0.5,
    "scroll": 0.5,
}
DEFAULT_SCROLL_AMOUNT = 3
MAX_SCROLL_AMOUNT = 50
SCROLL_DIRECTIONS = ("up", "down", "left", "right")

# X keysyms (xdotool) to browser-automation key names (Playwright).
XDOTOOL_TO_PLAYWRIGHT: Dict[str, str] = {
    "Return": "Enter",
    "Tab": "Tab",
    "Escape": "Escape",
    "BackSpace": "Backspace",
    "Delete": "Delete",
    "Up": "ArrowUp",
    "Down": "ArrowDown",
    "Left": "ArrowLeft",
    "Right": "ArrowRight",
    "Page_Up": "PageUp",
    "Page_Down": "PageDown",
    "Home": "Home",
    "End": "End",
}
PLAYWRIGHT_TO_XDOTOOL: Dict[str, str] = {v: k for k, v in XDOTOOL_TO_PLAYWRIGHT.items()}

_MODIFIERS_PLAYWRIGHT = {
    "ctrl": "Control",
    "control": "Control",
    "alt": "Alt",
    "shift": "Shift",
    "super": "Meta",
    "meta": "Meta",
    "cmd": "Meta",
}
_MODIFIERS_XDOTOOL = {
    "ctrl": "ctrl",
    "control": "ctrl",
    "alt": "alt",
    "shift": "shift",
    "super": "super",
    "meta": "super",
    "cmd": "super",
}

PNG_BASE64_MAGIC = "iVBORw0KGgo"


def _translate_chord(symbol: str, table: Dict[str, str], modifiers: Dict[str, str]) -> str:
    if symbol == "+" or "+" not in symbol:
        return table.get(symbol, symbol)
    parts = symbol.split("+")
    translated = [modifiers.get(p.lower(), p) for p in parts[:-1]]
    translated.append(table.get(parts[-1], parts[-1]))
    return "+".join(translated)


def to_playwright_key(symbol: str) -> str:
    """Translate an X keysym (or chord) to Playwright naming; unknown keys pass through."""
    return _translate_chord(symbol, XDOTOOL_TO_PLAYWRIGHT, _MODIFIERS_PLAYWRIGHT)


def to_xdotool_key(symbol: str) -> str:
    """Translate a Playwright key name (or chord) to an X keysym; unknown keys pass through."""
    return _translate_chord(symbol, PLAYWRIGHT_TO_XDOTOOL, _MODIFIERS_XDOTOOL)


def scroll_vector(direction: str, amount: int) -> Tuple[int, int]:
    """Signed (dx, dy) notches; positive dy scrolls down, positive dx scrolls right."""
    if direction == "down":
        return 0, amount
    if direction == "up":
        return 0, -amount
    if direction == "right":
        return amount, 0
    return -amount, 0


def normalize_png_base64(raw: bytes | str) -> str:
    """Canonical encoding for the agent: bare base64 PNG, no data URI, no whitespace."""
    if isinstance(raw, (bytes, bytearray)):
        encoded = base64.b64encode(bytes(raw)).decode("ascii")
    else:
        encoded = raw.split(",", 1)[1] if raw.startswith("data:") else raw
        encoded = "".join(encoded.split())
    if not encoded:
        raise ActuationError("Screenshot is empty", action="screenshot")
    if not encoded.startswith(PNG_BASE64_MAGIC):
        raise ActuationError("Screenshot is not a PNG image", action="screenshot")
    try:
        base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ActuationError(f"Screenshot is not valid base64: {exc}", action="screenshot") from exc
    return encoded


class BackendState(str, Enum):
    CREATED = "created"
    READY = "ready"
    TORN_DOWN = "torn_down"


@dataclass
class ActionResult:
    """Textual outcome of one actuation, returned to the agent as-is."""

    output: str
    is_error: bool = False


class ActuationBackend(ABC):
    """Screen actuation bound to one run.

    Capability differences are advertised through ``supports_shell`` rather than
    through methods that raise "unsupported".
    """

    execution_mode: ClassVar[str] = ""
    supports_shell: ClassVar[bool] = False

    def __init__(
        self,
        run_id: str,
        display: Optional[DisplayConfig] = None,
        settle_delays: Optional[Dict[str, float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.run_id = run_id
        self.display = display or DisplayConfig()
        self.settle_delays = {**DEFAULT_SETTLE_DELAYS, **(settle_delays or {})}
        self.logger = logger or logging.getLogger(f"backend.{self.execution_mode or 'base'}")
        self.state = BackendState.CREATED

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self.state is BackendState.READY

    def _ensure_ready(self) -> None:
        if self.state is not BackendState.READY:
            raise BackendNotReadyError(self.state.value)

    async def initialize(self) -> None:
        """Bring the backend to the ready state. Raises InitializationError."""
        if self.state is BackendState.TORN_DOWN:
            raise BackendNotReadyError(self.state.value)
        if self.state is BackendState.READY:
            return
        await self._start()
        self.state = BackendState.READY

    async def cleanup(self) -> None:
        """Release the underlying resource. Idempotent."""
        if self.state is BackendState.TORN_DOWN:
            return
        self.state = BackendState.TORN_DOWN
        await self._stop()

    async def __aenter__(self) -> "ActuationBackend":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        try:
            await self.cleanup()
        except Exception as exc:
            # Teardown problems must not replace the run's real outcome.
            error = TeardownError(f"Backend teardown failed: {exc}")
            self.logger.error(f"[{self.run_id}] {error}")

    @abstractmethod
    async def _start(self) -> None:
        """Create the container or launch the browser."""

    @abstractmethod
    async def _stop(self) -> None:
        """Remove the container or close the browser."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Drive the browser to url. Raises NavigationError."""

    # ─────────────────────────────────────────────────────────────────────────
    # Actuation
    # ─────────────────────────────────────────────────────────────────────────

    def validate_coordinate(self, x: Any, y: Any) -> Tuple[int, int]:
        """Coerce to ints and check the point lies on the display."""
        try:
            px, py = int(round(float(x))), int(round(float(y)))
        except (TypeError, ValueError) as exc:
            raise ActuationError(f"Invalid coordinate: ({x}, {y})") from exc
        if not (0 <= px < self.display.width and 0 <= py < self.display.height):
            raise ActuationError(
                f"Coordinate ({px}, {py}) is outside the {self.display.width}x{self.display.height} display"
            )
        return px, py

    async def settle(self, action: str) -> None:
        await asyncio.sleep(max(0.0, self.settle_delays.get(action, 0.0)))

    async def _guard(
        self,
        action: str,
        operation: Callable[[], Awaitable[str]],
        settle: bool = True,
    ) -> ActionResult:
        """Run one actuation, turning any failure into error text."""
        try:
            self._ensure_ready()
            output = await operation()
            result = ActionResult(output)
        except ComputerUseError as exc:
            self.logger.warning(f"[{self.run_id}] {action} failed: {exc}")
            result = ActionResult(f"Error: {exc.message}", is_error=True)
        except Exception as exc:
            self.logger.warning(f"[{self.run_id}] {action} failed: {exc}")
            result = ActionResult(f"Error: {exc}", is_error=True)
        if settle and self.is_ready:
            await self.settle(action)
        return result

    async def screenshot(self) -> str:
        """Base64 PNG of the current display. Raises ActuationError."""
        self._ensure_ready()
        try:
            raw = await self._capture()
        except ComputerUseError as exc:
            raise ActuationError(f"Failed to take screenshot: {exc.message}", action="screenshot") from exc
        except Exception as exc:
            raise ActuationError(f"Failed to take screenshot: {exc}", action="screenshot") from exc
        return normalize_png_base64(raw)

    async def click(self, x: Any, y: Any) -> ActionResult:
        async def op() -> str:
            px, py = self.validate_coordinate(x, y)
            await self._click(px, py)
            return f"Clicked at ({px}, {py})"

        return await self._guard("click", op)

    async def type(self, text: Any) -> ActionResult:
        async def op() -> str:
            if not isinstance(text, str) or not text:
                raise ActuationError("Text to type must be a non-empty string", action="type")
            await self._type(text)
            return f"Typed: {text}"

        return await self._guard("type", op)

    async def key(self, symbol: Any) -> ActionResult:
        async def op() -> str:
            if not isinstance(symbol, str) or not symbol.strip():
                raise ActuationError("Key must be a non-empty string", action="key")
            await self._key(symbol.strip())
            return f"Pressed key: {symbol.strip()}"

        return await self._guard("key", op)

    async def scroll(self, x: Any, y: Any, direction: Any, amount: Any = None) -> ActionResult:
        async def op() -> str:
            px, py = self.validate_coordinate(x, y)
            if direction not in SCROLL_DIRECTIONS:
                raise ActuationError(
                    f"Invalid scroll direction: {direction!r} (expected one of {', '.join(SCROLL_DIRECTIONS)})",
                    action="scroll",
                )
            try:
                notches = DEFAULT_SCROLL_AMOUNT if amount is None else int(amount)
            except (TypeError, ValueError) as exc:
                raise ActuationError(f"Invalid scroll amount: {amount!r}", action="scroll") from exc
            if not 1 <= notches <= MAX_SCROLL_AMOUNT:
                raise ActuationError(f"Scroll amount must be between 1 and {MAX_SCROLL_AMOUNT}", action="scroll")
            dx, dy = scroll_vector(direction, notches)
            await self._scroll(px, py, dx, dy)
            return f"Scrolled {direction} at ({px}, {py})"

        return await self._guard("scroll", op)

    @abstractmethod
    async def _capture(self) -> bytes | str:
        """Raw PNG bytes or base64 text of the display."""

    @abstractmethod
    async def _click(self, x: int, y: int) -> None:
        ...

    @abstractmethod
    async def _type(self, text: str) -> None:
        ...

    @abstractmethod
    async def _key(self, symbol: str) -> None:
        ...

    @abstractmethod
    async def _scroll(self, x: int, y: int, dx: int, dy: int) -> None:
        """Scroll by signed notches at (x, y)."""

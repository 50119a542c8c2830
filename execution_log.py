"""Append-only execution log and screenshot trail for a single run."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

# Bump when the screenshot record shape changes.
TRAIL_FORMAT_VERSION = "1.0"
DATA_URI_PREFIX = "data:image/png;base64,"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ExecutionLog:
    """Ordered, timestamped text lines for one run, mirrored to a logger."""

    def __init__(self, run_id: str, logger: Optional[logging.Logger] = None):
        self.run_id = run_id
        self.logger = logger or logging.getLogger("execution_log")
        self._lines: List[str] = []

    def add(self, message: str, level: int = logging.INFO) -> str:
        entry = f"[{utc_timestamp()}] {message}"
        self._lines.append(entry)
        self.logger.log(level, f"[{self.run_id}] {message}")
        return entry

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self._lines)

    def contains(self, fragment: str) -> int:
        """Count lines containing fragment."""
        return sum(1 for line in self._lines if fragment in line)

    def __len__(self) -> int:
        return len(self._lines)


@dataclass(frozen=True)
class ScreenshotRecord:
    """One entry of the screenshot trail."""

    step: str
    timestamp: str
    image_base64: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScreenshotTrail:
    """Ordered screenshots captured during a run."""

    def __init__(self) -> None:
        self._records: List[ScreenshotRecord] = []

    def append(self, step: str, image_base64: str) -> ScreenshotRecord:
        data = image_base64 if image_base64.startswith("data:") else f"{DATA_URI_PREFIX}{image_base64}"
        record = ScreenshotRecord(step=step, timestamp=utc_timestamp(), image_base64=data)
        self._records.append(record)
        return record

    @property
    def records(self) -> List[ScreenshotRecord]:
        return list(self._records)

    @property
    def steps(self) -> List[str]:
        return [r.step for r in self._records]

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._records]

    def __iter__(self) -> Iterator[ScreenshotRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

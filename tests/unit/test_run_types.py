"""Unit tests for run types, the execution log and the screenshot trail."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from execution_log import DATA_URI_PREFIX, TRAIL_FORMAT_VERSION, ExecutionLog, ScreenshotTrail
from run_types import RunOptions, RunResult, RunState, TestRun

ISO_LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\] ")


class TestExecutionLog:
    def test_lines_are_timestamped(self):
        log = ExecutionLog("run-1")
        log.add("Initializing")
        assert ISO_LINE.match(log.lines[0])
        assert log.lines[0].endswith("Initializing")

    def test_text_joins_lines(self):
        log = ExecutionLog("run-1")
        log.add("one")
        log.add("two")
        assert log.text.count("\n") == 2
        assert log.text.splitlines()[1].endswith("two")

    def test_mirrors_to_logger_with_run_id(self, caplog):
        log = ExecutionLog("run-42", logging.getLogger("test.execution_log"))
        with caplog.at_level(logging.INFO, logger="test.execution_log"):
            log.add("hello")
        assert "[run-42] hello" in caplog.text

    def test_contains_counts_matching_lines(self):
        log = ExecutionLog("run-1")
        log.add("Clicked at (1, 2)")
        log.add("Typed: x")
        assert log.contains("Clicked at") == 1
        assert len(log) == 2


class TestScreenshotTrail:
    def test_append_adds_data_uri_prefix(self):
        trail = ScreenshotTrail()
        record = trail.append("Initial state", "iVBORw0KGgoAAAA")
        assert record.image_base64 == f"{DATA_URI_PREFIX}iVBORw0KGgoAAAA"
        assert record.timestamp.endswith("Z")

    def test_existing_prefix_kept(self):
        trail = ScreenshotTrail()
        record = trail.append("x", f"{DATA_URI_PREFIX}abc")
        assert record.image_base64.count("data:") == 1

    def test_record_shape(self):
        trail = ScreenshotTrail()
        trail.append("Initial state", "abc")
        assert set(trail.to_list()[0]) == {"step", "timestamp", "image_base64"}
        assert trail.steps == ["Initial state"]


class TestRunOptions:
    def test_https_prepended(self):
        assert RunOptions(website_url="app.giftround.com").target_url == "https://app.giftround.com"

    def test_scheme_kept(self):
        assert RunOptions(website_url="http://localhost:8000").target_url == "http://localhost:8000"


class TestTestRun:
    def test_initial_state(self):
        run = TestRun(instruction="do it", options=RunOptions())
        assert run.state is RunState.IDLE
        assert run.state_history == [RunState.IDLE]
        assert len(run.run_id) == 32

    def test_terminal_state_is_sticky(self):
        run = TestRun(instruction="do it", options=RunOptions())
        run.transition(RunState.INITIALIZING)
        run.transition(RunState.COMPLETED)
        run.transition(RunState.FAILED)
        assert run.state is RunState.COMPLETED
        assert run.state_history[-1] is RunState.COMPLETED

    def test_runs_do_not_share_state(self):
        a = TestRun(instruction="a", options=RunOptions())
        b = TestRun(instruction="b", options=RunOptions())
        a.log.add("only a")
        a.screenshots.append("x", "abc")
        assert len(b.log) == 0
        assert len(b.screenshots) == 0
        assert a.run_id != b.run_id


class TestRunResult:
    def test_to_dict_shape(self):
        started = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        trail = ScreenshotTrail()
        trail.append("Initial state", "abc")
        result = RunResult(
            run_id="run-1",
            success=True,
            message="Test completed successfully",
            started_at=started,
            finished_at=started + timedelta(seconds=12.5),
            execution_mode="docker",
            iterations=3,
            log="[t] line\n",
            screenshots=trail.records,
            final_state=RunState.COMPLETED,
        )
        data = result.to_dict()
        assert data["success"] is True
        assert data["duration"] == 12.5
        assert data["testId"] == "run-1"
        assert data["executionMode"] == "docker"
        assert data["finalState"] == "completed"
        assert data["trailVersion"] == TRAIL_FORMAT_VERSION
        assert data["screenshots"][0]["step"] == "Initial state"
        assert result.status == "passed"

    def test_failed_status(self):
        now = datetime.now(timezone.utc)
        result = RunResult(
            run_id="r",
            success=False,
            message="Test failed: boom",
            started_at=now,
            finished_at=now,
            execution_mode="process",
            error="boom",
            error_type="NavigationError",
        )
        assert result.status == "failed"
        assert result.to_dict()["errorType"] == "NavigationError"

"""Unit tests for the test runner."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

import pytest

from concurrency import ConcurrencyGate
from exceptions import NavigationError
from run_types import RunState
from runner import TestRunner, _build_arg_parser, run_from_cli_args


@pytest.fixture
def harness(service_config, fake_backend_cls, make_client, blocks):
    """Builds runners whose factories hand out fake backends and scripted clients."""

    class Harness:
        def __init__(self):
            self.backends = []

        def runner(self, responses=None, gate=None, repeat_last=False, configure=None) -> TestRunner:
            def backend_factory(mode, run_id, config, logger):
                backend = fake_backend_cls(run_id=run_id)
                if configure:
                    configure(backend)
                self.backends.append(backend)
                return backend

            def client_factory(config):
                return make_client(responses or [[blocks.text("Done.")]], repeat_last=repeat_last)

            return TestRunner(
                service_config,
                gate=gate,
                client_factory=client_factory,
                backend_factory=backend_factory,
            )

    return Harness()


class TestSingleRun:
    @pytest.mark.asyncio
    async def test_success_result(self, harness, run_options):
        result = await harness.runner().run("take a screenshot of the homepage", run_options)

        assert result.success
        assert result.message == "Test completed successfully"
        assert result.final_state is RunState.COMPLETED
        assert harness.backends[0].stop_calls == 1

        data = result.to_dict()
        assert data["success"] is True
        assert data["iterations"] == 1
        assert data["executionMode"] == "process"
        assert data["errorType"] is None
        assert [s["step"] for s in data["screenshots"]] == ["Initial state", "Navigated to https://example.com"]
        assert data["screenshots"][0]["image_base64"].startswith("data:image/png;base64,")
        assert "Starting test with instruction" in data["log"]

    @pytest.mark.asyncio
    async def test_click_scenario(self, harness, blocks, run_options):
        responses = [
            [blocks.tool_use("toolu_1", "computer", {"action": "left_click", "coordinate": [640, 360]})],
            [blocks.text("Clicked the page.")],
        ]
        result = await harness.runner(responses).run("click the middle", run_options)

        assert result.success
        assert result.iterations == 2
        assert result.log.count("Clicked at (640, 360)") == 1

    @pytest.mark.asyncio
    async def test_timeout(self, harness, run_options):
        run_options.timeout_seconds = 0.1
        gate = ConcurrencyGate(1)

        def slow(backend):
            backend.navigate_delay = 5

        result = await harness.runner(gate=gate, configure=slow).run("wait forever", run_options)

        assert not result.success
        assert result.error_type == "RunTimeout"
        assert result.message == "Test failed: Test timeout after 0.1s"
        assert result.final_state is RunState.FAILED
        assert "Test timeout after 0.1s" in result.log
        assert harness.backends[0].stop_calls == 1
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_timeout_capped_by_max_run_duration(self, harness, service_config, run_options, monkeypatch):
        seen = []
        real_wait_for = asyncio.wait_for

        async def spy_wait_for(awaitable, timeout):
            seen.append(timeout)
            return await real_wait_for(awaitable, timeout)

        monkeypatch.setattr("runner.asyncio.wait_for", spy_wait_for)
        run_options.timeout_seconds = 10_000
        await harness.runner().run("check the homepage", run_options)

        assert seen == [service_config.run.max_run_duration]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("instruction", [None, "", "   ", 42])
    async def test_invalid_instruction(self, harness, run_options, instruction):
        result = await harness.runner().run(instruction, run_options)

        assert not result.success
        assert result.error_type == "InvalidInstructionError"
        assert result.error == "Missing or invalid instruction. Please provide a string instruction."
        assert harness.backends == []

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, harness, run_options):
        gate = ConcurrencyGate(1)
        gate.register("someone-else")
        result = await harness.runner(gate=gate).run("check the homepage", run_options)

        assert not result.success
        assert result.error_type == "CapacityExceededError"
        assert result.message == "Test failed: Too many concurrent tests. Please try again later."
        assert harness.backends == []
        assert gate.active == 1

    @pytest.mark.asyncio
    async def test_failure_releases_gate(self, harness, run_options):
        gate = ConcurrencyGate(1)

        def broken(backend):
            backend.navigate_error = NavigationError("Navigation timed out", url="https://example.com")

        result = await harness.runner(gate=gate, configure=broken).run("check the homepage", run_options)

        assert not result.success
        assert result.error_type == "NavigationError"
        assert result.message == "Test failed: Navigation timed out"
        assert gate.active == 0
        assert gate.has_capacity()

    @pytest.mark.asyncio
    async def test_iteration_cap_fails_run(self, harness, blocks, run_options):
        run_options.max_iterations = 2
        responses = [[blocks.tool_use("t", "computer", {"action": "key", "text": "Tab"})]]
        result = await harness.runner(responses, repeat_last=True).run("never finishes", run_options)

        assert not result.success
        assert result.error_type == "IterationBudgetExhausted"
        assert result.message == "Test failed: Maximum iterations (2) reached"
        assert result.iterations == 2


class TestRunMany:
    @pytest.mark.asyncio
    async def test_runs_every_instruction(self, harness, run_options):
        runner = harness.runner()
        results = await runner.run_many(["open pricing", "open the FAQ"], run_options)

        assert [r.success for r in results] == [True, True]
        assert len({r.run_id for r in results}) == 2
        assert len(harness.backends) == 2
        assert runner.gate.active == 0


class TestDefaultOptions:
    def test_from_config(self, service_config):
        options = TestRunner(service_config).default_options()
        assert options.timeout_seconds == 300
        assert options.website_url == "app.giftround.com"
        assert options.max_iterations == 20
        assert options.execution_mode == "process"

    def test_none_overrides_ignored(self, service_config):
        options = TestRunner(service_config).default_options(timeout_seconds=None, max_iterations=5)
        assert options.timeout_seconds == 300
        assert options.max_iterations == 5


class TestCli:
    def test_parser(self):
        args = _build_arg_parser().parse_args(
            ["-i", "open pricing", "-i", "open the FAQ", "--backend", "docker", "--timeout", "60"]
        )
        assert args.instruction == ["open pricing", "open the FAQ"]
        assert args.backend == "docker"
        assert args.timeout == 60.0
        assert args.no_screenshots is None
        assert args.skip_orphan_cleanup is False

    def test_instruction_required(self):
        with pytest.raises(SystemExit):
            _build_arg_parser().parse_args([])

    @pytest.mark.asyncio
    async def test_failed_run_sets_exit_code(self, temp_dir, monkeypatch, capsys):
        monkeypatch.chdir(temp_dir)
        output = temp_dir / "out" / "results.json"
        args = _build_arg_parser().parse_args(
            ["-i", "check the homepage", "--backend", "process", "--output", str(output)]
        )

        # No API key in the environment, so the agent client cannot be built.
        exit_code = await run_from_cli_args(args, logging.getLogger("test"))

        assert exit_code == 1
        results = json.loads(output.read_text(encoding="utf-8"))
        assert results[0]["success"] is False
        assert results[0]["errorType"] == "AgentServiceError"
        assert "Passed: 0/1" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_missing_config_file(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        args = argparse.Namespace(
            config=str(temp_dir / "nope.yaml"),
            backend=None,
            website_url=None,
            no_screenshots=None,
            max_iterations=None,
            model=None,
            parallel=None,
            verbose=None,
            headful=None,
        )
        assert await run_from_cli_args(args, logging.getLogger("test")) == 1

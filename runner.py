"""CLI-friendly orchestrator for running natural-language website tests."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from agent import ComputerUseAgent
from agent_client import AgentClient, AnthropicAgentClient
from backends import ActuationBackend, create_backend
from concurrency import ConcurrencyGate
from config import ServiceConfig, load_config
from container import cleanup_orphaned_containers
from exceptions import (
    CapacityExceededError,
    ComputerUseError,
    InvalidInstructionError,
    RunTimeout,
)
from run_types import RunOptions, RunResult, RunState, TestRun

ClientFactory = Callable[[ServiceConfig], AgentClient]
BackendFactory = Callable[[str, str, ServiceConfig, logging.Logger], ActuationBackend]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_client_factory(config: ServiceConfig) -> AgentClient:
    return AnthropicAgentClient(config.agent)


class TestRunner:
    """Runs instructions end to end under a wall-clock deadline and the concurrency gate."""

    __test__ = False

    def __init__(
        self,
        config: ServiceConfig,
        gate: Optional[ConcurrencyGate] = None,
        client_factory: Optional[ClientFactory] = None,
        backend_factory: Optional[BackendFactory] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.gate = gate or ConcurrencyGate(config.max_concurrent_runs)
        self.client_factory = client_factory or _default_client_factory
        self.backend_factory = backend_factory or create_backend
        self.logger = logger or logging.getLogger("runner")

    def default_options(self, **overrides: Any) -> RunOptions:
        """RunOptions from the configured defaults, with explicit overrides applied."""
        options = RunOptions(
            timeout_seconds=self.config.run.max_run_duration,
            take_screenshots=self.config.run.take_screenshots,
            website_url=self.config.run.website_url,
            max_iterations=self.config.agent.max_iterations,
            execution_mode=self.config.run.execution_mode,
        )
        return replace(options, **{k: v for k, v in overrides.items() if v is not None})

    async def run(self, instruction: Any, options: Optional[RunOptions] = None) -> RunResult:
        """Execute one instruction. Always returns a result, never raises for run failures."""
        started = _utcnow()
        options = options or self.default_options()

        if not isinstance(instruction, str) or not instruction.strip():
            return self._rejected(InvalidInstructionError(), options, started)
        if not self.gate.has_capacity():
            return self._rejected(CapacityExceededError(self.gate.max_concurrent), options, started)

        timeout = min(options.timeout_seconds, self.config.run.max_run_duration)
        run = TestRun(instruction=instruction, options=options, logger=self.logger)
        self.gate.register(run.run_id)
        run.log.add(f'Starting test with instruction: "{instruction}" ({options.execution_mode} mode)')

        error: Optional[BaseException] = None
        try:
            client = self.client_factory(self.config)
            backend = self.backend_factory(options.execution_mode, run.run_id, self.config, self.logger)
            agent = ComputerUseAgent(backend, client, run, self.config, self.logger)
            await asyncio.wait_for(agent.execute(), timeout=timeout)
        except asyncio.TimeoutError:
            error = RunTimeout(timeout, run.run_id)
            run.log.add(f"Test timeout after {timeout}s", level=logging.ERROR)
        except ComputerUseError as exc:
            error = exc
        except Exception as exc:
            self.logger.error(f"[{run.run_id}] Test crashed: {exc}", exc_info=True)
            error = exc
        finally:
            self.gate.unregister(run.run_id)
            self.logger.info(f"[{run.run_id}] Test cleanup completed")

        if error is not None:
            run.transition(RunState.FAILED)
        return self._result(run, started, error)

    async def run_many(
        self,
        instructions: Sequence[str],
        options: Optional[RunOptions] = None,
    ) -> List[RunResult]:
        """Run instructions with at most max_concurrent_runs in flight."""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_runs)

        async def run_with_limit(instruction: str, index: int) -> RunResult:
            async with semaphore:
                self.logger.info(f"=== Starting test {index}/{len(instructions)} ===")
                return await self.run(instruction, options)

        tasks = [run_with_limit(instruction, i + 1) for i, instruction in enumerate(instructions)]
        return list(await asyncio.gather(*tasks))

    def _result(self, run: TestRun, started: datetime, error: Optional[BaseException]) -> RunResult:
        if error is None:
            message = "Test completed successfully"
        else:
            detail = error.message if isinstance(error, ComputerUseError) else str(error)
            message = f"Test failed: {detail}"
        return RunResult(
            run_id=run.run_id,
            success=error is None,
            message=message,
            started_at=started,
            finished_at=_utcnow(),
            execution_mode=run.options.execution_mode,
            iterations=run.iterations,
            log=run.log.text,
            screenshots=run.screenshots.records,
            error=None if error is None else (error.message if isinstance(error, ComputerUseError) else str(error)),
            error_type=None if error is None else type(error).__name__,
            final_state=run.state,
        )

    def _rejected(self, error: ComputerUseError, options: RunOptions, started: datetime) -> RunResult:
        self.logger.warning(f"Run rejected: {error.message}")
        return RunResult(
            run_id=uuid.uuid4().hex,
            success=False,
            message=f"Test failed: {error.message}",
            started_at=started,
            finished_at=_utcnow(),
            execution_mode=options.execution_mode,
            error=error.message,
            error_type=type(error).__name__,
        )


async def run_from_cli_args(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Entry point shared by the CLI script."""
    config_path = Path(args.config) if args.config else None
    cli_overrides = {
        "backend": args.backend,
        "website_url": args.website_url,
        "no_screenshots": args.no_screenshots,
        "max_iterations": args.max_iterations,
        "model": args.model,
        "parallel": args.parallel,
        "verbose": args.verbose,
        "headful": args.headful,
    }
    cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}

    try:
        config = load_config(config_path, cli_overrides)
    except Exception as exc:
        logger.error(f"Failed to load config: {exc}")
        return 1

    if config.run.execution_mode == "docker" and not args.skip_orphan_cleanup:
        removed = await asyncio.to_thread(
            cleanup_orphaned_containers,
            prefix=config.docker.name_prefix,
            docker_host=config.docker.docker_host,
            logger=logger,
        )
        if removed:
            logger.info(f"Removed {removed} orphaned container(s)")

    runner = TestRunner(config=config, logger=logger)
    options = runner.default_options(timeout_seconds=args.timeout)
    results = await runner.run_many(args.instruction, options)

    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps([r.to_dict() for r in results], indent=2), encoding="utf-8")
        logger.info(f"JSON results: {output}")

    # Screenshots are omitted on stdout; use --output for the full trail.
    summary = [{**r.to_dict(), "screenshots": len(r.screenshots)} for r in results]
    print(json.dumps(summary, indent=2))

    failed = [r for r in results if not r.success]
    print("\n" + "=" * 60)
    print(f"Passed: {len(results) - len(failed)}/{len(results)}")
    print("=" * 60)
    for result in failed:
        print(f"  - {result.run_id}: {(result.error or '')[:80]}")

    return 1 if failed else 0


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Test a website by following natural-language instructions with a computer-use agent.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -i "take a screenshot of the homepage"
  %(prog)s -i "sign up with a test account" --backend docker
  %(prog)s -i "open pricing" -i "open the FAQ" --parallel 2 --output results.json
        """,
    )

    task_group = parser.add_argument_group("Test")
    task_group.add_argument(
        "--instruction", "-i",
        action="append",
        required=True,
        help="Natural-language instruction (can be used multiple times)",
    )
    task_group.add_argument(
        "--website-url",
        help="Site under test (default: app.giftround.com)",
    )
    task_group.add_argument(
        "--no-screenshots",
        action="store_true",
        default=None,
        help="Do not keep a screenshot trail",
    )

    exec_group = parser.add_argument_group("Execution Options")
    exec_group.add_argument(
        "--backend",
        choices=["docker", "process"],
        help="Actuation backend (default: process, or docker when USE_DOCKER=true)",
    )
    exec_group.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Wall-clock budget per test, capped by MAX_TEST_DURATION",
    )
    exec_group.add_argument(
        "--max-iterations",
        type=int,
        metavar="N",
        help="Maximum agent round-trips per test (default: 20)",
    )
    exec_group.add_argument(
        "--model",
        help="Agent model identifier",
    )
    exec_group.add_argument(
        "--parallel",
        type=int,
        metavar="N",
        help="Number of tests admitted at the same time (default: 1)",
    )
    exec_group.add_argument(
        "--headful",
        action="store_true",
        default=None,
        help="Show the browser window (process backend only)",
    )
    exec_group.add_argument(
        "--skip-orphan-cleanup",
        action="store_true",
        help="Do not remove containers left over from earlier runs",
    )
    exec_group.add_argument(
        "--config",
        help="Path to config file (default: config.json if exists)",
    )

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--output", "-o",
        help="Write full JSON results, screenshots included, to this file",
    )
    output_group.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=None,
        help="Enable verbose output",
    )
    output_group.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-essential output",
    )

    return parser


def main() -> None:
    """Main entry point."""
    parser = _build_arg_parser()
    args = parser.parse_args()

    if args.quiet:
        log_level = logging.WARNING
    elif args.verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format="[%(levelname)s] %(message)s" if not args.verbose else "[%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("runner")

    try:
        exit_code = asyncio.run(run_from_cli_args(args, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except ComputerUseError as exc:
        logger.error(f"Error: {exc}")
        exit_code = 1
    except Exception as exc:
        logger.exception(f"Unexpected error: {exc}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()

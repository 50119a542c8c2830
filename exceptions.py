"""Custom exception hierarchy for the computer-use web tester."""
from __future__ import annotations

from typing import Any, Optional


class ComputerUseError(Exception):
    """Base exception for all computer-use tester errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Configuration exceptions
class ConfigurationError(ComputerUseError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path


# Backend-related exceptions
class BackendError(ComputerUseError):
    """Base exception for actuation backend errors."""

    pass


class InitializationError(BackendError):
    """Raised when a backend cannot reach the ready state."""

    def __init__(self, message: str, execution_mode: Optional[str] = None):
        details = {"execution_mode": execution_mode} if execution_mode else {}
        super().__init__(message, details)
        self.execution_mode = execution_mode


class NavigationError(BackendError):
    """Raised when loading the target site fails."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        details = {}
        if url:
            details["url"] = url
        if timeout:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.url = url
        self.timeout = timeout


class ActuationError(BackendError):
    """Raised when a single tool action fails."""

    def __init__(self, message: str, action: Optional[str] = None):
        details = {"action": action} if action else {}
        super().__init__(message, details)
        self.action = action


class BackendNotReadyError(ActuationError):
    """Raised when actuating a backend that is not initialized or already torn down."""

    def __init__(self, state: str):
        super().__init__(f"Backend is not ready (state={state})")
        self.state = state


class ProtocolViolation(BackendError):
    """Raised when the agent requests an unknown tool or action."""

    def __init__(self, message: str, tool: Optional[str] = None, action: Optional[str] = None):
        details = {}
        if tool:
            details["tool"] = tool
        if action:
            details["action"] = action
        super().__init__(message, details)
        self.tool = tool
        self.action = action


class TeardownError(BackendError):
    """Raised when releasing a backend fails. Logged, never escalated."""

    pass


# Container-related exceptions
class ContainerError(ComputerUseError):
    """Base exception for container lifecycle errors."""

    pass


class ContainerNotReadyError(ContainerError):
    """Raised when using a container before initialize() or after cleanup()."""

    def __init__(self, container_name: Optional[str] = None):
        details = {"container": container_name} if container_name else {}
        super().__init__("Container not initialized", details)
        self.container_name = container_name


class CommandError(ContainerError):
    """Raised when a command inside the container exits non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        message = f"Command failed with exit code {exit_code}: {stderr.strip() or command}"
        super().__init__(message, {"command": command[:200], "exit_code": exit_code})
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class CommandTimeoutError(ContainerError):
    """Raised when a container command exceeds its per-call timeout."""

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"Command execution timeout after {timeout}s",
            {"command": command[:200], "timeout": timeout},
        )
        self.command = command
        self.timeout = timeout


class FileTransferError(ContainerError):
    """Raised when moving a file into or out of the container fails."""

    def __init__(self, message: str, path: Optional[str] = None):
        details = {"path": path} if path else {}
        super().__init__(message, details)
        self.path = path


# Remote agent exceptions
class AgentServiceError(ComputerUseError):
    """Raised when the remote agent service cannot be reached or answers badly."""

    def __init__(self, message: str, model: Optional[str] = None):
        details = {"model": model} if model else {}
        super().__init__(message, details)
        self.model = model


# Run-level exceptions
class RunError(ComputerUseError):
    """Base exception for run-level failures."""

    pass


class IterationBudgetExhausted(RunError):
    """Raised when the agent never signals completion within the iteration cap."""

    def __init__(self, max_iterations: int, run_id: Optional[str] = None):
        message = f"Maximum iterations ({max_iterations}) reached"
        details: dict[str, Any] = {"max_iterations": max_iterations}
        if run_id:
            details["run_id"] = run_id
        super().__init__(message, details)
        self.max_iterations = max_iterations
        self.run_id = run_id


class RunTimeout(RunError):
    """Raised when a run exceeds its wall-clock deadline."""

    def __init__(self, timeout: float, run_id: Optional[str] = None):
        details: dict[str, Any] = {"timeout": timeout}
        if run_id:
            details["run_id"] = run_id
        super().__init__(f"Test timeout after {timeout}s", details)
        self.timeout = timeout
        self.run_id = run_id


class CapacityExceededError(RunError):
    """Raised when the concurrency gate has no free slot."""

    def __init__(self, max_concurrent: int):
        super().__init__(
            "Too many concurrent tests. Please try again later.",
            {"max_concurrent": max_concurrent},
        )
        self.max_concurrent = max_concurrent


class InvalidInstructionError(RunError):
    """Raised when the instruction is missing or not a string."""

    def __init__(self, message: str = "Missing or invalid instruction. Please provide a string instruction."):
        super().__init__(message)

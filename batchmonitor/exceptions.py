"""Batch monitor exceptions."""

from typing import List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single configuration validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class ConfigValidationError(Exception):
    """Raised when the monitor configuration fails validation.

    Collects every problem found by the loader so the CLI can report
    them together and map to the validation exit code.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2

        messages = []
        for error in errors:
            if error.path:
                messages.append(f"Validation error at '{error.path}': {error.message}")
            else:
                messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))


class BatchExecutionError(Exception):
    """Base class for errors raised while running a batch execution."""


class ScriptNotFound(BatchExecutionError):
    """The resolved script path does not exist."""

    def __init__(self, script_path: str):
        self.script_path = script_path
        super().__init__(f"Script file does not exist: {script_path}")


class ScriptExecutionError(BatchExecutionError):
    """The process ran and exited with a failing code."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class ExecutionTimeout(BatchExecutionError):
    """The process did not exit within the configured wall-clock bound."""

    def __init__(self, timeout_sec: float):
        self.timeout_sec = timeout_sec
        super().__init__(f"Script execution timed out after {_format_seconds(timeout_sec)} seconds")


class ExecutionInterrupted(BatchExecutionError):
    """The run was cancelled while waiting for the process."""

    def __init__(self, message: str = "Script execution was interrupted"):
        super().__init__(message)


class OutputIOError(BatchExecutionError):
    """Output-capture file could not be created, written or read."""


class InvalidTransition(BatchExecutionError):
    """An execution was asked to move to a status it cannot reach."""


class ExecutionNotFound(BatchExecutionError):
    """No execution record exists for the given identifier."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found with ID: {execution_id}")


def _format_seconds(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)

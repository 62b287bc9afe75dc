"""Payload builders for the three event kinds."""

from typing import Any, Dict

from ..state import Execution, LogEntry


def status_event(execution: Execution) -> Dict[str, Any]:
    return {
        "execution_id": execution.id,
        "status": execution.status.value,
    }


def progress_event(execution: Execution) -> Dict[str, Any]:
    return {
        "execution_id": execution.id,
        "progress": execution.progress,
        "status": execution.status.value,
    }


def console_event(entry: LogEntry) -> Dict[str, Any]:
    return {
        "execution_id": entry.execution_id,
        "message": entry.message,
        "timestamp": entry.timestamp.isoformat(),
        "kind": entry.kind.value,
    }

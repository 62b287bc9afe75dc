"""Execution records and their persistence.

Defines the Execution/LogEntry data model and a JSON file store with
atomic writes. Each execution lives under ``<state_dir>/executions/<id>/``
as ``execution.json`` plus an append-only ``logs.jsonl``.
"""

import json
import logging
import random
import string
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import InvalidTransition


logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition_to(self, target: "ExecutionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TERMINAL = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.TIMED_OUT,
})

_TRANSITIONS = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.RUNNING: _TERMINAL,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.TIMED_OUT: frozenset(),
}


class LogKind(str, Enum):
    """Source of a log entry."""
    STDOUT = "STDOUT"
    STDERR = "STDERR"
    SYSTEM = "SYSTEM"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LogEntry:
    """One captured line or system annotation belonging to an execution."""
    id: int
    execution_id: str
    message: str
    timestamp: datetime
    kind: LogKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "message": self.message,
            "timestamp": _to_iso(self.timestamp),
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            message=data["message"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            kind=LogKind(data["kind"]),
        )


@dataclass
class Execution:
    """One tracked run of a script from trigger to terminal state."""
    id: str
    script_path: str
    parameters: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    progress: float = 0.0
    output_file_path: Optional[str] = None
    error_message: Optional[str] = None
    logs: List[LogEntry] = field(default_factory=list)

    def transition(self, target: ExecutionStatus) -> None:
        """Move to ``target``, enforcing PENDING -> RUNNING -> terminal."""
        if not self.status.can_transition_to(target):
            raise InvalidTransition(
                f"Execution {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def snapshot(self) -> "Execution":
        """Return a detached copy safe to hand to other threads."""
        return replace(self, logs=list(self.logs))

    def to_dict(self, include_logs: bool = False) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        result: Dict[str, Any] = {
            "id": self.id,
            "script_path": self.script_path,
            "parameters": self.parameters,
            "status": self.status.value,
            "start_time": _to_iso(self.start_time),
            "end_time": _to_iso(self.end_time),
            "exit_code": self.exit_code,
            "progress": self.progress,
            "output_file_path": self.output_file_path,
            "error_message": self.error_message,
        }
        if include_logs:
            result["logs"] = [entry.to_dict() for entry in self.logs]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        return cls(
            id=data["id"],
            script_path=data["script_path"],
            parameters=data.get("parameters"),
            status=ExecutionStatus(data["status"]),
            start_time=_from_iso(data.get("start_time")),
            end_time=_from_iso(data.get("end_time")),
            exit_code=data.get("exit_code"),
            progress=data.get("progress", 0.0),
            output_file_path=data.get("output_file_path"),
            error_message=data.get("error_message"),
            logs=[LogEntry.from_dict(entry) for entry in data.get("logs", [])],
        )


class ExecutionStore:
    """Durable record store for executions and their log entries.

    Shared by every run in the process; a single lock serializes file
    access and id allocation.
    """

    def __init__(self, state_dir: Path):
        """Initialize the store.

        Args:
            state_dir: Root directory for persisted records
        """
        self.state_dir = Path(state_dir)
        self.executions_dir = self.state_dir / "executions"
        self.executions_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._log_sequences: Dict[str, int] = {}

    def next_id(self) -> str:
        """Generate execution ID in format: YYYYMMDDTHHMMSSZ-<6char>."""
        with self._lock:
            while True:
                timestamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
                suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
                execution_id = f"{timestamp}-{suffix}"
                if not (self.executions_dir / execution_id).exists():
                    return execution_id

    def next_log_id(self, execution_id: str) -> int:
        """Allocate the next log entry id for an execution (1-based)."""
        with self._lock:
            if execution_id not in self._log_sequences:
                self._log_sequences[execution_id] = len(self._read_logs(execution_id))
            self._log_sequences[execution_id] += 1
            return self._log_sequences[execution_id]

    def release(self, execution_id: str) -> None:
        """Forget cached log numbering for a finished run; it is re-read from disk if needed."""
        with self._lock:
            self._log_sequences.pop(execution_id, None)

    def _execution_file(self, execution_id: str) -> Path:
        return self.executions_dir / execution_id / "execution.json"

    def _logs_file(self, execution_id: str) -> Path:
        return self.executions_dir / execution_id / "logs.jsonl"

    def save(self, execution: Execution) -> None:
        """Write the execution record atomically (temp file + rename)."""
        with self._lock:
            target = self._execution_file(execution.id)
            target.parent.mkdir(parents=True, exist_ok=True)

            temp_file = target.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(execution.to_dict(), f, indent=2)
            temp_file.replace(target)

    def save_log(self, entry: LogEntry) -> None:
        """Append a log entry; entries are never rewritten."""
        with self._lock:
            if not self._execution_file(entry.execution_id).exists():
                raise KeyError(f"No execution record for log entry: {entry.execution_id}")
            with open(self._logs_file(entry.execution_id), 'a') as f:
                f.write(json.dumps(entry.to_dict()) + "\n")

    def find(self, execution_id: str) -> Optional[Execution]:
        """Load an execution with its log entries, or None if unknown."""
        with self._lock:
            execution_file = self._execution_file(execution_id)
            if not execution_file.exists():
                return None
            with open(execution_file, 'r') as f:
                data = json.load(f)
            execution = Execution.from_dict(data)
            execution.logs = self._read_logs(execution_id)
            return execution

    def list_by_execution(self, execution_id: str, kind: Optional[LogKind] = None) -> List[LogEntry]:
        """Log entries for an execution ordered by timestamp."""
        with self._lock:
            entries = self._read_logs(execution_id)
        if kind is not None:
            entries = [entry for entry in entries if entry.kind == kind]
        # sorted() is stable, so entries sharing a timestamp keep append order
        return sorted(entries, key=lambda entry: entry.timestamp)

    def list_all(self) -> List[Execution]:
        """All executions, most recently started first."""
        with self._lock:
            executions = []
            for execution_file in self.executions_dir.glob("*/execution.json"):
                try:
                    with open(execution_file, 'r') as f:
                        executions.append(Execution.from_dict(json.load(f)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping unreadable execution record {execution_file}: {e}")

        never = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(executions, key=lambda e: (e.start_time or never, e.id), reverse=True)

    def find_by_status(self, status: ExecutionStatus) -> List[Execution]:
        return [execution for execution in self.list_all() if execution.status == status]

    def _read_logs(self, execution_id: str) -> List[LogEntry]:
        logs_file = self._logs_file(execution_id)
        if not logs_file.exists():
            return []
        entries = []
        with open(logs_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(LogEntry.from_dict(json.loads(line)))
        return entries

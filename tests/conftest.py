"""Shared fixtures: temporary workspace, config and a fake process host."""

import io
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from batchmonitor.config import MonitorConfig
from batchmonitor.exec.process_host import ProcessHandle, ProcessHost
from batchmonitor.notify import NotificationHub
from batchmonitor.state import Execution, ExecutionStore


class FakeHandle(ProcessHandle):
    """In-memory process: canned output, scripted exit code, optional hang."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0,
                 hang: bool = False, run_for: float = 0.0):
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self._exit_code = exit_code
        self.hang = hang
        self.run_for = run_for
        self.kill_calls = 0
        self.killed = False
        self.closed = False
        self.started_at = time.monotonic()
        self.on_exit = None

    def _finished(self) -> bool:
        if self.killed:
            return True
        if self.hang:
            return False
        return time.monotonic() - self.started_at >= self.run_for

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if not self._finished() and timeout:
            time.sleep(min(timeout, 0.01))
        if not self._finished():
            return None
        if self.on_exit is not None:
            self.on_exit()
            self.on_exit = None
        return -9 if self.killed else self._exit_code

    def kill(self) -> None:
        self.kill_calls += 1
        self.killed = True

    @property
    def exit_code(self) -> Optional[int]:
        return self.wait(0)

    def close(self) -> None:
        self.closed = True


class FakeProcessHost(ProcessHost):
    """Hands out pre-built handles and records every spawn."""

    def __init__(self, *handles: FakeHandle, error: Optional[Exception] = None):
        self.handles: List[FakeHandle] = list(handles)
        self.error = error
        self.spawned: List[tuple] = []
        self.spawn_event = threading.Event()
        self._lock = threading.Lock()

    def spawn(self, command, cwd=None) -> ProcessHandle:
        with self._lock:
            self.spawned.append((list(command), cwd))
            if self.error is not None:
                raise self.error
            handle = self.handles.pop(0) if self.handles else FakeHandle()
            handle.started_at = time.monotonic()
        self.spawn_event.set()
        return handle


@pytest.fixture
def workspace(tmp_path) -> Path:
    (tmp_path / "scripts").mkdir()
    return tmp_path


@pytest.fixture
def config(workspace) -> MonitorConfig:
    return MonitorConfig(
        scripts_dir=workspace / "scripts",
        logs_dir=workspace / "logs",
        state_dir=workspace / "state",
        timeout_sec=5,
        drain_join_timeout_sec=2,
        poll_interval_ms=10,
    )


@pytest.fixture
def store(config) -> ExecutionStore:
    return ExecutionStore(config.state_dir)


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def write_script(workspace):
    """Create a script under the scripts dir and return its path."""
    def _write(name: str, body: str) -> Path:
        script = workspace / "scripts" / name
        script.write_text(body)
        return script
    return _write


@pytest.fixture
def new_execution(store):
    """Create and persist a PENDING execution for a script path."""
    def _new(script_path, parameters: Optional[str] = None) -> Execution:
        execution = Execution(id=store.next_id(), script_path=str(script_path), parameters=parameters)
        store.save(execution)
        return execution
    return _new


@pytest.fixture
def fake_handle():
    """Factory for in-memory process handles."""
    return FakeHandle


@pytest.fixture
def fake_host():
    """Factory for process hosts that hand out fake handles."""
    return FakeProcessHost

"""Tests for the execution lifecycle against an in-memory process host."""

import threading
from dataclasses import replace
from pathlib import Path

import pytest

from batchmonitor.exceptions import (
    BatchExecutionError,
    ExecutionInterrupted,
    ExecutionTimeout,
    InvalidTransition,
    ScriptExecutionError,
    ScriptNotFound,
)
from batchmonitor.exec import ExecutionLifecycleManager, OutputRecorder
from batchmonitor.state import Execution, ExecutionStatus, ExecutionStore, LogKind


def make_manager(config, store, hub, host):
    recorder = OutputRecorder(store, hub, topics=config.topics)
    return ExecutionLifecycleManager(config, store, recorder, hub, process_host=host)


def statuses(events):
    return [payload["status"] for topic, payload in events if topic == "/topic/status"]


class TestSuccessfulRun:

    @pytest.fixture
    def script(self, write_script):
        return write_script("job.sh", "echo unused\n")

    def test_completes_and_returns_captured_stdout(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        handle = fake_handle(stdout=b"Starting\nProgress: 50%\nDone\n", stderr=b"warning: slow\n")
        host = fake_host(handle)
        manager = make_manager(config, store, hub, host)
        execution = new_execution(script, "--date 2024-01-01")
        sub = hub.subscribe()

        result = manager.execute(execution)

        assert result == "Starting\nProgress: 50%\nDone\n"
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.exit_code == 0
        assert execution.progress == 100.0
        assert execution.start_time is not None
        assert execution.end_time >= execution.start_time
        assert execution.error_message is None

        # Capture file holds stdout only
        assert Path(execution.output_file_path).read_text() == result
        assert Path(execution.output_file_path).name.startswith(f"execution_{execution.id}_")

        command, cwd = host.spawned[0]
        assert command == ["bash", str(script), "--date", "2024-01-01"]
        assert cwd == config.scripts_dir

        events = sub.drain()
        assert statuses(events) == ["RUNNING", "COMPLETED"]
        progress = [p["progress"] for t, p in events if t == "/topic/progress"]
        assert progress == [50.0, 100.0]
        console = [(p["kind"], p["message"]) for t, p in events if t == "/topic/console"]
        assert ("STDERR", "warning: slow") in console
        assert [m for k, m in console if k == "STDOUT"] == ["Starting", "Progress: 50%", "Done"]

    def test_persisted_record_and_logs(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        host = fake_host(fake_handle(stdout=b"out\n", stderr=b"err\n"))
        manager = make_manager(config, store, hub, host)
        execution = new_execution(script)

        manager.execute(execution)

        stored = store.find(execution.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.progress == 100.0
        system = [e.message for e in store.list_by_execution(execution.id, LogKind.SYSTEM)]
        assert system[0].startswith("Started process: bash")
        assert system[-1] == "Script execution completed successfully"
        assert [e.message for e in store.list_by_execution(execution.id, LogKind.STDERR)] == ["err"]
        assert not manager.is_active(execution.id)

    def test_handle_closed_after_run(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        handle = fake_handle(stdout=b"x\n")
        manager = make_manager(config, store, hub, fake_host(handle))

        manager.execute(new_execution(script))

        assert handle.closed

    def test_progress_reported_before_exit(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        handle = fake_handle(stdout=b"Progress: 30%\n", run_for=0.3)
        seen = []
        handle.on_exit = lambda: seen.append(execution.progress)
        manager = make_manager(config, store, hub, fake_host(handle))
        execution = new_execution(script)

        manager.execute(execution)

        assert seen == [30.0]


class TestFailedRuns:

    @pytest.fixture
    def script(self, write_script):
        return write_script("job.sh", "exit 3\n")

    def test_non_zero_exit_fails(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        manager = make_manager(config, store, hub, fake_host(fake_handle(stdout=b"partial\n", exit_code=3)))
        execution = new_execution(script)
        sub = hub.subscribe(["/topic/status"])

        with pytest.raises(ScriptExecutionError) as exc_info:
            manager.execute(execution)

        assert exc_info.value.exit_code == 3
        assert execution.status == ExecutionStatus.FAILED
        assert execution.exit_code == 3
        assert "exit code: 3" in execution.error_message
        assert execution.end_time is not None
        assert statuses(sub.drain()) == ["RUNNING", "FAILED"]

        stored = store.find(execution.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.exit_code == 3
        assert [e.message for e in stored.logs if e.kind == LogKind.STDOUT] == ["partial"]

    def test_missing_script_fails_after_running(self, config, store, hub, fake_handle, fake_host, new_execution):
        host = fake_host()
        manager = make_manager(config, store, hub, host)
        execution = new_execution(config.scripts_dir / "missing.sh")
        sub = hub.subscribe(["/topic/status"])

        with pytest.raises(ScriptNotFound):
            manager.execute(execution)

        assert host.spawned == []
        assert execution.status == ExecutionStatus.FAILED
        assert "Script file does not exist" in execution.error_message
        assert statuses(sub.drain()) == ["RUNNING", "FAILED"]

    def test_spawn_error_is_wrapped(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        host = fake_host(error=OSError("exec format error"))
        manager = make_manager(config, store, hub, host)
        execution = new_execution(script)

        with pytest.raises(BatchExecutionError) as exc_info:
            manager.execute(execution)

        assert isinstance(exc_info.value.__cause__, OSError)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Error executing script: exec format error"

    def test_terminal_execution_cannot_run_again(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        manager = make_manager(config, store, hub, fake_host(fake_handle(), fake_handle()))
        execution = new_execution(script)
        manager.execute(execution)

        with pytest.raises(InvalidTransition):
            manager.execute(execution)
        assert execution.status == ExecutionStatus.COMPLETED


class TestTimeoutAndCancel:

    @pytest.fixture
    def script(self, write_script):
        return write_script("job.sh", "sleep 60\n")

    def test_timeout_kills_and_marks_timed_out(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        config = replace(config, timeout_sec=0.2)
        handle = fake_handle(stdout=b"working\n", hang=True)
        manager = make_manager(config, store, hub, fake_host(handle))
        execution = new_execution(script)
        sub = hub.subscribe(["/topic/status"])

        with pytest.raises(ExecutionTimeout):
            manager.execute(execution)

        assert handle.kill_calls >= 1
        assert execution.status == ExecutionStatus.TIMED_OUT
        assert execution.error_message == "Script execution timed out after 0.2 seconds"
        assert execution.exit_code is None
        assert statuses(sub.drain()) == ["RUNNING", "TIMED_OUT"]
        assert store.find(execution.id).status == ExecutionStatus.TIMED_OUT

    def test_cancel_running_execution(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        handle = fake_handle(hang=True)
        host = fake_host(handle)
        manager = make_manager(config, store, hub, host)
        execution = new_execution(script)
        errors = []

        def run():
            try:
                manager.execute(execution)
            except BatchExecutionError as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        assert host.spawn_event.wait(timeout=2)
        assert manager.cancel(execution.id) is True
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert len(errors) == 1 and isinstance(errors[0], ExecutionInterrupted)
        assert handle.killed
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Script execution was interrupted"

    def test_cancel_before_start_never_spawns(self, config, store, hub, fake_handle, fake_host, script, new_execution):
        host = fake_host()
        manager = make_manager(config, store, hub, host)
        execution = new_execution(script)

        manager.register_pending(execution.id)
        assert manager.cancel(execution.id) is True
        with pytest.raises(ExecutionInterrupted):
            manager.execute(execution)

        assert host.spawned == []
        assert execution.status == ExecutionStatus.FAILED

    def test_cancel_unknown_or_finished_run_is_refused(self, config, store, hub, fake_handle, fake_host,
                                                        new_execution, write_script):
        script = write_script("quick.sh", "echo hi\n")
        manager = make_manager(config, store, hub, fake_host(fake_handle(stdout=b"hi\n")))
        execution = new_execution(script)

        assert manager.cancel("never-submitted") is False

        manager.execute(execution)

        assert manager.cancel(execution.id) is False
        assert not manager.is_active(execution.id)
        assert not manager.is_active("never-submitted")


class FlakyStore(ExecutionStore):
    """Fails the first save of a record in the given status."""

    def __init__(self, state_dir, fail_on):
        super().__init__(state_dir)
        self.fail_on = fail_on
        self.failed = False

    def save(self, execution):
        if execution.status == self.fail_on and not self.failed:
            self.failed = True
            raise OSError("No space left on device")
        super().save(execution)


class TestFinalizationErrors:

    @pytest.fixture
    def script(self, write_script):
        return write_script("job.sh", "echo done\n")

    def test_completed_save_failure_still_reaches_terminal_state(self, config, hub, fake_handle, fake_host,
                                                                 script):
        store = FlakyStore(config.state_dir, ExecutionStatus.COMPLETED)
        execution = Execution(id=store.next_id(), script_path=str(script))
        store.save(execution)
        manager = make_manager(config, store, hub, fake_host(fake_handle(stdout=b"done\n")))
        sub = hub.subscribe(["/topic/status"])

        with pytest.raises(BatchExecutionError) as exc_info:
            manager.execute(execution)

        assert isinstance(exc_info.value.__cause__, OSError)
        assert execution.status == ExecutionStatus.COMPLETED
        assert statuses(sub.drain()) == ["RUNNING", "COMPLETED"]
        assert store.find(execution.id).status == ExecutionStatus.COMPLETED
        assert not manager.is_active(execution.id)

    def test_failed_save_failure_still_publishes_status(self, config, hub, fake_handle, fake_host, script):
        store = FlakyStore(config.state_dir, ExecutionStatus.FAILED)
        execution = Execution(id=store.next_id(), script_path=str(script))
        store.save(execution)
        manager = make_manager(config, store, hub, fake_host(fake_handle(exit_code=5)))
        sub = hub.subscribe(["/topic/status"])

        with pytest.raises(OSError):
            manager.execute(execution)

        assert execution.status == ExecutionStatus.FAILED
        assert statuses(sub.drain()) == ["RUNNING", "FAILED"]


class TestEventOrdering:

    def test_final_progress_precedes_terminal_status(self, config, store, hub, fake_handle, fake_host,
                                                     write_script, new_execution):
        script = write_script("job.sh", "echo hi\n")
        manager = make_manager(config, store, hub, fake_host(fake_handle(stdout=b"hi\n")))
        execution = new_execution(script)
        sub = hub.subscribe(["/topic/status", "/topic/progress"])

        manager.execute(execution)

        events = sub.drain()
        assert events[-2] == ("/topic/progress", {
            "execution_id": execution.id, "progress": 100.0, "status": "COMPLETED",
        })
        assert events[-1] == ("/topic/status", {"execution_id": execution.id, "status": "COMPLETED"})

    def test_log_numbering_released_after_run(self, config, store, hub, fake_handle, fake_host,
                                              write_script, new_execution):
        script = write_script("job.sh", "echo hi\n")
        manager = make_manager(config, store, hub, fake_host(fake_handle(stdout=b"a\nb\n")))
        execution = new_execution(script)

        manager.execute(execution)

        assert execution.id not in store._log_sequences
        assert store.next_log_id(execution.id) == len(store.list_by_execution(execution.id)) + 1

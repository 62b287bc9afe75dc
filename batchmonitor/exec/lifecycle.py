"""
Execution lifecycle manager.

Drives one Execution from PENDING through RUNNING into exactly one of
COMPLETED, FAILED or TIMED_OUT while the child process runs.

The calling thread owns the Execution for the whole run. Stream drains
never touch it: they post ``(kind, line)`` pairs onto a queue that this
thread consumes between slices of waiting for the process to exit.
"""

import logging
import queue
import threading
import time
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Tuple

from ..config import MonitorConfig
from ..exceptions import (
    BatchExecutionError,
    ExecutionInterrupted,
    ExecutionTimeout,
    OutputIOError,
    ScriptExecutionError,
)
from ..notify import NotificationHub, progress_event, status_event
from ..state import Execution, ExecutionStatus, ExecutionStore, LogKind, utcnow
from .command import build_command
from .process_host import ProcessHandle, ProcessHost, SubprocessHost
from .recorder import OutputRecorder
from .stream_drain import StreamDrain


logger = logging.getLogger(__name__)


Line = Tuple[LogKind, str]


class ExecutionLifecycleManager:
    """
    Runs scripts and records their outcome on the Execution record.
    Handles command resolution, spawning, draining, timeout and cleanup.
    """

    def __init__(
        self,
        config: MonitorConfig,
        store: ExecutionStore,
        recorder: OutputRecorder,
        hub: NotificationHub,
        process_host: Optional[ProcessHost] = None,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            config: Monitor configuration (timeouts, directories, topics)
            store: Record store for execution state
            recorder: Output recorder for captured lines and system messages
            hub: Notification hub for status and progress events
            process_host: Process launcher (default: SubprocessHost())
        """
        self.config = config
        self.store = store
        self.recorder = recorder
        self.hub = hub
        self.process_host = process_host or SubprocessHost()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def execute(self, execution: Execution) -> str:
        """
        Run the execution's script to a terminal state.

        Args:
            execution: PENDING execution, mutated in place

        Returns:
            Final content of the output-capture file on success

        Raises:
            ScriptExecutionError: Process exited with a non-zero code
            ExecutionTimeout: Process exceeded the configured timeout
            ExecutionInterrupted: Run was cancelled
            BatchExecutionError: Any other failure while preparing or running
        """
        logger.info(f"Executing script: {execution.script_path} with parameters: {execution.parameters}")

        cancel_event = self._register(execution.id)
        try:
            # Observers always see RUNNING before any failure is recorded
            self._mark_running(execution)
        except Exception:
            self._unregister(execution.id)
            raise

        handle: Optional[ProcessHandle] = None
        drains: List[StreamDrain] = []
        capture: Optional[IO[str]] = None

        try:
            output_file = self._create_output_file(execution)
            execution.output_file_path = str(output_file)
            self.store.save(execution)

            command = build_command(execution.script_path, execution.parameters)
            logger.debug(f"Executing command: {' '.join(command)}")

            if cancel_event.is_set():
                raise ExecutionInterrupted()

            capture = self._open_capture(output_file)
            handle = self.process_host.spawn(command, cwd=self.config.scripts_dir)
            self.recorder.record_system(execution, f"Started process: {' '.join(command)}")

            channel: "queue.Queue[Line]" = queue.Queue()
            drains = [
                StreamDrain(handle.stdout, self._sink(channel, LogKind.STDOUT),
                            name=f"{execution.id}-stdout", poll_interval=self.config.poll_interval),
                StreamDrain(handle.stderr, self._sink(channel, LogKind.STDERR),
                            name=f"{execution.id}-stderr", poll_interval=self.config.poll_interval),
            ]
            for drain in drains:
                drain.start()

            exit_code = self._await_exit(execution, handle, drains, channel, capture, cancel_event)
            self._flush_drains(execution, drains, channel, capture)

            execution.exit_code = exit_code
            if exit_code != 0:
                raise ScriptExecutionError(
                    f"Script execution failed with exit code: {exit_code}", exit_code
                )

            capture.close()
            result = self._read_output(output_file)
            self._mark_completed(execution)
            return result

        except ExecutionTimeout as e:
            self._mark_timed_out(execution, str(e))
            raise
        except ScriptExecutionError as e:
            self._mark_failed(execution, str(e), e.exit_code)
            raise
        except ExecutionInterrupted as e:
            self._mark_failed(execution, str(e))
            raise
        except Exception as e:
            error_msg = f"Error executing script: {e}"
            logger.error(error_msg, exc_info=True)
            if execution.status.is_terminal:
                # Failed while finalizing; the terminal status event already went out
                self._save_quietly(execution)
            else:
                self._mark_failed(execution, error_msg)
            if isinstance(e, BatchExecutionError):
                raise
            raise BatchExecutionError(error_msg) from e

        finally:
            # Safety net regardless of which path was taken; all steps are idempotent
            if handle is not None:
                handle.kill()
            for drain in drains:
                drain.stop()
            if capture is not None and not capture.closed:
                capture.close()
            if handle is not None:
                finished = [drain.wait_for(self.config.poll_interval * 2) for drain in drains]
                if all(finished):
                    handle.close()
            self._unregister(execution.id)
            self.store.release(execution.id)

    def register_pending(self, execution_id: str) -> None:
        """Accept cancellation requests for a run that has been queued but not started."""
        self._register(execution_id)

    def cancel(self, execution_id: str) -> bool:
        """Request interruption of a run; takes effect at its next wait slice.

        Returns:
            False if the run is neither queued (see ``register_pending``) nor running
        """
        with self._lock:
            event = self._cancel_events.get(execution_id)
        if event is None:
            logger.debug(f"Nothing to cancel for execution {execution_id}")
            return False
        event.set()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._cancel_events

    def _register(self, execution_id: str) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(execution_id, threading.Event())

    def _unregister(self, execution_id: str) -> None:
        with self._lock:
            self._cancel_events.pop(execution_id, None)

    @staticmethod
    def _sink(channel: "queue.Queue[Line]", kind: LogKind) -> Callable[[str], None]:
        def put(line: str) -> None:
            channel.put((kind, line))
        return put

    def _await_exit(
        self,
        execution: Execution,
        handle: ProcessHandle,
        drains: List[StreamDrain],
        channel: "queue.Queue[Line]",
        capture: IO[str],
        cancel_event: threading.Event,
    ) -> int:
        """Consume output until the process exits, the deadline passes or a cancel arrives."""
        timeout_sec = self.config.timeout_sec
        deadline = time.monotonic() + timeout_sec

        while True:
            self._apply_pending(execution, channel, capture)

            if cancel_event.is_set():
                handle.kill()
                for drain in drains:
                    drain.stop()
                raise ExecutionInterrupted()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Execution {execution.id} exceeded {timeout_sec}s, killing process")
                handle.kill()
                for drain in drains:
                    drain.stop()
                self._apply_pending(execution, channel, capture)
                raise ExecutionTimeout(timeout_sec)

            exit_code = handle.wait(0)
            if exit_code is not None:
                return exit_code

            self._apply_next(execution, channel, capture, min(self.config.poll_interval, remaining))

    def _flush_drains(
        self,
        execution: Execution,
        drains: List[StreamDrain],
        channel: "queue.Queue[Line]",
        capture: IO[str],
    ) -> None:
        """Join the drains with a bounded wait, then record what they produced."""
        for drain in drains:
            if not drain.wait_for(self.config.drain_join_timeout_sec):
                logger.warning(
                    f"Drain {drain.name} did not finish within "
                    f"{self.config.drain_join_timeout_sec}s; finalizing without it"
                )
                drain.stop()
        self._apply_pending(execution, channel, capture)

    def _apply_next(self, execution: Execution, channel: "queue.Queue[Line]",
                    capture: IO[str], timeout: float) -> None:
        try:
            kind, line = channel.get(timeout=timeout)
        except queue.Empty:
            return
        self._apply_line(execution, kind, line, capture)

    def _apply_pending(self, execution: Execution, channel: "queue.Queue[Line]", capture: IO[str]) -> None:
        while True:
            try:
                kind, line = channel.get_nowait()
            except queue.Empty:
                return
            self._apply_line(execution, kind, line, capture)

    def _apply_line(self, execution: Execution, kind: LogKind, line: str, capture: IO[str]) -> None:
        if kind == LogKind.STDOUT:
            try:
                capture.write(line + "\n")
                capture.flush()
            except (OSError, ValueError) as e:
                raise OutputIOError(f"Error writing output file: {e}") from e
        self.recorder.record(execution, kind, line)

    def _create_output_file(self, execution: Execution) -> Path:
        """Create ``execution_<id>_<yyyyMMdd_HHmmss>.log`` under the logs directory."""
        logs_dir = Path(self.config.logs_dir)
        timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
        output_file = logs_dir / f"execution_{execution.id}_{timestamp}.log"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            output_file.touch(exist_ok=False)
        except OSError as e:
            raise OutputIOError(f"Error creating output file {output_file}: {e}") from e
        logger.debug(f"Created output file: {output_file}")
        return output_file

    @staticmethod
    def _open_capture(output_file: Path) -> IO[str]:
        try:
            return open(output_file, 'a', encoding='utf-8')
        except OSError as e:
            raise OutputIOError(f"Error opening output file {output_file}: {e}") from e

    @staticmethod
    def _read_output(output_file: Path) -> str:
        try:
            return output_file.read_text(encoding='utf-8')
        except OSError as e:
            raise OutputIOError(f"Error reading file: {output_file}: {e}") from e

    def _mark_running(self, execution: Execution) -> None:
        execution.transition(ExecutionStatus.RUNNING)
        execution.start_time = utcnow()
        execution.progress = 0.0
        self.store.save(execution)
        self.hub.publish(self.config.topics.status, status_event(execution))

    def _mark_completed(self, execution: Execution) -> None:
        execution.transition(ExecutionStatus.COMPLETED)
        execution.end_time = utcnow()
        execution.progress = 100.0
        # Final progress goes out before the terminal status event
        self.hub.publish(self.config.topics.progress, progress_event(execution))
        self._persist_terminal(execution, "Script execution completed successfully")
        logger.info(f"Script execution completed for ID: {execution.id}")

    def _mark_failed(self, execution: Execution, error_message: str, exit_code: Optional[int] = None) -> None:
        execution.transition(ExecutionStatus.FAILED)
        execution.end_time = utcnow()
        execution.error_message = error_message
        if exit_code is not None:
            execution.exit_code = exit_code
        logger.warning(f"Script execution failed for ID: {execution.id}: {error_message}")
        self._persist_terminal(execution, f"Script execution failed: {error_message}")

    def _mark_timed_out(self, execution: Execution, error_message: str) -> None:
        execution.transition(ExecutionStatus.TIMED_OUT)
        execution.end_time = utcnow()
        execution.error_message = error_message
        logger.warning(f"Script execution timed out for ID: {execution.id}")
        self._persist_terminal(execution, error_message)

    def _persist_terminal(self, execution: Execution, system_message: str) -> None:
        """Save the terminal record; the status event is published even if saving fails."""
        try:
            self.store.save(execution)
            self.recorder.record_system(execution, system_message)
        finally:
            self.hub.publish(self.config.topics.status, status_event(execution))

    def _save_quietly(self, execution: Execution) -> None:
        try:
            self.store.save(execution)
        except OSError as e:
            logger.error(f"Could not persist final state of execution {execution.id}: {e}")

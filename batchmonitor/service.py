"""Batch execution service.

Entry point used by the CLI: creates execution records, hands them to a
bounded worker pool and answers queries about them.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import MonitorConfig
from .exceptions import ExecutionNotFound
from .exec import ExecutionLifecycleManager, OutputRecorder, ProcessHost, ProgressDetector
from .notify import NotificationHub, Subscription
from .state import Execution, ExecutionStatus, ExecutionStore, LogEntry, LogKind


logger = logging.getLogger(__name__)


class BatchExecutionService:
    """Starts, tracks and queries batch executions."""

    def __init__(self, config: MonitorConfig, process_host: Optional[ProcessHost] = None,
                 hub: Optional[NotificationHub] = None):
        """Wire the pipeline from configuration.

        Args:
            config: Monitor configuration
            process_host: Process launcher override (tests)
            hub: Notification hub to publish on (default: a new hub)
        """
        self.config = config
        self.store = ExecutionStore(config.state_dir)
        self.hub = hub or NotificationHub()
        self.recorder = OutputRecorder(
            self.store,
            self.hub,
            ProgressDetector(),
            topics=config.topics,
            message_limit=config.message_limit,
        )
        self.lifecycle = ExecutionLifecycleManager(
            config, self.store, self.recorder, self.hub, process_host=process_host
        )
        # Runs beyond max_concurrent wait in the executor's queue
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent,
            thread_name_prefix="script-executor",
        )
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def start_execution(self, script_name: Optional[str] = None,
                        parameters: Optional[str] = None) -> Execution:
        """
        Create a PENDING execution and submit it to the worker pool.

        Args:
            script_name: Script file name or path (default: configured default script)
            parameters: Raw whitespace-separated parameter string

        Returns:
            Snapshot of the execution as created
        """
        logger.info(f"Starting batch execution for script: {script_name}")
        script_path = self.resolve_script_path(script_name)

        execution = Execution(
            id=self.store.next_id(),
            script_path=script_path,
            parameters=parameters,
            status=ExecutionStatus.PENDING,
            progress=0.0,
        )
        self.store.save(execution)
        created = execution.snapshot()

        self.lifecycle.register_pending(execution.id)
        future = self._executor.submit(self.lifecycle.execute, execution)
        with self._lock:
            self._futures[execution.id] = future
        future.add_done_callback(lambda f, execution_id=execution.id: self._on_done(execution_id, f))

        return created

    def resolve_script_path(self, script_name: Optional[str]) -> str:
        """Blank names use the default script; relative names resolve against scripts_dir."""
        if script_name is None or not script_name.strip():
            script_name = self.config.default_script

        path = Path(script_name)
        if path.is_absolute():
            return str(path)
        # Absolute so the command still resolves once cwd is scripts_dir
        return str((Path(self.config.scripts_dir) / path).absolute())

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.store.find(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    def list_executions(self) -> List[Execution]:
        """All executions, newest first."""
        return self.store.list_all()

    def console_output(self, execution_id: str) -> List[LogEntry]:
        self.get_execution(execution_id)
        return self.recorder.console_output(execution_id)

    def logs(self, execution_id: str, kind: Optional[LogKind] = None) -> List[LogEntry]:
        self.get_execution(execution_id)
        return self.store.list_by_execution(execution_id, kind)

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Block until the run finishes (or ``timeout``) and return the stored record."""
        with self._lock:
            future = self._futures.get(execution_id)
        if future is not None:
            wait_futures([future], timeout=timeout)
        return self.get_execution(execution_id)

    def wait_all(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            futures = list(self._futures.values())
        wait_futures(futures, timeout=timeout)

    def cancel(self, execution_id: str) -> bool:
        """Request interruption of a pending or running execution.

        Returns:
            False if the execution already reached a terminal state
        """
        execution = self.get_execution(execution_id)
        if execution.status.is_terminal:
            return False
        return self.lifecycle.cancel(execution_id)

    def subscribe(self, topics: Optional[Iterable[str]] = None) -> Subscription:
        return self.hub.subscribe(topics)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "BatchExecutionService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)

    def _on_done(self, execution_id: str, future: Future) -> None:
        with self._lock:
            self._futures.pop(execution_id, None)
        error = future.exception()
        if error is None:
            logger.info(f"Script execution completed for ID: {execution_id}")
        else:
            logger.error(f"Script execution failed for ID: {execution_id}: {error}")

"""
Output recording for running executions.

Every captured line becomes a persisted LogEntry and a console event.
Stdout lines are also scanned for progress markers.
"""

import logging
from typing import List, Optional

from ..config import TopicConfig
from ..notify import NotificationHub, console_event, progress_event
from ..state import Execution, ExecutionStore, LogEntry, LogKind, utcnow
from .progress import ProgressDetector


logger = logging.getLogger(__name__)


class OutputRecorder:
    """
    Persists output lines and republishes them.

    Must be called from the thread that owns the Execution, since stdout
    lines may update ``execution.progress``.
    """

    # Column limit of the log message field
    MESSAGE_LIMIT = 2000

    def __init__(
        self,
        store: ExecutionStore,
        hub: NotificationHub,
        detector: Optional[ProgressDetector] = None,
        topics: Optional[TopicConfig] = None,
        message_limit: Optional[int] = None,
    ):
        """
        Initialize the recorder.

        Args:
            store: Record store for log entries
            hub: Notification hub for console and progress events
            detector: Progress detector (default: ProgressDetector())
            topics: Topic names (default: TopicConfig())
            message_limit: Maximum characters per stored message
        """
        self.store = store
        self.hub = hub
        self.detector = detector or ProgressDetector()
        self.topics = topics or TopicConfig()
        self.message_limit = message_limit or self.MESSAGE_LIMIT

    def record_stdout(self, execution: Execution, line: str) -> LogEntry:
        logger.debug(f"Processing stdout for execution {execution.id}: {line}")
        entry = self._append(execution, line, LogKind.STDOUT)
        self.hub.publish(self.topics.console, console_event(entry))

        progress = self.detector.parse(line)
        if progress is not None:
            # Last write wins, regressions included
            execution.progress = progress
            self.hub.publish(self.topics.progress, progress_event(execution))
        return entry

    def record_stderr(self, execution: Execution, line: str) -> LogEntry:
        logger.debug(f"Processing stderr for execution {execution.id}: {line}")
        entry = self._append(execution, line, LogKind.STDERR)
        self.hub.publish(self.topics.console, console_event(entry))
        return entry

    def record(self, execution: Execution, kind: LogKind, line: str) -> LogEntry:
        """Dispatch a drained line by its source."""
        if kind == LogKind.STDOUT:
            return self.record_stdout(execution, line)
        if kind == LogKind.STDERR:
            return self.record_stderr(execution, line)
        return self.record_system(execution, line)

    def record_system(self, execution: Execution, message: str) -> LogEntry:
        """Persist an internal annotation; not published as console output."""
        logger.debug(f"Logging system message for execution {execution.id}: {message}")
        return self._append(execution, message, LogKind.SYSTEM)

    def console_output(self, execution_id: str) -> List[LogEntry]:
        """Stdout/stderr entries in timestamp order, system messages excluded."""
        return [
            entry for entry in self.store.list_by_execution(execution_id)
            if entry.kind != LogKind.SYSTEM
        ]

    def _append(self, execution: Execution, message: str, kind: LogKind) -> LogEntry:
        if len(message) > self.message_limit:
            message = message[:self.message_limit]

        entry = LogEntry(
            id=self.store.next_log_id(execution.id),
            execution_id=execution.id,
            message=message,
            timestamp=utcnow(),
            kind=kind,
        )
        self.store.save_log(entry)
        execution.logs.append(entry)
        return entry

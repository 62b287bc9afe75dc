"""
Execution module for the batch monitor.
Handles command resolution, process execution, output draining and recording.
"""

from .command import build_command
from .progress import ProgressDetector, parse_progress
from .stream_drain import StreamDrain
from .process_host import ProcessHost, ProcessHandle, SubprocessHost
from .recorder import OutputRecorder
from .lifecycle import ExecutionLifecycleManager

__all__ = [
    "build_command",
    "ProgressDetector",
    "parse_progress",
    "StreamDrain",
    "ProcessHost",
    "ProcessHandle",
    "SubprocessHost",
    "OutputRecorder",
    "ExecutionLifecycleManager",
]

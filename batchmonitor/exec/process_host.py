"""
Process control seam.

The lifecycle manager only talks to ``ProcessHost``/``ProcessHandle``, so
tests can substitute a fake without starting real processes.
"""

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import IO, List, Optional, Union


logger = logging.getLogger(__name__)


class ProcessHandle:
    """Interface of a spawned child process."""

    stdout: IO[bytes]
    stderr: IO[bytes]

    @property
    def pid(self) -> Optional[int]:
        return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait up to ``timeout`` seconds; return the exit code or None if still running."""
        raise NotImplementedError

    def kill(self) -> None:
        """Forcibly terminate the process. Safe to call repeatedly."""
        raise NotImplementedError

    @property
    def exit_code(self) -> Optional[int]:
        raise NotImplementedError

    def close(self) -> None:
        """Release pipe resources."""


class ProcessHost:
    """Interface of a process launcher."""

    def spawn(self, command: List[str], cwd: Optional[Union[str, Path]] = None) -> ProcessHandle:
        raise NotImplementedError


class PopenHandle(ProcessHandle):
    """ProcessHandle backed by ``subprocess.Popen``."""

    def __init__(self, process: subprocess.Popen, group: bool = False):
        self._process = process
        self._group = group
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self) -> None:
        if self._process.poll() is not None:
            return
        if self._group:
            try:
                # Leader of its own session, so the group id is its pid
                os.killpg(self._process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError) as e:
                logger.debug(f"Could not kill process group {self._process.pid}: {e}")
                self._kill_leader()
        else:
            self._kill_leader()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {self._process.pid} did not exit after kill")

    def _kill_leader(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            # Exited between poll() and kill()
            pass

    @property
    def exit_code(self) -> Optional[int]:
        return self._process.poll()

    def close(self) -> None:
        for pipe in (self.stdout, self.stderr):
            if pipe is not None:
                try:
                    pipe.close()
                except OSError as e:
                    logger.debug(f"Error closing pipe for process {self._process.pid}: {e}")


class SubprocessHost(ProcessHost):
    """Spawns real child processes with piped stdout/stderr."""

    def spawn(self, command: List[str], cwd: Optional[Union[str, Path]] = None) -> ProcessHandle:
        logger.debug(f"Spawning command: {command} in {cwd}")
        # New session on POSIX so kill() reaches everything the script started
        group = os.name == "posix"
        # argv mode, no shell=True
        process = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=group,
        )
        return PopenHandle(process, group=group)

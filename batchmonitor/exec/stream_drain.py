"""
Background line reader for a child process pipe.

A StreamDrain owns one thread that reads a byte pipe, splits it into
lines and hands each decoded line to a sink callable. Pipes backed by a
file descriptor are read through ``select`` so that ``stop()`` takes
effect within one poll interval even when the child writes nothing.
"""

import io
import logging
import os
import select
import threading
from typing import IO, Callable, Optional, Union


logger = logging.getLogger(__name__)


LineSink = Callable[[str], None]

READ_CHUNK_BYTES = 64 * 1024


class StreamDrain:
    """Drains one pipe on a dedicated thread, one sink call per line."""

    def __init__(self, pipe: IO, sink: LineSink, name: str = "stream",
                 poll_interval: float = 0.1, encoding: str = "utf-8"):
        """
        Initialize the drain.

        Args:
            pipe: Readable pipe (binary preferred; text pipes are accepted)
            sink: Called with each line, terminator stripped
            name: Label used for the thread and in log messages
            poll_interval: Seconds between stop checks while no data arrives
            encoding: Encoding used to decode bytes
        """
        self.pipe = pipe
        self.sink = sink
        self.name = name
        self.poll_interval = poll_interval
        self.encoding = encoding
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"drain-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Signal the drain to cease reading after the current read."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def wait_for(self, timeout: Optional[float] = None) -> bool:
        """Block until the reader thread has finished.

        Returns:
            True if reading has ceased, False if ``timeout`` elapsed first
        """
        if not self._thread.is_alive() and not self._thread.ident:
            # Never started
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        try:
            fd = self._fileno()
            if fd is not None:
                self._read_polling(fd)
            else:
                self._read_blocking()
        except (OSError, ValueError) as e:
            if self._stopped.is_set():
                logger.debug(f"Read on {self.name} stream ended after stop: {e}")
            else:
                logger.error(f"Error reading from {self.name} stream: {e}", exc_info=True)

    def _fileno(self) -> Optional[int]:
        if os.name == "nt":
            # select() only supports sockets on Windows
            return None
        try:
            return self.pipe.fileno()
        except (AttributeError, io.UnsupportedOperation):
            return None

    def _read_polling(self, fd: int) -> None:
        buffer = b""
        while not self._stopped.is_set():
            ready, _, _ = select.select([fd], [], [], self.poll_interval)
            if not ready:
                continue

            chunk = os.read(fd, READ_CHUNK_BYTES)
            if not chunk:
                # EOF: flush an unterminated last line
                if buffer:
                    self._emit(buffer)
                return

            buffer += chunk
            while b"\n" in buffer and not self._stopped.is_set():
                line, buffer = buffer.split(b"\n", 1)
                self._emit(line)

    def _read_blocking(self) -> None:
        for raw in iter(self.pipe.readline, self._empty()):
            if self._stopped.is_set():
                return
            self._emit(raw)

    def _empty(self) -> Union[bytes, str]:
        return "" if isinstance(self.pipe, io.TextIOBase) else b""

    def _emit(self, raw: Union[bytes, str]) -> None:
        if isinstance(raw, bytes):
            line = raw.decode(self.encoding, errors="replace")
        else:
            line = raw
        line = line.rstrip("\n").rstrip("\r")
        try:
            self.sink(line)
        except Exception:
            logger.exception(f"Sink for {self.name} stream rejected a line")

"""Handles for spawned worker processes.

A `ProcessHandle` wraps one child process: its stdin, its two output streams
and its lifecycle events. Listeners are plain callables registered per event
name and called synchronously, in registration order, from the loop.

Events:
    exit(exit_code): The process terminated. Fires exactly once, after all
        output that was buffered in the pipes has been delivered.
    success(): Emitted by the pool right after `exit` for exit code 0.
    error(exit_code, diagnostic): Emitted by the pool right after `exit` for a
        nonzero exit code.
    outcome(outcome): The `Success` or `Failure` for the run.
    payload_key(key): The payload store key handed to the worker.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import IO, TYPE_CHECKING, Any, BinaryIO, Callable

from jobpool.infrastructure.errors import InvariantViolation

if TYPE_CHECKING:
    from jobpool.infrastructure.loop import CooperativeLoop
    from jobpool.infrastructure.workers.outcome import Outcome

logger = logging.getLogger(__name__)

EVENT_EXIT = "exit"
EVENT_SUCCESS = "success"
EVENT_ERROR = "error"
EVENT_OUTCOME = "outcome"
EVENT_PAYLOAD_KEY = "payload_key"

READ_CHUNK_SIZE = 65536


class OutputStream(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class ProcessHandle(ABC):
    """Event surface and control interface for one worker process."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._output_listeners: dict[OutputStream, list[Callable[[bytes], Any]]] = {
            stream: [] for stream in OutputStream
        }
        self.exit_code: int | None = None

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners[event].append(listener)

    def listeners(self, event: str) -> list[Callable[..., Any]]:
        """Snapshot of the listeners registered for an event."""
        return list(self._listeners[event])

    def emit(self, event: str, *args: Any) -> None:
        for listener in self.listeners(event):
            listener(*args)

    def on_exit(self, listener: Callable[[int], Any]) -> None:
        self.on(EVENT_EXIT, listener)

    def on_success(self, listener: Callable[[], Any]) -> None:
        self.on(EVENT_SUCCESS, listener)

    def on_error(self, listener: Callable[[int, BinaryIO], Any]) -> None:
        """Listen for failures; each listener gets its own diagnostic reader."""
        self.on(EVENT_ERROR, listener)

    def on_outcome(self, listener: Callable[["Outcome"], Any]) -> None:
        self.on(EVENT_OUTCOME, listener)

    def on_payload_key(self, listener: Callable[[str], Any]) -> None:
        self.on(EVENT_PAYLOAD_KEY, listener)

    def on_output(self, stream: OutputStream, listener: Callable[[bytes], Any]) -> None:
        """Subscribe to chunks of one output stream.

        Streams that were not captured at spawn time never deliver data.
        """
        self._output_listeners[stream].append(listener)

    @property
    def exited(self) -> bool:
        return self.exit_code is not None

    def _deliver_output(self, stream: OutputStream, chunk: bytes) -> None:
        for listener in list(self._output_listeners[stream]):
            listener(chunk)

    def _finish(self, exit_code: int) -> None:
        if self.exit_code is not None:
            raise InvariantViolation(
                f"Process {self!r} exited twice (codes {self.exit_code} and {exit_code})"
            )
        self.exit_code = exit_code
        logger.debug(f"Process {self!r} exited with code {exit_code}")
        self.emit(EVENT_EXIT, exit_code)

    @property
    @abstractmethod
    def pid(self) -> int | None: ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue bytes for the process's stdin without blocking."""
        ...

    @abstractmethod
    def close_input(self) -> None: ...

    @abstractmethod
    def terminate(self) -> None:
        """Kill the process. Does not wait for it to exit."""
        ...

    @abstractmethod
    def is_running(self) -> bool: ...


class SubprocessHandle(ProcessHandle):
    """`ProcessHandle` backed by a `subprocess.Popen` object.

    Output pipes are watched with loop reader callbacks. Termination is detected
    by polling the child on the loop's timer every `poll_interval` seconds; when
    it has exited, whatever is still in the pipes is read and delivered before
    the `exit` event fires.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        loop: "CooperativeLoop",
        poll_interval: float = 0.01,
    ):
        super().__init__()
        self._process = process
        self._loop = loop
        self._poll_interval = poll_interval
        self._pending_input = bytearray()
        self._writer_registered = False
        self._input_closed = process.stdin is None
        self._pipes: dict[OutputStream, IO[bytes]] = {}
        if process.stdout is not None:
            self._pipes[OutputStream.STDOUT] = process.stdout
        if process.stderr is not None:
            self._pipes[OutputStream.STDERR] = process.stderr
        self._poll_timer: Any = None

    def __repr__(self) -> str:
        return f"<SubprocessHandle pid={self._process.pid}>"

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def start(self) -> None:
        """Start watching the process on the loop."""
        for stream, pipe in self._pipes.items():
            fd = pipe.fileno()
            os.set_blocking(fd, False)
            self._loop.add_reader(fd, self._read_available, stream)
        if self._process.stdin is not None:
            os.set_blocking(self._process.stdin.fileno(), False)
        self._poll_timer = self._loop.call_later(self._poll_interval, self._check_exit)

    def _read_available(self, stream: OutputStream) -> None:
        pipe = self._pipes.get(stream)
        if pipe is None:
            return
        try:
            chunk = os.read(pipe.fileno(), READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug(f"Error reading {stream.value} of {self!r}: {e}")
            chunk = b""
        if chunk:
            self._deliver_output(stream, chunk)
        else:
            self._close_pipe(stream)

    def _drain(self, stream: OutputStream) -> None:
        while stream in self._pipes:
            pipe = self._pipes[stream]
            try:
                chunk = os.read(pipe.fileno(), READ_CHUNK_SIZE)
            except BlockingIOError:
                # A grandchild may still hold the pipe open
                break
            except OSError:
                chunk = b""
            if not chunk:
                break
            self._deliver_output(stream, chunk)
        self._close_pipe(stream)

    def _close_pipe(self, stream: OutputStream) -> None:
        pipe = self._pipes.pop(stream, None)
        if pipe is None:
            return
        if not self._loop.is_closed():
            self._loop.remove_reader(pipe.fileno())
        pipe.close()

    def _check_exit(self) -> None:
        exit_code = self._process.poll()
        if exit_code is None:
            self._poll_timer = self._loop.call_later(self._poll_interval, self._check_exit)
            return
        self._poll_timer = None
        for stream in list(self._pipes):
            self._drain(stream)
        self.close_input()
        self._finish(exit_code)

    def write(self, data: bytes) -> None:
        if self._input_closed:
            logger.warning(f"Dropping {len(data)} bytes for {self!r}: stdin is closed")
            return
        self._pending_input += data
        self._flush_input()

    def _flush_input(self) -> None:
        stdin = self._process.stdin
        if self._input_closed or stdin is None:
            return
        fd = stdin.fileno()
        while self._pending_input:
            try:
                written = os.write(fd, self._pending_input)
            except BlockingIOError:
                break
            except BrokenPipeError:
                logger.debug(f"Process {self!r} closed its stdin")
                self.close_input()
                return
            del self._pending_input[:written]
        if self._pending_input and not self._writer_registered:
            self._loop.add_writer(fd, self._flush_input)
            self._writer_registered = True
        elif not self._pending_input and self._writer_registered:
            self._loop.remove_writer(fd)
            self._writer_registered = False

    def close_input(self) -> None:
        if self._input_closed:
            return
        self._input_closed = True
        self._pending_input.clear()
        stdin = self._process.stdin
        assert stdin is not None
        if self._writer_registered:
            if not self._loop.is_closed():
                self._loop.remove_writer(stdin.fileno())
            self._writer_registered = False
        try:
            stdin.close()
        except BrokenPipeError:
            logger.debug(f"Process {self!r} exited before its stdin was closed")

    def terminate(self) -> None:
        if self._process.returncode is None:
            logger.debug(f"Killing {self!r}")
            self._process.kill()

    def is_running(self) -> bool:
        return self._process.poll() is None

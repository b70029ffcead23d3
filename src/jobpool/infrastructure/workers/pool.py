"""Prefork pool of single-use worker processes.

The pool keeps `prefork_size` idle workers started ahead of time so that a
dispatch does not pay for process start-up. Dispatching a payload claims the
oldest idle worker and hands it the job through a two-line handshake on its
stdin:

    <queue name>\\n
    <payload store key>\\n

The payload itself is written to a payload store under that key. Each worker
runs exactly one job and then exits; its exit code decides the outcome (0 is
success, anything else is a failure).

All state is mutated from the synchronous bodies of `dispatch`, `shutdown` and
the constructor, or from loop callbacks, so the pool needs no locking. It is
not safe to use a pool from more than one thread.

Open pools are tracked so that their workers are killed when the interpreter
exits, even if the application never called `shutdown`.
"""

import atexit
import io
import itertools
import logging
import pickle
import sys
import weakref
from enum import Enum
from typing import TYPE_CHECKING, Any, BinaryIO, Callable

from attrs import define, field, frozen

from jobpool.infrastructure.errors import (
    ConfigurationError,
    InvariantViolation,
    PoolClosedError,
)
from jobpool.infrastructure.loop import CooperativeLoop, new_loop
from jobpool.infrastructure.payload_store import (
    InMemoryPayloadStore,
    PayloadRecord,
    PayloadStore,
)
from jobpool.infrastructure.workers.invocation import WorkerInvocation
from jobpool.infrastructure.workers.outcome import Outcome, classify
from jobpool.infrastructure.workers.process_handle import (
    EVENT_ERROR,
    EVENT_OUTCOME,
    EVENT_PAYLOAD_KEY,
    EVENT_SUCCESS,
    OutputStream,
    ProcessHandle,
)
from jobpool.infrastructure.workers.spawner import (
    DEFAULT_POLL_INTERVAL,
    ProcessSpawner,
    Spawner,
)

if TYPE_CHECKING:
    from jobpool.infrastructure.config import JobPoolConfig

logger = logging.getLogger(__name__)

# Workers read their two arguments with an interactive prompt. When stdin is a
# pipe the prompts still show up on stdout as separate chunks.
PROMPT_QUEUE = b'Please specify the required argument "queue": '
PROMPT_PAYLOAD_KEY = b'Please specify the required argument "messageCacheIdentifier": '
SUPPRESSED_PROMPTS = frozenset({PROMPT_QUEUE, PROMPT_PAYLOAD_KEY})

# Pools that have not been shut down, for cleanup at interpreter exit
_open_pools: weakref.WeakSet["WorkerPool"] = weakref.WeakSet()


def _shutdown_open_pools() -> None:
    """Kill the workers of every pool that is still open.

    Logging may already be torn down at this point, so problems are reported on
    stderr directly.
    """
    for pool in list(_open_pools):
        try:
            pool.shutdown()
        except Exception as e:
            print(f"[jobpool] atexit: failed to shut down {pool!r}: {e}", file=sys.stderr)


atexit.register(_shutdown_open_pools)


def _clamp_prefork_size(value: int) -> int:
    return max(int(value), 0)


@frozen
class PoolConfig:
    """Settings of a worker pool.

    Attributes:
        queue_name: Queue every job of this pool belongs to. If None, each
            dispatch must name its queue.
        output_results: Forward worker stdout/stderr to ours
        async_mode: Fire-and-forget; do not buffer worker output for failure
            diagnostics
        prefork_size: Number of idle workers to keep warm (negative values
            are clamped to 0)
        command: Worker command line. If None, it is built by the pool's
            `WorkerInvocation`.
    """

    queue_name: str | None = None
    output_results: bool = False
    async_mode: bool = False
    prefork_size: int = field(default=0, converter=_clamp_prefork_size)
    command: str | None = None

    @property
    def capture_output(self) -> bool:
        return self.output_results or not self.async_mode


class WorkerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINAL = "terminal"


@define(eq=False)
class WorkerProcess:
    """Pool bookkeeping for one worker process."""

    worker_id: int
    handle: ProcessHandle
    state: WorkerState = WorkerState.IDLE
    queue_name: str | None = None
    payload_key: str | None = None
    diagnostic: io.BytesIO = field(factory=io.BytesIO)
    outcome: Outcome | None = None
    terminating: bool = False


class WorkerPool:
    """Pool of preforked single-use worker processes."""

    def __init__(
        self,
        config: PoolConfig,
        loop: CooperativeLoop,
        payload_store: PayloadStore,
        spawner: Spawner | None = None,
        invocation: WorkerInvocation | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ):
        """Initialize the pool and start `config.prefork_size` idle workers.

        Args:
            config: Pool settings
            loop: Loop driving the workers' I/O and exit detection
            payload_store: Store that receives the payload of each dispatch
            spawner: Starts worker processes (defaults to a `ProcessSpawner`)
            invocation: Builds the worker command if `config.command` is None
            stdout: Binary sink for forwarded worker stdout (defaults to ours)
            stderr: Binary sink for forwarded worker stderr (defaults to ours)

        Raises:
            SpawnError: An idle worker could not be started
            ConfigurationError: No worker command is available
        """
        self.config = config
        self.loop = loop
        self.payload_store = payload_store
        self.spawner: Spawner = spawner if spawner is not None else ProcessSpawner(loop)
        self.invocation = invocation
        self.stdout = stdout
        self.stderr = stderr
        self.closed = False
        self._owns_loop = False
        self._command = config.command
        self._workers: dict[int, WorkerProcess] = {}
        # Per-state views of the arena; insertion order of _idle is FIFO
        self._idle: dict[int, WorkerProcess] = {}
        self._running: dict[int, WorkerProcess] = {}
        self._worker_ids = itertools.count(1)

        _open_pools.add(self)
        try:
            self._fill_pool(size=config.prefork_size)
        except Exception:
            # The caller never gets the pool, so kill what was started
            self.shutdown()
            raise

    @classmethod
    def create(
        cls,
        queue_name: str | None = None,
        output_results: bool = False,
        async_mode: bool = False,
        prefork_size: int = 0,
        command: str | None = None,
        loop: CooperativeLoop | None = None,
        *,
        payload_store: PayloadStore | None = None,
        invocation: WorkerInvocation | None = None,
        spawner: Spawner | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> "WorkerPool":
        """Create a pool from individual settings.

        If no loop is given, the pool creates its own selector loop and closes
        it in `close()`. If no payload store is given, an in-memory store is
        used, which only suits workers that share this process's memory.
        """
        owns_loop = loop is None
        if loop is None:
            loop = new_loop()
        if spawner is None:
            spawner = ProcessSpawner(loop, poll_interval=poll_interval)
        if payload_store is None:
            payload_store = InMemoryPayloadStore()

        config = PoolConfig(
            queue_name=queue_name,
            output_results=output_results,
            async_mode=async_mode,
            prefork_size=prefork_size,
            command=command,
        )
        pool = cls(
            config,
            loop,
            payload_store,
            spawner=spawner,
            invocation=invocation,
        )
        pool._owns_loop = owns_loop
        return pool

    @classmethod
    def from_settings(
        cls,
        settings: "JobPoolConfig",
        loop: CooperativeLoop | None = None,
        *,
        payload_store: PayloadStore | None = None,
    ) -> "WorkerPool":
        """Create a pool from the `[pool]` and `[payload_store]` settings."""
        from jobpool.infrastructure.payload_store import create_payload_store

        pool_settings = settings.pool
        config = pool_settings.to_pool_config()
        if payload_store is None:
            payload_store = create_payload_store(settings.payload_store)
        return cls.create(
            queue_name=config.queue_name,
            output_results=config.output_results,
            async_mode=config.async_mode,
            prefork_size=config.prefork_size,
            command=config.command,
            loop=loop,
            payload_store=payload_store,
            invocation=pool_settings.worker_invocation(),
            poll_interval=pool_settings.poll_interval,
        )

    def __repr__(self) -> str:
        return (
            f"<WorkerPool queue={self.config.queue_name!r} "
            f"idle={self.idle_count()} running={self.count()}>"
        )

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __len__(self) -> int:
        return self.count()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, payload: bytes, queue_name: str | None = None) -> ProcessHandle:
        """Hand a payload to an idle worker.

        The handshake is written before this method returns, so listeners
        attached to the returned handle afterward cannot miss the worker's exit:
        exits are only observed from the loop.

        Args:
            payload: Serialized job
            queue_name: Queue of the job; must agree with the pool's queue if
                both are set

        Returns:
            Handle of the worker running the job

        Raises:
            ConfigurationError: No queue name, or conflicting queue names
            PoolClosedError: The pool has been shut down
            SpawnError: A replacement idle worker could not be started
        """
        if self.closed:
            raise PoolClosedError("Cannot dispatch jobs to a pool that has been shut down")

        queue_name = self._resolve_queue_name(queue_name)

        self._fill_pool(size=self.config.prefork_size + 1)
        worker = self._take_idle_worker()
        worker.queue_name = queue_name

        self._connect_output_results(worker)
        self._setup_result_capture(worker)

        key = self._pass_payload_to_worker(worker, payload)
        worker.handle.write(queue_name.encode("utf-8") + b"\n")
        worker.handle.write(key.encode("ascii") + b"\n")

        self._mark_running(worker)
        logger.info(
            f"Dispatched job to worker {worker.worker_id} (queue={queue_name}, key={key[:12]})"
        )
        return worker.handle

    def dispatch_job(self, job: Any, queue_name: str | None = None) -> ProcessHandle:
        """Pickle a job object and dispatch it."""
        return self.dispatch(pickle.dumps(job), queue_name=queue_name)

    def _resolve_queue_name(self, queue_name: str | None) -> str:
        pool_queue = self.config.queue_name
        if pool_queue is None and queue_name is None:
            raise ConfigurationError("No queue name provided")
        if pool_queue is not None and queue_name is not None and pool_queue != queue_name:
            raise ConfigurationError(
                f"Cannot run job for queue {queue_name} in pool for queue {pool_queue}"
            )
        resolved = pool_queue if pool_queue is not None else queue_name
        assert resolved is not None
        return resolved

    def _take_idle_worker(self) -> WorkerProcess:
        worker = next(iter(self._idle.values()), None)
        if worker is not None:
            return worker
        raise InvariantViolation("No idle worker available after filling the pool")

    def _connect_output_results(self, worker: WorkerProcess) -> None:
        if not self.config.output_results:
            return
        worker.handle.on_output(
            OutputStream.STDOUT, lambda chunk: self._forward_output(chunk, OutputStream.STDOUT)
        )
        worker.handle.on_output(
            OutputStream.STDERR, lambda chunk: self._forward_output(chunk, OutputStream.STDERR)
        )

    def _forward_output(self, chunk: bytes, stream: OutputStream) -> None:
        if chunk in SUPPRESSED_PROMPTS:
            return
        if stream is OutputStream.STDOUT:
            sink, text_stream = self.stdout, sys.stdout
        else:
            sink, text_stream = self.stderr, sys.stderr
        if sink is None:
            # Resolved per chunk so that redirections of sys.stdout are honored
            sink = getattr(text_stream, "buffer", None)
            if sink is None:
                text_stream.write(chunk.decode("utf-8", errors="replace"))
                text_stream.flush()
                return
            text_stream.flush()
        sink.write(chunk)
        sink.flush()

    def _setup_result_capture(self, worker: WorkerProcess) -> None:
        worker.diagnostic = io.BytesIO()
        if not self.config.async_mode:
            worker.handle.on_output(OutputStream.STDOUT, worker.diagnostic.write)

    def _pass_payload_to_worker(self, worker: WorkerProcess, payload: bytes) -> str:
        record = PayloadRecord(payload=payload)
        key = record.key()
        self.payload_store.set(key, record)
        worker.payload_key = key
        self.loop.call_soon(worker.handle.emit, EVENT_PAYLOAD_KEY, key)
        return key

    def _mark_running(self, worker: WorkerProcess) -> None:
        if worker.state is not WorkerState.IDLE:
            raise InvariantViolation(
                f"Worker {worker.worker_id} cannot start a job in state {worker.state.value}"
            )
        worker.state = WorkerState.RUNNING
        del self._idle[worker.worker_id]
        self._running[worker.worker_id] = worker

    # ------------------------------------------------------------------
    # Pool warming and worker exit
    # ------------------------------------------------------------------

    def _fill_pool(self, size: int) -> None:
        size = max(size, 0)
        for worker in self.idle_workers():
            if not worker.handle.is_running():
                logger.debug(f"Pruning idle worker {worker.worker_id}: process has died")
                self._mark_terminal(worker)
        while self.idle_count() < size:
            self._spawn_worker()

    def _spawn_worker(self) -> WorkerProcess:
        handle = self.spawner.spawn(
            self._resolve_command(), capture_output=self.config.capture_output
        )
        worker = WorkerProcess(worker_id=next(self._worker_ids), handle=handle)
        self._workers[worker.worker_id] = worker
        self._idle[worker.worker_id] = worker
        handle.on_exit(lambda exit_code: self._on_worker_exit(worker, exit_code))
        logger.debug(f"Preforked worker {worker.worker_id} (pid={handle.pid})")
        return worker

    def _resolve_command(self) -> str:
        if self._command is None:
            if self.invocation is None:
                raise ConfigurationError(
                    "No worker command configured and no worker invocation available"
                )
            self._command = self.invocation.build_command()
            logger.debug(f"Worker command: {self._command}")
        return self._command

    def _on_worker_exit(self, worker: WorkerProcess, exit_code: int) -> None:
        if self._workers.get(worker.worker_id) is not worker:
            # Pruned while idle; already terminal
            return
        was_running = worker.state is WorkerState.RUNNING
        self._mark_terminal(worker)
        if not was_running:
            logger.debug(f"Idle worker {worker.worker_id} exited with code {exit_code}")
            return
        self._release_payload(worker)
        self._emit_outcome(worker, exit_code)

    def _mark_terminal(self, worker: WorkerProcess) -> None:
        if worker.state is WorkerState.TERMINAL:
            raise InvariantViolation(f"Worker {worker.worker_id} is already terminal")
        if self._workers.pop(worker.worker_id, None) is not worker:
            raise InvariantViolation(f"Worker {worker.worker_id} is not owned by this pool")
        self._idle.pop(worker.worker_id, None)
        self._running.pop(worker.worker_id, None)
        worker.state = WorkerState.TERMINAL

    def _release_payload(self, worker: WorkerProcess) -> None:
        key, worker.payload_key = worker.payload_key, None
        if key is None:
            return
        self.payload_store.remove(key)
        logger.debug(f"Removed payload {key[:12]} of worker {worker.worker_id}")

    def _emit_outcome(self, worker: WorkerProcess, exit_code: int) -> None:
        if worker.outcome is not None:
            raise InvariantViolation(f"Worker {worker.worker_id} already has an outcome")
        outcome = classify(worker.worker_id, exit_code, worker.diagnostic)
        worker.outcome = outcome

        handle = worker.handle
        if outcome.ok:
            logger.info(f"Worker {worker.worker_id} finished job on queue {worker.queue_name}")
            handle.emit(EVENT_SUCCESS)
        else:
            logger.warning(
                f"Worker {worker.worker_id} failed job on queue {worker.queue_name} "
                f"with exit code {exit_code}"
            )
            # Each listener gets its own reader over the same bytes
            diagnostic = outcome.read_diagnostic()
            for listener in handle.listeners(EVENT_ERROR):
                listener(exit_code, io.BytesIO(diagnostic))
        handle.emit(EVENT_OUTCOME, outcome)

    # ------------------------------------------------------------------
    # Loop integration
    # ------------------------------------------------------------------

    def future_tick(self, callback: Callable[["WorkerPool"], Any]) -> "WorkerPool":
        """Run `callback(pool)` on the next iteration of the loop."""
        self.loop.call_soon(callback, self)
        return self

    def run_loop(self, callback: Callable[["WorkerPool"], Any] | None = None) -> Any:
        """Run the loop until application code stops it.

        If a callback is given, it runs on the first loop tick, before any I/O
        is processed, and its return value is returned once the loop stops.
        The pool never stops the loop by itself; a typical application stops it
        when `count()` drops to zero.

        If the callback raises, the loop is stopped and the exception is
        re-raised from `run_loop`.
        """
        result: dict[str, Any] = {}

        def run_callback(pool: "WorkerPool") -> None:
            assert callback is not None
            try:
                result["value"] = callback(pool)
            except Exception as e:
                result["error"] = e
                self.loop.stop()

        if callback is not None:
            self.future_tick(run_callback)
        self.loop.run_forever()
        if "error" in result:
            raise result["error"]
        return result.get("value")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def count(self) -> int:
        """Number of workers currently running a job."""
        return len(self._running)

    def idle_count(self) -> int:
        """Number of preforked workers waiting for a job."""
        return len(self._idle)

    def idle_workers(self) -> list[WorkerProcess]:
        return list(self._idle.values())

    def running_workers(self) -> list[WorkerProcess]:
        return list(self._running.values())

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, sweep_payloads: bool = False) -> None:
        """Kill all idle and running workers without waiting for them.

        Payload store entries of running workers are removed once their exit is
        observed on the loop. If the loop will not run again, pass
        `sweep_payloads=True` to remove them right away.
        """
        workers = [w for w in self._workers.values() if not w.terminating]
        self.closed = True
        _open_pools.discard(self)

        if workers:
            logger.info(f"Shutting down {len(workers)} worker(s)")
        for worker in workers:
            worker.terminating = True
            worker.handle.terminate()
            worker.handle.close_input()
            if sweep_payloads:
                self._release_payload(worker)

    def close(self) -> None:
        """Shut down and close the loop if the pool created it."""
        self.shutdown()
        if self._owns_loop and not self.loop.is_running() and not self.loop.is_closed():
            close = getattr(self.loop, "close", None)
            if close is not None:
                close()

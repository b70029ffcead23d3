"""Pytest configuration and fixtures.

Unit tests drive the pool with `FakeProcessHandle` objects whose output and
exit are simulated by the test. Tests marked `integration` start real Python
worker processes on a selector event loop.
"""

import asyncio
import io
import itertools
import logging
import os
import sys

import pytest

from jobpool.infrastructure import config as config_module
from jobpool.infrastructure.errors import SpawnError
from jobpool.infrastructure.payload_store import InMemoryPayloadStore
from jobpool.infrastructure.workers.pool import PoolConfig, WorkerPool
from jobpool.infrastructure.workers.process_handle import OutputStream, ProcessHandle

_fake_pids = itertools.count(10_000)


class FakeProcessHandle(ProcessHandle):
    """Process handle whose output and exit are driven by the test."""

    def __init__(self, command: str, capture_output: bool):
        super().__init__()
        self.command = command
        self.capture_output = capture_output
        self.written = bytearray()
        self.alive = True
        self.input_closed = False
        self.terminate_calls = 0
        self.close_input_calls = 0
        self._pid = next(_fake_pids)

    def __repr__(self) -> str:
        return f"<FakeProcessHandle pid={self._pid}>"

    @property
    def pid(self) -> int:
        return self._pid

    def write(self, data: bytes) -> None:
        self.written += data

    def close_input(self) -> None:
        self.close_input_calls += 1
        self.input_closed = True

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.alive = False

    def is_running(self) -> bool:
        return self.alive and not self.exited

    def input_lines(self) -> list[str]:
        return self.written.decode("utf-8").splitlines()

    def simulate_output(self, data: bytes, stream: OutputStream = OutputStream.STDOUT) -> None:
        if self.capture_output:
            self._deliver_output(stream, data)

    def simulate_exit(self, exit_code: int) -> None:
        self.alive = False
        self._finish(exit_code)


class FakeSpawner:
    """Spawner that records every handle it creates."""

    def __init__(self):
        self.handles: list[FakeProcessHandle] = []
        self.fail = False
        self.fail_after: int | None = None

    def spawn(self, command: str, capture_output: bool) -> FakeProcessHandle:
        if self.fail or (self.fail_after is not None and len(self.handles) >= self.fail_after):
            raise SpawnError(f"Failed to start worker {command!r}", command=command)
        handle = FakeProcessHandle(command, capture_output)
        self.handles.append(handle)
        return handle


def _run_once(loop: asyncio.AbstractEventLoop) -> None:
    """Run all callbacks that are currently scheduled on the loop."""
    loop.call_soon(loop.stop)
    loop.run_forever()


@pytest.fixture
def loop():
    loop = asyncio.SelectorEventLoop()
    yield loop
    loop.close()


@pytest.fixture
def tick(loop):
    """Run one round of the callbacks scheduled on the loop."""
    return lambda: _run_once(loop)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def payload_store():
    return InMemoryPayloadStore()


@pytest.fixture
def forwarded():
    """Binary sinks that receive forwarded worker output."""
    return {"stdout": io.BytesIO(), "stderr": io.BytesIO()}


@pytest.fixture
def make_pool(loop, spawner, payload_store, forwarded):
    """Factory for pools backed by the fake spawner."""
    pools: list[WorkerPool] = []

    def factory(**config_kwargs) -> WorkerPool:
        config_kwargs.setdefault("command", "fake-worker")
        pool = WorkerPool(
            PoolConfig(**config_kwargs),
            loop,
            payload_store,
            spawner=spawner,
            stdout=forwarded["stdout"],
            stderr=forwarded["stderr"],
        )
        pools.append(pool)
        return pool

    yield factory

    for pool in pools:
        pool.shutdown()


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    """Keep configuration files and JOBPOOL_ variables of the host out of tests."""
    for name in list(os.environ):
        if name.upper().startswith("JOBPOOL_"):
            monkeypatch.delenv(name)
    monkeypatch.setattr(
        config_module,
        "find_config_files",
        lambda: {"system": None, "user": None, "project": None},
    )
    monkeypatch.setattr(config_module, "_config", None)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def pytest_configure(config):
    """Register markers and keep application logs quiet unless requested."""
    config.addinivalue_line(
        "markers", "integration: mark test as starting real worker processes"
    )

    if os.environ.get("JOBPOOL_ENABLE_TEST_LOGGING"):
        config.option.log_cli = True
        config.option.log_cli_level = os.environ.get("JOBPOOL_TEST_LOG_LEVEL", "DEBUG")
        config.option.log_cli_format = "[%(asctime)s] %(levelname)-8s %(name)s - %(message)s"
    else:
        logging.getLogger("jobpool").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Skip process tests where pipes cannot be watched by the loop."""
    skip_windows = pytest.mark.skip(reason="pipe readiness needs a POSIX selector loop")
    if sys.platform == "win32":
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_windows)

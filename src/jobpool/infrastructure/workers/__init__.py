"""Worker process management for jobpool.

This package provides the prefork worker pool together with the process
handles and the spawner it uses to run single-use worker processes.
"""

from jobpool.infrastructure.workers.invocation import PythonModuleInvocation, WorkerInvocation
from jobpool.infrastructure.workers.outcome import Failure, Outcome, Success
from jobpool.infrastructure.workers.pool import PoolConfig, WorkerPool, WorkerState
from jobpool.infrastructure.workers.process_handle import OutputStream, ProcessHandle
from jobpool.infrastructure.workers.spawner import ProcessSpawner

__all__ = [
    "Failure",
    "Outcome",
    "OutputStream",
    "PoolConfig",
    "ProcessHandle",
    "ProcessSpawner",
    "PythonModuleInvocation",
    "Success",
    "WorkerInvocation",
    "WorkerPool",
    "WorkerState",
]

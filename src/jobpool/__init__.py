"""jobpool - a prefork worker-process pool for job queues.

The pool keeps a warm set of pre-spawned worker processes, hands each one a
single job through a two-line handshake on its stdin, and reports how the
worker terminated.

## Modules:

- `jobpool.infrastructure.workers`: The pool, process handles and spawner.
- `jobpool.infrastructure.payload_store`: Stores used to hand payloads to workers.
- `jobpool.infrastructure.config`: Configuration files and environment.
- `jobpool.cli`: The command line interface.
"""

from jobpool.__version__ import __version__
from jobpool.infrastructure.errors import (
    ConfigurationError,
    JobPoolError,
    PoolClosedError,
    SpawnError,
    WorkerExecutionError,
)
from jobpool.infrastructure.payload_store import (
    InMemoryPayloadStore,
    PayloadRecord,
    PayloadStore,
    SqlitePayloadStore,
)
from jobpool.infrastructure.workers import (
    Failure,
    Outcome,
    PoolConfig,
    ProcessHandle,
    ProcessSpawner,
    PythonModuleInvocation,
    Success,
    WorkerPool,
)

__all__ = [
    "__version__",
    "ConfigurationError",
    "Failure",
    "InMemoryPayloadStore",
    "JobPoolError",
    "Outcome",
    "PayloadRecord",
    "PayloadStore",
    "PoolClosedError",
    "PoolConfig",
    "ProcessHandle",
    "ProcessSpawner",
    "PythonModuleInvocation",
    "SpawnError",
    "SqlitePayloadStore",
    "Success",
    "WorkerExecutionError",
    "WorkerPool",
]

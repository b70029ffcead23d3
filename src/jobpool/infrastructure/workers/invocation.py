"""Construction of the command line used to start worker processes."""

import shlex
import sys
from typing import Protocol

from attrs import define, field


class WorkerInvocation(Protocol):
    """Builds the command line of a worker process.

    Supplied by the embedding application; the pool calls it once, the first
    time it needs to spawn a worker without an explicit command override.
    """

    def build_command(self) -> str: ...


@define
class PythonModuleInvocation:
    """Run a Python module in a fresh interpreter: `<python> -m <module> [args]`."""

    module: str
    args: list[str] = field(factory=list)
    python: str = field(factory=lambda: sys.executable)

    def build_command(self) -> str:
        return shlex.join([self.python, "-m", self.module, *self.args])

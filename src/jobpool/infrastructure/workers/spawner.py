"""Starting worker processes."""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from jobpool.infrastructure.errors import SpawnError
from jobpool.infrastructure.workers.process_handle import ProcessHandle, SubprocessHandle

if TYPE_CHECKING:
    from jobpool.infrastructure.loop import CooperativeLoop

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.01


class Spawner(Protocol):
    def spawn(self, command: str, capture_output: bool) -> ProcessHandle: ...


class ProcessSpawner:
    """Start worker processes as direct children of this process.

    stdin is always a pipe. stdout and stderr are pipes when `capture_output`
    is true and the null device otherwise; the choice is fixed for the lifetime
    of the process.
    """

    def __init__(
        self,
        loop: "CooperativeLoop",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
    ):
        """Initialize the spawner.

        Args:
            loop: Loop that watches the spawned processes
            poll_interval: Seconds between checks whether a process has exited
            env: Extra environment variables for the workers
            cwd: Working directory of the workers (defaults to ours)
        """
        self.loop = loop
        self.poll_interval = poll_interval
        self.env = env
        self.cwd = cwd

    def spawn(self, command: str, capture_output: bool) -> ProcessHandle:
        args = shlex.split(command)
        if not args:
            raise SpawnError("Cannot start worker: empty command", command=command)

        output = subprocess.PIPE if capture_output else subprocess.DEVNULL
        env = None
        if self.env:
            env = os.environ.copy()
            env.update(self.env)

        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=output,
                stderr=output,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start worker {command!r}: {e}")
            raise SpawnError(f"Failed to start worker {command!r}: {e}", command=command) from e

        handle = SubprocessHandle(process, self.loop, poll_interval=self.poll_interval)
        handle.start()
        logger.debug(f"Started worker {handle!r} (capture_output={capture_output})")
        return handle

"""Terminal classification of a worker's run."""

import io
from typing import Union

from attrs import field, frozen

from jobpool.infrastructure.errors import WorkerExecutionError


@frozen
class Success:
    """The worker exited with code 0."""

    worker_id: int
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return True


@frozen
class Failure:
    """The worker exited with a nonzero code.

    Attributes:
        worker_id: Pool-local identifier of the worker
        exit_code: Exit code reported for the process (negative for signals)
        diagnostic: Primary output of the worker, rewound to the start. Empty
            when the pool runs in async mode.
    """

    worker_id: int
    exit_code: int
    diagnostic: io.BytesIO = field(factory=io.BytesIO, eq=False)

    @property
    def ok(self) -> bool:
        return False

    def read_diagnostic(self) -> bytes:
        return self.diagnostic.getvalue()

    def to_error(self) -> WorkerExecutionError:
        return WorkerExecutionError(self.exit_code, self.read_diagnostic())


Outcome = Union[Success, Failure]


def classify(worker_id: int, exit_code: int, diagnostic: io.BytesIO) -> Outcome:
    if exit_code == 0:
        return Success(worker_id=worker_id)
    diagnostic.seek(0)
    return Failure(worker_id=worker_id, exit_code=exit_code, diagnostic=diagnostic)

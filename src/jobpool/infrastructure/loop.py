"""The cooperative loop the worker pool is driven by.

The pool only needs a small part of an event loop: deferred callbacks, timers,
file descriptor readiness and a way to run and stop. Any `asyncio` selector
loop provides these.
"""

import asyncio
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class CooperativeLoop(Protocol):
    """Subset of `asyncio.AbstractEventLoop` used by the pool."""

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> Any: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any: ...

    def add_reader(self, fd: int, callback: Callable[..., Any], *args: Any) -> None: ...

    def remove_reader(self, fd: int) -> bool: ...

    def add_writer(self, fd: int, callback: Callable[..., Any], *args: Any) -> None: ...

    def remove_writer(self, fd: int) -> bool: ...

    def run_forever(self) -> None: ...

    def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    def is_closed(self) -> bool: ...


def new_loop() -> asyncio.AbstractEventLoop:
    """Create a loop that supports reader callbacks on pipes.

    The default loop on Windows is a proactor loop, which cannot watch pipe
    file descriptors, so a selector loop is created explicitly.
    """
    loop = asyncio.SelectorEventLoop()
    logger.debug(f"Created event loop {loop!r}")
    return loop

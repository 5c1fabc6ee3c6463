"""Drivers that advance a StreamController without blocking the caller.

``StreamWorker`` drains the controller on a background thread, leaving the
calling thread free to request a stop. ``drive`` does the same for asyncio
hosts, running each blocking step in a thread and yielding to the event loop
between tokens. Either way steps run one at a time, so tokens reach the
accumulator in the order the backend produced them.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from .controller import StreamController

logger = logging.getLogger(__name__)


class StreamWorker:
    """Drain a controller's active stream on a daemon thread."""

    def __init__(self, controller: StreamController):
        self.controller = controller
        self.error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, name="localchat-stream-worker", daemon=True
        )

    def start(self) -> StreamWorker:
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self.controller.drain()
        except BaseException as exc:
            logger.exception("Stream worker crashed")
            self.error = exc

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the stream to finish. Returns True once it has."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()


async def drive(controller: StreamController) -> None:
    """Advance the controller one token at a time until it is idle."""
    while await asyncio.to_thread(controller.step):
        await asyncio.sleep(0)

"""Async facade over ``StreamService``.

The service itself runs on real threads (blocking accept and pipe reads). This
wrapper lets asyncio or trio callers drive it without blocking their event
loop: every blocking call is delegated to a worker thread through anyio.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from functools import partial

import anyio.to_thread

from .items import StreamItem
from .service import State, StreamService

__all__ = ["AsyncStreamService"]

logger = logging.getLogger(__name__)

# Upper bound for one blocking read delegated to a thread
DEFAULT_POLL_TIMEOUT = 0.5


class AsyncStreamService:
    """Async wrapper for a ``StreamService``.

    Example:
        svc = AsyncStreamService(service)
        await svc.start()
        async for item in svc:
            print(item.content)
        state = await svc.wait_terminated(timeout=5)
    """

    def __init__(
        self,
        service: StreamService,
        *,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        self.service = service
        self.poll_timeout = poll_timeout

    def state(self) -> State:
        return self.service.state()

    def failure_cause(self) -> BaseException | None:
        return self.service.failure_cause()

    async def start(self) -> None:
        await anyio.to_thread.run_sync(self.service.start)

    async def read_item(self, timeout: float) -> StreamItem:
        """Read the next item; TIMEOUT if nothing arrived within ``timeout``."""
        return await anyio.to_thread.run_sync(self.service.read_item, timeout)

    async def write_line(self, text: str, timeout: float | None = None) -> None:
        await anyio.to_thread.run_sync(partial(self.service.write_line, text, timeout))

    async def close_writer(self) -> None:
        await anyio.to_thread.run_sync(self.service.close_writer)

    async def stop(self, timeout: float | None = None) -> State:
        return await anyio.to_thread.run_sync(self.service.stop, timeout)

    async def wait_terminated(self, timeout: float | None = None) -> State:
        """Wait for a terminal state and return the current state."""
        await anyio.to_thread.run_sync(self.service.await_terminated, timeout)
        return self.service.state()

    async def __aiter__(self) -> AsyncIterator[StreamItem]:
        """Yield DATA items until EOF.

        TIMEOUT items are skipped while the service is live. Once the service
        is terminal and nothing is left to read, iteration ends without EOF.
        """
        while True:
            item = await self.read_item(self.poll_timeout)
            if item.is_eof:
                return
            if item.is_timeout:
                if self.service.state().is_terminal:
                    logger.debug(
                        f"trial-{self.service.trial_number} is terminal and drained, "
                        f"ending iteration"
                    )
                    return
                continue
            yield item

"""Asynchronous outbound message queue.

Delivery is fire-and-forget: messages are queued after the state change
they describe has committed, and a failed send is logged, never rolled
back.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from pyvalet._transport import MessagingChannel
from pyvalet.exceptions import ValetTransportError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    body: str = ""
    image_ref: str | None = None
    """When set, an image is sent with ``body`` as its caption."""


class Outbox:
    def __init__(self, channel: MessagingChannel) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send_text(self, to: str, body: str) -> None:
        self._queue.put_nowait(OutboundMessage(to=to, body=body))

    def send_image(self, to: str, image_ref: str, caption: str = "") -> None:
        self._queue.put_nowait(OutboundMessage(to=to, body=caption, image_ref=image_ref))

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="pyvalet-outbox")

    async def flush(self) -> None:
        """Wait until every queued message has been attempted."""
        await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        if drain and self._worker is not None and not self._worker.done():
            await self.flush()
        worker = self._worker
        self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    async def _deliver(self, message: OutboundMessage) -> None:
        if message.image_ref is not None:
            await self._channel.send_image(message.to, message.image_ref, message.body)
        else:
            await self._channel.send_text(message.to, message.body)

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._deliver(message)
                self.delivered += 1
            except ValetTransportError as exc:
                self.failed += 1
                _logger.warning("Outbound message to %s failed: %s", message.to, exc)
            except Exception:
                self.failed += 1
                _logger.exception("Unexpected error delivering message to %s", message.to)
            finally:
                self._queue.task_done()

import asyncio
import logging
from typing import Optional, Protocol, Set

import httpx


class AuditSink(Protocol):
    async def send(self, message: str) -> None: ...


class NullAuditSink:
    async def send(self, message: str) -> None:
        return None


class DiscordWebhookSink:
    def __init__(self, webhook_url: str, username: str = "Rank Gateway", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.username = username
        self._session = httpx.AsyncClient(timeout=timeout)

    async def send(self, message: str) -> None:
        response = await self._session.post(self.webhook_url, json={"username": self.username, "content": message})
        response.raise_for_status()

    async def aclose(self): await self._session.aclose()


class AuditDispatcher:
    """Fire-and-forget delivery of audit lines.

    emit() never blocks the request and never raises; delivery failures are
    logged and dropped.
    """

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink = sink or NullAuditSink()
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, message: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(message))
        except RuntimeError:
            logging.warning(f"[Audit] No running event loop, dropped: {message}")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, message: str):
        try:
            await self.sink.send(message)
        except Exception as e:
            logging.warning(f"[Audit] Failed to deliver audit message: {e}")

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def aclose(self):
        await self.drain()
        if hasattr(self.sink, "aclose"):
            await self.sink.aclose()

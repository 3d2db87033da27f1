from typing import Awaitable, Callable, List, Optional
import asyncio
import logging

from config import Config

LOG = logging.getLogger(__name__)


class ServerPoller:
    """Background task polling every claimed server on a fixed interval.

    `list_claimed` returns the server ids to poll and `poll` handles one
    server; a failure for one server is logged and the loop carries on.
    `after_cycle`, if given, runs once after every server has been polled.
    """

    def __init__(
        self,
        list_claimed: Callable[[], Awaitable[List[str]]],
        poll: Callable[[str], Awaitable[None]],
        interval: float = Config.SERVER_POLL_INTERVAL,
        after_cycle: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.list_claimed = list_claimed
        self.poll = poll
        self.after_cycle = after_cycle
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self):
        for server_id in await self.list_claimed():
            try:
                await self.poll(server_id)
            except Exception:
                LOG.exception(f"Polling server {server_id} failed")
        if self.after_cycle is not None:
            try:
                await self.after_cycle()
            except Exception:
                LOG.exception("Post-poll step failed")

    async def _run(self):
        LOG.info(f"Server poller started, interval {self.interval}s")
        while True:
            try:
                await self.poll_once()
            except Exception:
                LOG.exception("Server poll cycle failed")
            await asyncio.sleep(self.interval)

    def start(self):
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        LOG.info("Server poller stopped")

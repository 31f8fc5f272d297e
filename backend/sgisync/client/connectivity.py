"""Connection monitor.

Turns "the network came back" / "the network went away" into sync actions.
Something outside the sync core decides when connectivity changed (an OS
hook, a UI event, or :meth:`ConnectionMonitor.watch` polling a probe) and
calls :meth:`on_became_online` / :meth:`on_became_offline`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional

from sgisync.exceptions import AuthenticationError
from sgisync.exceptions import TransportError

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


class ConnectionMonitor:
    """Reacts to connectivity transitions.

    *session* is the object that owns the connection; it must provide
    ``is_connected``, ``connect()`` (opens the socket and runs the catch-up
    sequence) and ``catch_up()`` (pull since watermark, then drain).
    """

    def __init__(self, session: Any, *, initially_online: bool = True):
        self._session = session
        self._online = initially_online
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    async def on_became_online(self) -> None:
        """Reconnect, or catch up when the socket survived.

        :class:`AuthenticationError` propagates: retrying with the same token
        cannot succeed.
        """
        self._online = True
        logger.info("Back online")
        try:
            if not self._session.is_connected:
                await self._session.connect()
            else:
                await self._session.catch_up()
        except TransportError as exc:
            # Queue stays as it is; the next online event retries.
            logger.info("Reconnect attempt failed: %s", exc)

    async def on_became_offline(self) -> None:
        self._online = False
        logger.info("Gone offline")

    async def watch(self, probe: Probe, interval: float = 5.0) -> None:
        """Poll *probe* until cancelled or the token is rejected, firing a transition whenever its answer flips."""
        while True:
            try:
                reachable = await probe()
            except Exception as exc:
                logger.debug("Connectivity probe failed: %s", exc)
                reachable = False

            if reachable and not self._online:
                try:
                    await self.on_became_online()
                except AuthenticationError as exc:
                    logger.error("Stopped watching connectivity: %s", exc)
                    return
            elif not reachable and self._online:
                await self.on_became_offline()
            await asyncio.sleep(interval)

    def start_watching(self, probe: Probe, interval: float = 5.0) -> asyncio.Task:
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self.watch(probe, interval))
        return self._watch_task

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["ConnectionMonitor"]

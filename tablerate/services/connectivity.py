"""Online/offline state and the single policy that branches on it."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from ..errors import TableRateError

logger = logging.getLogger(__name__)

ConnectionListener = Callable[[bool], Union[Awaitable[None], None]]


class ConnectionMode(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionMonitor:
    """
    Tracks whether the rating store is reachable.

    State changes come from platform signals (``set_online``) or from the
    optional health probe, polled every ``check_interval`` seconds once
    ``start()`` is called. Listeners are told about transitions only.
    """

    def __init__(
        self,
        probe: Optional[Callable[[], Awaitable[None]]] = None,
        check_interval: float = 30.0,
        online: bool = True,
    ):
        self._probe = probe
        self.check_interval = check_interval
        self._online = online
        self._listeners: list[ConnectionListener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connection %s", "restored" if online else "lost")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connection listener failed")

    async def check(self) -> bool:
        if self._probe is None:
            return self._online
        try:
            await self._probe()
        except TableRateError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            await self.set_online(False)
        else:
            await self.set_online(True)
        return self._online

    async def start(self) -> None:
        if self._task is None and self._probe is not None and self.check_interval > 0:
            self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            await self.check()


class ConnectivityPolicy:
    """Decides, per call, whether the online or the offline path is taken."""

    def __init__(self, monitor: ConnectionMonitor, force_offline: bool = False):
        self.monitor = monitor
        self.force_offline = force_offline

    def select(self) -> ConnectionMode:
        if self.force_offline or not self.monitor.is_online:
            return ConnectionMode.OFFLINE
        return ConnectionMode.ONLINE

    @property
    def online(self) -> bool:
        return self.select() is ConnectionMode.ONLINE

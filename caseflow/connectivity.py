"""
Network connectivity tracking for the sync engine.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from caseflow.interfaces import ConnectivityProbe

logger = logging.getLogger(__name__)


class HttpConnectivityProbe(ConnectivityProbe):
    """Treats any HTTP answer from `url` as "online"."""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[ClientSession] = None):
        self.url = url
        self.timeout = ClientTimeout(total=timeout)
        self._session = session

    async def check(self) -> bool:
        session = self._session
        owns_session = session is None
        if owns_session:
            session = ClientSession()
        try:
            async with session.get(self.url, timeout=self.timeout) as response:
                return response.status < 500
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False
        finally:
            if owns_session:
                await session.close()


class ConnectivityMonitor:
    """
    Current online/offline state.

    Without a probe the state is whatever was last reported through
    set_connected(); with one, is_connected() asks the probe each time.
    """

    def __init__(self, probe: Optional[ConnectivityProbe] = None, connected: bool = True):
        self.probe = probe
        self._connected = connected
        self._listeners: List[Callable[[bool], None]] = []

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Connectivity changed: {'online' if connected else 'offline'}")
        for callback in self._listeners:
            try:
                callback(connected)
            except Exception as e:
                logger.error(f"Error in connectivity listener: {e}")

    async def is_connected(self) -> bool:
        if self.probe is not None:
            self.set_connected(await self.probe.check())
        return self._connected

"""Connection ownership for long-lived API clients.

A ConnectionManager owns exactly one live client handle. The handle is
created lazily on first use and replaced when a liveness probe shows it has
gone stale. Replacement is serialized by an asyncio lock, so concurrent
requests that all notice the same stale handle trigger a single reconnect;
callers holding an already replaced handle are simply handed the new one.

Usage:
    manager = ConnectionManager(
        connect=open_client,
        probe=lambda client, timeout: client.version(timeout=timeout),
        close=lambda client: client.close(),
    )

    client = await manager.current()
    ...
    client = await manager.ensure_live(client)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from ..errors import AgentConnectionError, EpimetheusError
from ..metrics import CONNECTION_RECONNECTS

logger = logging.getLogger(__name__)

H = TypeVar("H")

DEFAULT_PROBE_TIMEOUT = 5.0


class ConnectionManager(Generic[H]):
    """Single owner of a replaceable client handle.

    Args:
        connect: Coroutine factory building a new handle from ambient credentials
        probe: Coroutine ``probe(handle, timeout)`` that raises if the handle is dead
        close: Optional coroutine releasing a discarded handle
        name: Label used in logs and metrics
        error_cls: Error raised when a handle cannot be built
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[H]],
        probe: Callable[[H, Optional[float]], Awaitable[Any]],
        close: Optional[Callable[[H], Awaitable[None]]] = None,
        name: str = "node-agent",
        error_cls: type[EpimetheusError] = AgentConnectionError,
    ):
        self._connect = connect
        self._probe = probe
        self._close = close
        self.name = name
        self.error_cls = error_cls
        self._handle: Optional[H] = None
        self._lock = asyncio.Lock()

    @property
    def handle(self) -> Optional[H]:
        return self._handle

    async def create(self, timeout: Optional[float] = None) -> H:
        """Build a new handle, giving up after ``timeout`` seconds.

        Raises:
            error_cls: If the handle cannot be built in time
        """
        try:
            return await asyncio.wait_for(self._connect(), timeout)
        except asyncio.TimeoutError as e:
            raise self.error_cls(
                f"timed out initializing {self.name} client after {timeout:.1f}s"
            ) from e
        except EpimetheusError:
            raise
        except Exception as e:
            raise self.error_cls(f"failed to initialize {self.name} client: {e}") from e

    async def current(self) -> H:
        """Return the live handle, creating it on first use."""
        if self._handle is not None:
            return self._handle
        async with self._lock:
            if self._handle is None:
                self._handle = await self.create()
                logger.info("Connected %s client", self.name)
            return self._handle

    async def probe(self, handle: H, timeout: Optional[float] = None) -> bool:
        """Run the liveness probe; True if the handle answered."""
        timeout = DEFAULT_PROBE_TIMEOUT if timeout is None else timeout
        try:
            await asyncio.wait_for(self._probe(handle, timeout), timeout)
        except Exception as e:
            logger.debug("%s liveness probe failed: %s", self.name, e)
            return False
        return True

    async def replace(self, stale: Optional[H], timeout: Optional[float] = None) -> H:
        """Swap ``stale`` for a freshly built handle. Caller holds the lock."""
        try:
            fresh = await self.create(timeout)
        except EpimetheusError:
            CONNECTION_RECONNECTS.labels(self.name, "failure").inc()
            logger.error("Failed to re-establish %s connection", self.name)
            raise

        self._handle = fresh
        CONNECTION_RECONNECTS.labels(self.name, "success").inc()
        logger.warning("Re-established stale %s connection", self.name)

        if stale is not None and self._close is not None:
            try:
                await self._close(stale)
            except Exception as e:
                logger.warning("Error closing stale %s connection: %s", self.name, e)
        return fresh

    async def ensure_live(self, handle: Optional[H], timeout: Optional[float] = None) -> H:
        """Return a handle that answered its liveness probe.

        If another caller has already replaced ``handle`` the current handle
        is returned without probing again. Otherwise ``handle`` is probed and,
        if it does not answer, replaced. Probe and replacement together are
        bounded by ``timeout``.

        Raises:
            error_cls: If a replacement handle cannot be built in time
        """
        loop = asyncio.get_running_loop()
        expires = None if timeout is None else loop.time() + timeout
        async with self._lock:
            if self._handle is not None and self._handle is not handle:
                return self._handle
            if handle is not None and await self.probe(handle, timeout):
                return handle
            remaining = None if expires is None else max(expires - loop.time(), 0.0)
            return await self.replace(handle, timeout=remaining)

    async def close(self) -> None:
        async with self._lock:
            handle, self._handle = self._handle, None
            if handle is not None and self._close is not None:
                await self._close(handle)

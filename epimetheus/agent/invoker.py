"""Retry-with-reconnect combinator for fan-out calls.

FanOutInvoker runs one logical operation against a list of target nodes.
Failed attempts are retried at a constant interval until an overall deadline
(100ms / 10s by default). Between attempts the connection handle is checked
with ConnectionManager.ensure_live, so a stale channel is replaced before the
next attempt. A connection that cannot be rebuilt aborts the loop at once.

The result always says what was actually received: when the deadline runs
out after some nodes did answer, their records come back together with the
terminal error, and ``records is None`` means nothing usable arrived.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from ..errors import EpimetheusError, NonRetryableError, RemoteCallError, RetryableError
from ..metrics import FANOUT_LATENCY, RPC_ATTEMPTS
from ..tracing import get_current_span, traced_async
from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEADLINE = 10.0
DEFAULT_INTERVAL = 0.1

# op(handle, targets, timeout) -> records
Operation = Callable[[Any, Sequence[str], Optional[float]], Awaitable[T]]


@dataclass
class FetchResult(Generic[T]):
    """Records received from a fan-out call and the error that ended it, if any."""
    records: Optional[T] = None
    error: Optional[EpimetheusError] = None

    @property
    def usable(self) -> bool:
        return self.records is not None

    @property
    def complete(self) -> bool:
        return self.error is None


class FanOutInvoker:
    """Executes operations through a ConnectionManager with bounded retry."""

    def __init__(
        self,
        connection: ConnectionManager,
        deadline: float = DEFAULT_DEADLINE,
        interval: float = DEFAULT_INTERVAL,
    ):
        self.connection = connection
        self.deadline = deadline
        self.interval = interval

    @traced_async("fanout.invoke")
    async def invoke(
        self,
        op: Operation,
        targets: Sequence[str] = (),
        deadline: Optional[float] = None,
        operation: str = "call",
    ) -> FetchResult:
        """Run ``op`` against ``targets`` until it succeeds or the deadline passes.

        Args:
            op: Coroutine function ``op(handle, targets, timeout)``
            targets: Node addresses; empty means the endpoint's own node
            deadline: Overall budget in seconds, defaults to the invoker's
            operation: Name used in logs, metrics and trace attributes

        Returns:
            FetchResult with the records on success, or the last partial
            records (possibly None) together with the terminal error.
        """
        deadline = self.deadline if deadline is None else deadline
        targets = list(targets)
        span = get_current_span()
        span.set_attribute("fanout.operation", operation)
        span.set_attribute("fanout.targets", len(targets))

        loop = asyncio.get_running_loop()
        expires = loop.time() + deadline
        started = time.perf_counter()
        last_partial: Any = None

        def remaining() -> float:
            return max(expires - loop.time(), 0.0)

        retrying = AsyncRetrying(
            stop=stop_after_delay(deadline),
            wait=wait_fixed(self.interval),
            retry=retry_if_exception_type(RetryableError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

        try:
            handle = await self.connection.current()
            async for attempt in retrying:
                with attempt:
                    try:
                        records = await self._attempt(op, handle, targets, remaining(), operation)
                    except RetryableError as e:
                        if getattr(e, "partial", None) is not None:
                            last_partial = e.partial
                        if remaining() > 0:
                            handle = await self.connection.ensure_live(
                                handle, timeout=remaining()
                            )
                        raise
        except RetryableError as e:
            RPC_ATTEMPTS.labels(operation, "exhausted").inc()
            logger.warning("%s gave up after %.1fs: %s", operation, deadline, e)
            return FetchResult(last_partial, e)
        except NonRetryableError as e:
            RPC_ATTEMPTS.labels(operation, "fatal").inc()
            logger.error("%s aborted: %s", operation, e)
            return FetchResult(last_partial, e)
        finally:
            FANOUT_LATENCY.labels(operation).observe(time.perf_counter() - started)

        return FetchResult(records)

    async def _attempt(
        self,
        op: Operation,
        handle: Any,
        targets: list[str],
        timeout: float,
        operation: str,
    ) -> Any:
        try:
            records = await asyncio.wait_for(op(handle, targets, timeout), timeout)
        except asyncio.TimeoutError as e:
            RPC_ATTEMPTS.labels(operation, "timeout").inc()
            raise RemoteCallError(
                f"{operation} timed out", operation=operation, nodes=targets
            ) from e
        except RetryableError:
            RPC_ATTEMPTS.labels(operation, "error").inc()
            raise
        RPC_ATTEMPTS.labels(operation, "success").inc()
        return records

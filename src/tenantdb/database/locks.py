"""
Advisory lock coordination for tenantdb.

Independent processes racing to initialize the same tenant database agree on
a single creator through a session-level PostgreSQL advisory lock. The loser
polls until the creator's critical tables appear, or gives up after a fixed
timeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

import asyncpg

from ..exceptions import LockTimeoutError


logger = logging.getLogger(__name__)

# Returns (ready, number of critical objects found so far)
ReadinessCheck = Callable[[], Awaitable[Tuple[bool, int]]]


@dataclass
class LockHandle:
    """An advisory lock attempt and whether this session holds it."""

    key: str
    acquired: bool


class AdvisoryLockCoordinator:
    """Cross-process mutual exclusion keyed by a logical resource name."""

    def __init__(
        self,
        connection: asyncpg.Connection,
        key: str,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        progress_interval: float = 5.0,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.connection = connection
        self.key = key
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._sleep = sleep

    async def acquire(self) -> LockHandle:
        """Try the lock once without blocking."""
        acquired = await self.connection.fetchval(
            "SELECT pg_try_advisory_lock(hashtext($1)::bigint)", self.key
        )
        handle = LockHandle(key=self.key, acquired=bool(acquired))

        if handle.acquired:
            self.logger.info(f"Acquired advisory lock '{self.key}'")
        else:
            self.logger.info(
                f"Advisory lock '{self.key}' held by another process, "
                f"waiting for it to finish"
            )
        return handle

    async def wait_for_peer(self, is_ready: ReadinessCheck) -> int:
        """Poll until ``is_ready`` reports success or the timeout elapses.

        Returns the number of objects found on the successful check.
        """
        started = self._clock()
        last_progress = started

        while True:
            ready, found = await is_ready()
            now = self._clock()
            elapsed = now - started

            if ready:
                self.logger.info(
                    f"Schema created by concurrent process after {elapsed:.1f}s"
                )
                return found

            if elapsed >= self.timeout:
                self.logger.error(
                    f"Timed out after {elapsed:.1f}s waiting on lock '{self.key}' "
                    f"({found} critical tables found)"
                )
                raise LockTimeoutError(self.key, self.timeout)

            if now - last_progress >= self.progress_interval:
                self.logger.info(
                    f"Still waiting for schema creation... "
                    f"({elapsed:.0f}s elapsed, {found} critical tables found)"
                )
                last_progress = now

            await self._sleep(self.poll_interval)

    async def release(self, handle: LockHandle) -> bool:
        """Release a held lock; failures are logged, never raised."""
        if not handle.acquired:
            return False

        try:
            released = await self.connection.fetchval(
                "SELECT pg_advisory_unlock(hashtext($1)::bigint)", handle.key
            )
        except Exception as e:
            # Session-level lock; it clears when the connection closes
            self.logger.warning(f"Failed to release advisory lock '{handle.key}': {e}")
            return False

        handle.acquired = False
        self.logger.debug(f"Released advisory lock '{handle.key}'")
        return bool(released)

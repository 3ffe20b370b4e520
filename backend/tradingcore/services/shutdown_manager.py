"""
Graceful Shutdown Manager

Counts orders currently being submitted to the venue so shutdown can wait
for them instead of cutting a submission in half. Once draining starts,
new submissions are refused; closing orders may still be let through.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from tradingcore.exceptions import ExecutionError

logger = logging.getLogger(__name__)


class ShutdownManager:
    """
    Usage:
        async with manager.order_in_flight():
            await client.place_order(...)

        await manager.prepare_shutdown(timeout=30)
    """

    def __init__(self):
        self._shutting_down = False
        self._in_flight_count = 0
        self._lock = asyncio.Lock()
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutdown_requested_at: Optional[datetime] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def in_flight_count(self) -> int:
        return self._in_flight_count

    @asynccontextmanager
    async def order_in_flight(self, allow_during_shutdown: bool = False) -> AsyncIterator[None]:
        """Count an order submission. Refused once draining started unless allowed (position closes)."""
        async with self._lock:
            if self._shutting_down and not allow_during_shutdown:
                raise ExecutionError("Cannot submit new orders - shutdown in progress")
            self._in_flight_count += 1
            self._drained.clear()
        try:
            yield
        finally:
            async with self._lock:
                self._in_flight_count = max(0, self._in_flight_count - 1)
                if self._in_flight_count == 0:
                    self._drained.set()

    async def prepare_shutdown(self, timeout: float = 30.0) -> Dict[str, Any]:
        """
        Refuse new orders and wait for in-flight ones.

        Returns a status dict; ready is False when the timeout expired first.
        """
        self._shutting_down = True
        self._shutdown_requested_at = datetime.utcnow()
        pending = self._in_flight_count
        logger.info(f"Shutdown requested - {pending} orders in-flight")

        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Shutdown timeout after {timeout}s - {self._in_flight_count} orders still in-flight"
            )
            return {"ready": False, "in_flight_count": self._in_flight_count, "waited_seconds": timeout}

        waited = (datetime.utcnow() - self._shutdown_requested_at).total_seconds()
        if pending:
            logger.info(f"All in-flight orders completed after {waited:.1f}s")
        return {"ready": True, "in_flight_count": 0, "waited_seconds": waited}

    def cancel_shutdown(self):
        """Accept orders again (used when trading restarts after a stop)."""
        self._shutting_down = False
        self._shutdown_requested_at = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "shutting_down": self._shutting_down,
            "in_flight_count": self._in_flight_count,
            "shutdown_requested_at": (
                self._shutdown_requested_at.isoformat() if self._shutdown_requested_at else None
            ),
        }

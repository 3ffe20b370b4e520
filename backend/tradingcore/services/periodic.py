"""
Periodic task scheduling for the trading services

Each service runs its recurring work through a PeriodicTask: the loop awaits
the callback, then sleeps, so a new cycle never starts before the previous
one completes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class Service(Protocol):
    """Lifecycle surface every trading service exposes"""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def health(self) -> Dict[str, Any]: ...


class PeriodicTask:
    """Cancellable, non-overlapping recurring task"""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.running = False
        self.run_count = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.running and self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            logger.warning(f"{self.name} already running")
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"▶️ {self.name} started (interval: {self.interval_seconds}s)")

    async def stop(self):
        self.running = False
        task = self._task
        self._task = None
        if task is None:
            return
        # Stopping from inside our own callback: the loop exits after it returns
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"⏹️ {self.name} stopped")

    async def run_once(self):
        """Run the callback a single time, recording the outcome"""
        try:
            await self._callback()
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Error in {self.name} cycle: {e}", exc_info=True)
        finally:
            self.run_count += 1
            self.last_run_at = datetime.utcnow()

    async def _loop(self):
        while self.running:
            await self.run_once()
            if not self.running:
                break
            await asyncio.sleep(self.interval_seconds)

    def health(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }

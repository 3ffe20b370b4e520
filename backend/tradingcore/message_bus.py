"""
In-process Message Bus

Publish/subscribe plus request/reply between the trading services.

- publish() is fire-and-forget: every subscriber gets its own delivery task,
  and a failing handler is logged without affecting other subscribers.
- request() tags the message with a correlation id and a reply channel
  (f"{topic}.reply"), then waits for the matching reply with a timeout.
- reply() answers a request on its reply channel with the same correlation id.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from tradingcore.exceptions import APIError

logger = logging.getLogger(__name__)

REPLY_SUFFIX = ".reply"
REPLY_TYPE = "REPLY"


@dataclass
class Message:
    topic: str
    type: str
    payload: Any = None
    source: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None


Handler = Callable[[Message], Awaitable[None]]


class MessageBus:
    """Topic-based async message bus with correlation-id request/reply"""

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._pending_replies: Dict[str, asyncio.Future] = {}
        self._deliveries: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, handler: Handler):
        """Register a handler for a topic"""
        if handler not in self._subscribers[topic]:
            self._subscribers[topic].append(handler)
            logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {topic}")

    def unsubscribe(self, topic: str, handler: Handler):
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def publish(
        self,
        topic: str,
        msg_type: str,
        payload: Any = None,
        source: str = "",
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        """Publish a message. Returns immediately; delivery happens in background tasks."""
        message = Message(
            topic=topic,
            type=msg_type,
            payload=payload,
            source=source,
            correlation_id=correlation_id,
            reply_to=reply_to,
        )

        if topic.endswith(REPLY_SUFFIX) and correlation_id:
            self._resolve_reply(message)

        for handler in list(self._subscribers.get(topic, [])):
            task = asyncio.create_task(self._deliver(handler, message))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

        return message

    async def request(
        self,
        topic: str,
        msg_type: str,
        payload: Any,
        timeout: float,
        source: str = "",
    ) -> Any:
        """
        Send a request and wait for its reply.

        Raises:
            asyncio.TimeoutError: no reply arrived within timeout
            APIError: the responder replied with {"error": ...}
        """
        correlation_id = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending_replies[correlation_id] = future

        try:
            await self.publish(
                topic,
                msg_type,
                payload,
                source=source,
                correlation_id=correlation_id,
                reply_to=f"{topic}{REPLY_SUFFIX}",
            )
            result = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Request {msg_type} on {topic} timed out after {timeout}s")
            raise
        finally:
            self._pending_replies.pop(correlation_id, None)

        if isinstance(result, dict) and result.get("error"):
            raise APIError(str(result["error"]))
        return result

    async def reply(self, request: Message, payload: Any, source: str = ""):
        """Answer a request on its reply channel"""
        if not request.reply_to or not request.correlation_id:
            logger.warning(f"Cannot reply to {request.type} on {request.topic}: not a request")
            return
        await self.publish(
            request.reply_to,
            REPLY_TYPE,
            payload,
            source=source,
            correlation_id=request.correlation_id,
        )

    def _resolve_reply(self, message: Message):
        future = self._pending_replies.get(message.correlation_id)
        if future is None or future.done():
            logger.debug(f"Dropping late or unknown reply {message.correlation_id} on {message.topic}")
            return
        future.set_result(message.payload)

    async def _deliver(self, handler: Handler, message: Message):
        try:
            await handler(message)
        except Exception as e:
            logger.error(
                f"Handler {getattr(handler, '__qualname__', handler)} failed on "
                f"{message.topic}/{message.type}: {e}",
                exc_info=True,
            )

    async def join(self):
        """Wait until every in-flight delivery (and any it spawned) has finished.

        Must not be awaited from inside a handler.
        """
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def close(self):
        """Cancel in-flight deliveries and fail pending requests"""
        for task in list(self._deliveries):
            task.cancel()
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        for future in self._pending_replies.values():
            if not future.done():
                future.cancel()
        self._pending_replies.clear()

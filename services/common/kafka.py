"""In-process stand-ins for the Kafka producer/consumer used by the pricing service."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

MessageHandler = Callable[[str | None, dict[str, Any]], Awaitable[None]]


class _InMemoryBroker:
    """Dispatches published messages to subscribers of a topic, in publish order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[MessageHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(topic, None)

    async def publish(self, topic: str, key: str | None, message: dict[str, Any]) -> None:
        # Iterate over a copy in case handlers mutate subscriptions.
        for handler in list(self._subscribers.get(topic, [])):
            await handler(key, message)


_BROKER = _InMemoryBroker()


class KafkaProducerStub:
    """Producer with the connect/send/close surface of an aiokafka producer.

    Messages carry an optional partition key; pricing events are keyed by SKU
    so consumers see changes to one product in order.
    """

    def __init__(self, **_kwargs: Any) -> None:
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def send(self, topic: str, value: dict[str, Any], *, key: str | None = None) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        await _BROKER.publish(topic, key, value)

    async def close(self) -> None:
        self._connected = False


class KafkaConsumerStub:
    """Consumer that forwards ``(topic, key, message)`` to an async handler."""

    def __init__(
        self,
        topics: Sequence[str],
        handler: Callable[[str, str | None, dict[str, Any]], Awaitable[None]],
    ) -> None:
        self._topics = list(topics)
        self._handler = handler
        self._registrations: list[tuple[str, MessageHandler]] = []
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        for topic in self._topics:
            async def _callback(key: str | None, message: dict[str, Any], current_topic: str = topic) -> None:
                await self._handler(current_topic, key, message)

            _BROKER.subscribe(topic, _callback)
            self._registrations.append((topic, _callback))
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        for topic, callback in self._registrations:
            _BROKER.unsubscribe(topic, callback)
        self._registrations.clear()
        self._started = False

"""Base transport interface for execution event notifications.

Events are fanned out per tenant: every status change of an execution is
published on ``executions.<tenant_id>`` so a subscriber only ever sees its
own tenant's executions.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import EVENT_TOPIC_PREFIX
from ..contracts import ExecutionEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract transport carrying :class:`ExecutionEvent` notifications."""

    topic_prefix: str = EVENT_TOPIC_PREFIX

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    def tenant_topic(self, tenant_id: str) -> str:
        """Topic carrying the events of ``tenant_id``."""
        if not tenant_id:
            raise ValueError("tenant_id is required to address an event topic")
        return f"{self.topic_prefix}.{tenant_id}"

    async def publish_event(self, event: ExecutionEvent) -> str:
        """Publish ``event`` on its tenant's topic and return the topic."""
        topic = self.tenant_topic(event.tenant_id)
        await self.publish(topic, event)
        return topic

    async def tenant_events(
        self, tenant_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ExecutionEvent]:
        """Yield the events of one tenant, acknowledging each as it is handed out."""
        async for raw_message, event in self.subscribe(self.tenant_topic(tenant_id), lifespan):
            await self.ack(raw_message)
            yield event

    @abc.abstractmethod
    async def publish(self, topic: str, event: ExecutionEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ExecutionEvent]]:
        """Yield raw transport message and event pairs published on ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge a delivered event."""
        raise NotImplementedError

"""Durable operational event stream with idempotent subscriber delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .constants import EVENTS_TOPIC
from .contracts import EventSeverity, OperationalEvent
from .persistence import WorkflowRepository
from .transports import BaseTransport
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

EventHandler = Callable[[OperationalEvent], Awaitable[None]]

IMMEDIATE_SEVERITIES = frozenset({"error", "critical"})


@dataclass
class Subscription:
    name: str
    handler: EventHandler
    event_types: Optional[frozenset] = None

    def matches(self, event: OperationalEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types


@dataclass
class DeliveryReport:
    delivered: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)


class EventBus:
    """Append-only event stream.

    Events are stored through the repository before anything else happens,
    so they survive restarts and can be replayed. Delivery is at-least-once;
    each ``(subscriber, event id)`` pair is recorded after the handler
    returns, and a redelivered pair is skipped.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: Optional[BaseTransport] = None,
        clock: Optional[Clock] = None,
        topic: str = EVENTS_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._clock = clock or SystemClock()
        self._topic = topic
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self,
        name: str,
        handler: EventHandler,
        event_types: Optional[Iterable[str]] = None,
    ) -> None:
        """Register ``handler`` under a stable ``name`` used for deduplication."""
        self._subscriptions[name] = Subscription(
            name=name,
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
        )

    def unsubscribe(self, name: str) -> None:
        self._subscriptions.pop(name, None)

    async def emit(
        self,
        event_type: str,
        severity: EventSeverity,
        source_system: str,
        source_entity_kind: Optional[str] = None,
        source_entity_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        immediate: bool = False,
    ) -> OperationalEvent:
        """Append an event and publish it.

        ``error`` and ``critical`` events, or any event emitted with
        ``immediate=True``, are delivered to subscribers before returning;
        everything else waits for the next :meth:`drain`.
        """
        event = OperationalEvent(
            event_type=event_type,
            severity=severity,
            source_system=source_system,
            source_entity_kind=source_entity_kind,
            source_entity_id=source_entity_id,
            data=data or {},
            created_at=self._clock.now(),
        )
        await self._repository.append_event(event)
        logger.debug(f"Event {event.event_type} ({event.severity}) appended as {event.id}")

        if self._transport is not None:
            try:
                await self._transport.publish(self._topic, event)
            except Exception as e:
                # the stored copy is authoritative; external fan-out catches up on replay
                logger.error(f"Failed to publish event {event.id} to transport: {e}")

        if immediate or severity in IMMEDIATE_SEVERITIES:
            await self.deliver(event)
        return event

    async def deliver(self, event: OperationalEvent) -> DeliveryReport:
        """Hand ``event`` to every matching subscriber that has not seen it."""
        report = DeliveryReport()
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            if await self._repository.was_delivered(subscription.name, event.id):
                report.skipped += 1
                continue
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    f"Subscriber {subscription.name} failed on event {event.id} "
                    f"({event.event_type}): {e}"
                )
                report.failed.append(subscription.name)
                continue
            await self._repository.mark_delivered(subscription.name, event.id)
            report.delivered += 1

        if not report.failed and not event.processed:
            event.processed = True
            event.processed_at = self._clock.now()
            await self._repository.save_event(event)
        return report

    async def drain(self, limit: Optional[int] = 50) -> int:
        """Deliver unprocessed events in append order. Returns events handled."""
        pending = await self._repository.list_events(processed=False, limit=limit)
        for event in pending:
            await self.deliver(event)
        return len(pending)

    async def consume(self, lifespan: Optional[float] = None) -> int:
        """Take events off the transport until it closes or ``lifespan`` runs out.

        Events published by other processes are appended to the stream and,
        when urgent, delivered right away; the rest wait for :meth:`drain`.
        Copies of events this bus emitted itself are already stored and are
        only acknowledged. Returns how many new events were ingested.
        """
        if self._transport is None:
            return 0
        ingested = 0
        async for raw, event in self._transport.subscribe(self._topic, lifespan=lifespan):
            try:
                if await self._repository.get_event(event.id) is None:
                    await self._repository.append_event(event)
                    ingested += 1
                    logger.debug(f"Ingested event {event.id} ({event.event_type}) from {event.source_system}")
                    if event.severity in IMMEDIATE_SEVERITIES:
                        await self.deliver(event)
            except Exception as e:
                logger.error(f"Failed to ingest event {event.id} from transport: {e}")
                await self._transport.nack(raw)
                continue
            await self._transport.ack(raw)
        return ingested

    async def replay(self, event_id: str) -> DeliveryReport:
        """Re-deliver a stored event; subscribers that already handled it skip it."""
        event = await self._repository.get_event(event_id)
        if event is None:
            raise KeyError(f"Unknown event {event_id}")
        return await self.deliver(event)

    async def pending_count(self) -> int:
        return len(await self._repository.list_events(processed=False))

    async def history(self, limit: Optional[int] = None) -> list[OperationalEvent]:
        return await self._repository.list_events(limit=limit)

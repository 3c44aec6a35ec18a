"""
Turn event sinks: fire-and-forget telemetry about what happened in a turn.

Sinks never fail a turn: the engine logs and drops any exception raised
while emitting.
"""
from __future__ import annotations

import abc

import structlog

from models.schemas import TurnEvent

logger = structlog.get_logger()


class EventSink(abc.ABC):
    @abc.abstractmethod
    async def emit(self, event: TurnEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Writes every event to the structured log."""

    async def emit(self, event: TurnEvent) -> None:
        logger.info("turn_event", event_type=event.event_type.value,
                    conversation_id=event.conversation_id, chatbot_id=event.chatbot_id,
                    node_id=event.node_id, **{f"payload_{k}": v for k, v in event.payload.items()})


class StoreEventSink(EventSink):
    """Appends events to the record store for the analytics side to read."""

    def __init__(self, store):
        self._store = store

    async def emit(self, event: TurnEvent) -> None:
        await self._store.append_event(event)


class CompositeEventSink(EventSink):
    def __init__(self, *sinks: EventSink):
        self._sinks = list(sinks)

    async def emit(self, event: TurnEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.warning("event_sink_failed", sink=type(sink).__name__,
                               event_type=event.event_type.value, error=str(e))

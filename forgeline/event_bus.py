"""
Execution event stream.

Every delegation gets a trace id. Phases emit ExecutionEvents which are
persisted (append-only) and broadcast to in-process subscribers such as
the CLI's live view.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from forgeline.store import StateStore

EventLevel = Literal["debug", "info", "warn", "error"]


class ExecutionEvent(BaseModel):
    id: int | None = None
    trace_id: str
    agent: str
    event_type: str
    phase: str | None = None
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    level: EventLevel = "info"
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EventBus:
    """A lightweight, synchronous event bus for pipeline observability."""

    def __init__(self):
        self._subscribers: list[Callable[[ExecutionEvent], None]] = []

    def subscribe(self, callback: Callable[[ExecutionEvent], None]) -> None:
        """Register a callback to be executed when an event is published."""
        self._subscribers.append(callback)

    def publish(self, event: ExecutionEvent) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber must not take the pipeline down with it
                logger.warning(f"[EVENTS] Subscriber failed on {event.event_type}: {e}")

    def emit(self, trace_id: str, agent: str, event_type: str, message: str, **fields: Any) -> ExecutionEvent:
        """Construct and broadcast an ExecutionEvent to all subscribers."""
        event = ExecutionEvent(
            trace_id=trace_id,
            agent=agent,
            event_type=event_type,
            message=message,
            **fields,
        )
        self.publish(event)
        return event


class ExecutionEventEmitter:
    """
    Trace-scoped emitter. Persists each event, then broadcasts it.

    Persistence errors are logged and dropped: losing an event is
    acceptable, failing a delegation because of one is not.
    """

    def __init__(self, store: StateStore | None, trace_id: str, bus: EventBus | None = None):
        self.store = store
        self.trace_id = trace_id
        self.bus = bus

    def emit(
        self,
        agent: str,
        event_type: str,
        message: str,
        phase: str | None = None,
        metadata: dict[str, Any] | None = None,
        level: EventLevel = "info",
    ) -> None:
        event = ExecutionEvent(
            trace_id=self.trace_id,
            agent=agent,
            event_type=event_type,
            phase=phase,
            message=message,
            metadata=metadata or {},
            level=level,
        )
        if self.store is not None:
            try:
                event.id = self.store.append_event(
                    self.trace_id, agent, event_type, message,
                    phase=phase, metadata=metadata, level=level,
                )
            except Exception as e:
                logger.warning(f"[EVENTS] Failed to persist {event_type} for trace {self.trace_id}: {e}")
        if self.bus is not None:
            self.bus.publish(event)

    def info(self, agent: str, event_type: str, message: str, **kwargs: Any) -> None:
        self.emit(agent, event_type, message, level="info", **kwargs)

    def warn(self, agent: str, event_type: str, message: str, **kwargs: Any) -> None:
        self.emit(agent, event_type, message, level="warn", **kwargs)

    def error(self, agent: str, event_type: str, message: str, **kwargs: Any) -> None:
        self.emit(agent, event_type, message, level="error", **kwargs)

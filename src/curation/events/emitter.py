"""Event emitter implementations for curation observability.

Leases, the state engine, gates, the retry loop and the progress
aggregator all publish CurationEvents through an EventEmitter. Which sinks
receive them (log records, Prometheus metrics, or both) is decided once,
at wiring time, by create_event_emitter().
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.curation.events.models import CurationEvent, EventType


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the curation core.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for curation event emitters.

    Implementations should be async-safe and must not let a sink failure
    propagate into pipeline processing.
    """

    @abstractmethod
    async def emit(self, event: CurationEvent) -> None:
        """Emit a curation event.

        Args:
            event: The event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at a level chosen by event type: rejections,
    exhausted retries and errors are louder than routine transitions.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._levels = {
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.ITEM_APPROVED: logging.INFO,
            EventType.ITEM_DEPRECATED: logging.INFO,
            EventType.GATE_EVALUATED: logging.DEBUG,
            EventType.RETRY_SCHEDULED: logging.INFO,
            EventType.PIPELINE_STATUS_CHANGED: logging.INFO,
            EventType.TRANSFORMATION_COMPLETED: logging.INFO,
            EventType.GATE_FAILED: logging.WARNING,
            EventType.ITEM_REJECTED: logging.WARNING,
            EventType.LEASE_RECLAIMED: logging.WARNING,
            EventType.RETRY_EXHAUSTED: logging.WARNING,
            EventType.TRANSFORMATION_FAILED: logging.ERROR,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: CurationEvent) -> None:
        """Emit event as a structured log entry."""
        log_level = self._levels.get(event.event_type, logging.INFO)

        self._logger.log(
            log_level,
            "Curation event: %s for %s:%s",
            event.event_type.value,
            event.entity_type,
            event.entity_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans each event out to several sinks.

    A sink that raises is logged and skipped so the remaining sinks still
    see the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._sinks: List[EventEmitter] = list(emitters or [])

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._sinks)

    async def emit(self, event: CurationEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s dropped %s: %s",
                    type(sink).__name__,
                    event.event_type.value,
                    e,
                    extra={
                        "sink": type(sink).__name__,
                        "event_type": event.event_type.value,
                        "entity_id": event.entity_id,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.error(
                    "Event sink %s failed to close: %s",
                    type(sink).__name__,
                    e,
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: CurationEvent) -> None:
        pass


class RecordingEventEmitter(EventEmitter):
    """Event emitter that keeps emitted events in memory.

    Used by the in-memory development wiring and by tests to inspect
    what the core reported.
    """

    def __init__(self) -> None:
        self.events: List[CurationEvent] = []

    async def emit(self, event: CurationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[CurationEvent]:
        """Return recorded events of a single type, in emission order."""
        return [e for e in self.events if e.event_type == event_type]


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for the configured sinks (CURATION_EVENT_SINKS).

    Sink names may be given as EventSinkType members or plain strings.
    With no sinks the core still logs its events.

    Raises:
        ValueError: If a sink name is unknown.

    Example:
        >>> emitter = create_event_emitter(["logging", "metrics"])
        >>> [type(e).__name__ for e in emitter.emitters]
        ['LoggingEventEmitter', 'MetricsEventEmitter']
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    sinks: List[EventEmitter] = []
    for name in sink_types:
        sink_type = EventSinkType(name)
        if sink_type == EventSinkType.METRICS:
            # metrics.py imports EventEmitter from this module
            from src.curation.events.metrics import MetricsEventEmitter
            sinks.append(MetricsEventEmitter())
        else:
            sinks.append(LoggingEventEmitter(logger_name=logger_name))

    return sinks[0] if len(sinks) == 1 else CompositeEventEmitter(sinks)

"""Curation event emission and metrics.

Emitters:
- EventEmitter: Base class every sink implements
- LoggingEventEmitter: One log record per event, level by event type
- MetricsEventEmitter: Updates the curation Prometheus metrics
- CompositeEventEmitter: Fans out to several sinks, isolating failures
- NullEventEmitter: Default when nothing is wired
- RecordingEventEmitter: In-memory list for tests and local runs

Metrics:
- CurationMetrics: The counters, histogram and gauge behind /metrics
- get_metrics: Process-wide instance, or a fresh one for a given registry
- generate_metrics_output: Exposition text for /metrics
"""

from src.curation.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    RecordingEventEmitter,
    create_event_emitter,
)
from src.curation.events.metrics import (
    CurationMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.curation.events.models import CurationEvent, EventType

__all__ = [
    # Event models
    "EventType",
    "CurationEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "RecordingEventEmitter",
    # Metrics
    "CurationMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]

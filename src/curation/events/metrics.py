"""Prometheus metrics for curation observability.

Metrics are exposed at the `/metrics` endpoint of the ops app.

Metrics Defined:
- curation_state_transitions_total: Counter of lifecycle transitions
- curation_items_rejected_total: Counter of permanent rejections
- curation_items_approved_total: Counter of approvals by approval type
- curation_gate_results_total: Counter of gate results by gate and status
- curation_gate_run_duration_seconds: Histogram of full gate runs
- curation_retries_total: Counter of scheduled and exhausted retries
- curation_leases_reclaimed_total: Counter of reclaimed stale leases
- curation_transformations_total: Counter of transformation jobs by result
- curation_pipelines_by_status: Gauge of pipelines per aggregated status
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.curation.events.emitter import EventEmitter
from src.curation.events.models import CurationEvent, EventType


logger = logging.getLogger(__name__)


# Gate runs are mostly fast checks; the tail covers similarity scans
DEFAULT_DURATION_BUCKETS = (
    0.005,
    0.01,
    0.05,
    0.1,
    0.5,
    1.0,
    5.0,
    30.0,
)


# These match PipelineStatus enum values from progress/models.py
PIPELINE_STATUSES = (
    "pending",
    "processing",
    "completed",
    "failed",
    "cancelled",
)


class CurationMetrics:
    """Container for all curation Prometheus metrics.

    Supports custom registries so tests can create isolated instances.

    Example:
        >>> metrics = CurationMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("utterance", "draft", "candidate")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.state_transitions_total = Counter(
            "curation_state_transitions_total",
            "Total number of item lifecycle transitions",
            labelnames=["item_type", "from_state", "to_state"],
            registry=self.registry,
        )

        self.items_rejected_total = Counter(
            "curation_items_rejected_total",
            "Total number of items permanently rejected",
            labelnames=["item_type"],
            registry=self.registry,
        )

        self.items_approved_total = Counter(
            "curation_items_approved_total",
            "Total number of items approved",
            labelnames=["item_type", "approval_type"],
            registry=self.registry,
        )

        self.gate_results_total = Counter(
            "curation_gate_results_total",
            "Total number of quality gate results",
            labelnames=["gate_name", "status"],
            registry=self.registry,
        )

        self.gate_run_duration_seconds = Histogram(
            "curation_gate_run_duration_seconds",
            "Time spent evaluating a full ordered gate run",
            labelnames=["entity_type"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.retries_total = Counter(
            "curation_retries_total",
            "Regeneration retries by outcome",
            labelnames=["item_type", "outcome"],
            registry=self.registry,
        )

        self.leases_reclaimed_total = Counter(
            "curation_leases_reclaimed_total",
            "Total number of stale work leases reclaimed",
            registry=self.registry,
        )

        self.transformations_total = Counter(
            "curation_transformations_total",
            "Transformation jobs by result",
            labelnames=["result"],
            registry=self.registry,
        )

        self.pipelines_by_status = Gauge(
            "curation_pipelines_by_status",
            "Current number of pipelines in each aggregated status",
            labelnames=["status"],
            registry=self.registry,
        )

        for status in PIPELINE_STATUSES:
            self.pipelines_by_status.labels(status=status).set(0)

    def record_transition(self, item_type: str, from_state: str, to_state: str) -> None:
        self.state_transitions_total.labels(
            item_type=item_type,
            from_state=from_state,
            to_state=to_state,
        ).inc()

    def record_gate_result(self, gate_name: str, passed: bool) -> None:
        status = "passed" if passed else "failed"
        self.gate_results_total.labels(gate_name=gate_name, status=status).inc()

    def move_pipeline_status(self, from_status: Optional[str], to_status: str) -> None:
        """Move one pipeline between status buckets of the gauge.

        Args:
            from_status: Previous status, or None for a new pipeline.
            to_status: New status.
        """
        if from_status in PIPELINE_STATUSES:
            self.pipelines_by_status.labels(status=from_status).dec()
        if to_status in PIPELINE_STATUSES:
            self.pipelines_by_status.labels(status=to_status).inc()


_default_metrics: Optional[CurationMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> CurationMetrics:
    """Get or create the curation metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return CurationMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = CurationMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Each event type maps onto one metric; event types with no metric are
    ignored. Metric update failures are logged, never raised.
    """

    def __init__(
        self,
        metrics: Optional[CurationMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> CurationMetrics:
        return self._metrics

    async def emit(self, event: CurationEvent) -> None:
        """Update metrics based on the curation event."""
        try:
            self._dispatch(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "entity_id": event.entity_id,
                    "error": str(e),
                },
            )

    def _dispatch(self, event: CurationEvent) -> None:
        details = event.details
        event_type = event.event_type

        if event_type == EventType.STATE_TRANSITION:
            self._metrics.record_transition(
                event.entity_type,
                str(details.get("from_state", "unknown")),
                str(details.get("to_state", "unknown")),
            )
        elif event_type == EventType.ITEM_REJECTED:
            self._metrics.items_rejected_total.labels(item_type=event.entity_type).inc()
        elif event_type == EventType.ITEM_APPROVED:
            self._metrics.items_approved_total.labels(
                item_type=event.entity_type,
                approval_type=str(details.get("approval_type", "unknown")),
            ).inc()
        elif event_type == EventType.GATE_EVALUATED:
            for gate_name, passed in details.get("gate_statuses", {}).items():
                self._metrics.record_gate_result(gate_name, bool(passed))
            duration = details.get("duration_seconds")
            if duration is not None:
                self._metrics.gate_run_duration_seconds.labels(
                    entity_type=event.entity_type,
                ).observe(float(duration))
        elif event_type == EventType.RETRY_SCHEDULED:
            self._metrics.retries_total.labels(
                item_type=event.entity_type, outcome="scheduled"
            ).inc()
        elif event_type == EventType.RETRY_EXHAUSTED:
            self._metrics.retries_total.labels(
                item_type=event.entity_type, outcome="exhausted"
            ).inc()
        elif event_type == EventType.LEASE_RECLAIMED:
            self._metrics.leases_reclaimed_total.inc()
        elif event_type == EventType.PIPELINE_STATUS_CHANGED:
            self._metrics.move_pipeline_status(
                details.get("from_status"),
                str(details.get("to_status")),
            )
        elif event_type == EventType.TRANSFORMATION_COMPLETED:
            self._metrics.transformations_total.labels(result="completed").inc()
        elif event_type == EventType.TRANSFORMATION_FAILED:
            self._metrics.transformations_total.labels(result="failed").inc()

"""Unit tests for event emitters and Prometheus metrics."""

import asyncio
import logging

import pytest
from prometheus_client import CollectorRegistry

from src.curation.events import (
    CompositeEventEmitter,
    CurationEvent,
    EventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    RecordingEventEmitter,
    create_event_emitter,
    generate_metrics_output,
)


def run_async(coro):
    return asyncio.run(coro)


class FailingEmitter(EventEmitter):
    async def emit(self, event: CurationEvent) -> None:
        raise RuntimeError("sink down")

    async def close(self) -> None:
        raise RuntimeError("close failed")


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def emitter(registry):
    return MetricsEventEmitter(registry=registry)


def event(event_type: EventType, entity_type: str = "utterance", **details) -> CurationEvent:
    return CurationEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id="u-1",
        details=details,
    )


class TestMetricsEventEmitter:
    def test_transition_increments_counter(self, emitter, registry):
        run_async(
            emitter.emit(
                event(EventType.STATE_TRANSITION, from_state="draft", to_state="candidate")
            )
        )

        value = registry.get_sample_value(
            "curation_state_transitions_total",
            {"item_type": "utterance", "from_state": "draft", "to_state": "candidate"},
        )
        assert value == 1.0

    def test_gate_run_records_each_gate_and_duration(self, emitter, registry):
        run_async(
            emitter.emit(
                event(
                    EventType.GATE_EVALUATED,
                    gate_statuses={"orthography": True, "cefr_consistency": False},
                    duration_seconds=0.02,
                )
            )
        )

        assert registry.get_sample_value(
            "curation_gate_results_total",
            {"gate_name": "orthography", "status": "passed"},
        ) == 1.0
        assert registry.get_sample_value(
            "curation_gate_results_total",
            {"gate_name": "cefr_consistency", "status": "failed"},
        ) == 1.0
        assert registry.get_sample_value(
            "curation_gate_run_duration_seconds_count", {"entity_type": "utterance"}
        ) == 1.0

    def test_retry_outcomes_are_counted_separately(self, emitter, registry):
        run_async(emitter.emit(event(EventType.RETRY_SCHEDULED)))
        run_async(emitter.emit(event(EventType.RETRY_SCHEDULED)))
        run_async(emitter.emit(event(EventType.RETRY_EXHAUSTED)))

        labels = {"item_type": "utterance"}
        assert registry.get_sample_value(
            "curation_retries_total", {**labels, "outcome": "scheduled"}
        ) == 2.0
        assert registry.get_sample_value(
            "curation_retries_total", {**labels, "outcome": "exhausted"}
        ) == 1.0

    def test_pipeline_gauge_follows_status_changes(self, emitter, registry):
        def gauge(status):
            return registry.get_sample_value(
                "curation_pipelines_by_status", {"status": status}
            )

        def change(from_status, to_status):
            run_async(
                emitter.emit(
                    event(
                        EventType.PIPELINE_STATUS_CHANGED,
                        "pipeline",
                        from_status=from_status,
                        to_status=to_status,
                    )
                )
            )

        change(None, "pending")
        assert gauge("pending") == 1.0

        change("pending", "processing")
        assert gauge("pending") == 0.0
        assert gauge("processing") == 1.0
        assert gauge("completed") == 0.0

    def test_unmapped_events_are_ignored(self, emitter):
        run_async(emitter.emit(event(EventType.ERROR)))

    def test_metrics_output_is_prometheus_text(self, emitter, registry):
        run_async(emitter.emit(event(EventType.LEASE_RECLAIMED, "work")))

        output = generate_metrics_output(registry).decode()
        assert "curation_leases_reclaimed_total 1.0" in output


class TestCompositeEventEmitter:
    def test_failing_sink_does_not_stop_others(self):
        recorder = RecordingEventEmitter()
        composite = CompositeEventEmitter([FailingEmitter(), recorder])

        run_async(composite.emit(event(EventType.ITEM_REJECTED)))

        assert [e.event_type for e in recorder.events] == [EventType.ITEM_REJECTED]

    def test_close_failures_are_swallowed(self):
        composite = CompositeEventEmitter([FailingEmitter()])
        run_async(composite.close())


class TestLoggingEventEmitter:
    def test_rejections_log_at_warning(self, caplog):
        emitter = LoggingEventEmitter(logger_name="test.curation.events")

        with caplog.at_level(logging.DEBUG, logger="test.curation.events"):
            run_async(emitter.emit(event(EventType.ITEM_REJECTED, reason="unsafe")))

        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert "item_rejected" in record.getMessage()


class TestCreateEventEmitter:
    def test_no_sinks_defaults_to_logging(self):
        assert isinstance(create_event_emitter([]), LoggingEventEmitter)

    def test_single_sink_is_returned_directly(self):
        assert isinstance(create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter)

    def test_sink_names_are_accepted(self):
        emitter = create_event_emitter(["logging", "metrics"])

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [LoggingEventEmitter, MetricsEventEmitter]

    def test_unknown_sink_is_refused(self):
        with pytest.raises(ValueError):
            create_event_emitter(["kinesis"])

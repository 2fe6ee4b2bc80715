"""Unit tests for topic mappings, transformation jobs and the HTTP client."""

import asyncio
import json
from typing import List

import httpx
import pytest

from src.curation.events.emitter import RecordingEventEmitter
from src.curation.events.models import EventType
from src.curation.feedback.models import FeedbackAction, FeedbackCategory, OperatorFeedback
from src.curation.leases import InMemoryLeaseRepository, WorkLeaseManager, mapping_work_id
from src.curation.mapping import (
    ExternalServiceError,
    HttpTransformationClient,
    InMemoryMappingRepository,
    InMemoryTransformationJobRepository,
    JobStatus,
    MappingNotFoundError,
    MappingService,
    MappingStateError,
    MappingStatus,
    TopicMapping,
    TransformationResult,
    TransformationService,
)
from src.curation.state import (
    CEFRLevel,
    CurationItem,
    InMemoryItemRepository,
    ItemType,
    LifecycleState,
    StateTransitionEngine,
)


def run_async(coro):
    return asyncio.run(coro)


class FakeTransformationClient:
    """Fails with ExternalServiceError a set number of times, then succeeds."""

    def __init__(self, failures: int = 0, parsed_result=None):
        self.failures = failures
        self.calls = 0
        self.parsed_result = parsed_result or {
            "language": "es",
            "level": "A1",
            "items": [
                {"item_type": "utterance", "text": "Buenos días"},
                {"item_type": "meaning", "text": "día", "translation": "day"},
            ],
        }

    async def transform(self, mapping: TopicMapping) -> TransformationResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise ExternalServiceError("service unavailable", status_code=503)
        return TransformationResult(
            parsed_result=self.parsed_result,
            tokens_in=1200,
            tokens_out=300,
            cost_usd=0.0042,
            duration_ms=850,
        )


@pytest.fixture
def mapping_service():
    return MappingService(
        InMemoryMappingRepository(), auto_map_threshold=0.8, min_confidence=0.3
    )


def make_transformation(client, max_retries: int = 3, emitter=None):
    mappings = InMemoryMappingRepository()
    engine = StateTransitionEngine(InMemoryItemRepository())
    leases = WorkLeaseManager(InMemoryLeaseRepository())
    service = TransformationService(
        mappings,
        InMemoryTransformationJobRepository(),
        engine,
        leases,
        client,
        max_retries=max_retries,
        backoff_seconds=0,
        backoff_max_seconds=0,
        event_emitter=emitter,
    )
    return service, MappingService(mappings), engine, leases


class TestMappingService:
    def test_confident_mapping_is_auto_mapped(self, mapping_service):
        mapping = run_async(mapping_service.record_mapping("chunk-1", "greetings", 0.92))
        assert mapping.status == MappingStatus.AUTO_MAPPED

    def test_uncertain_mapping_awaits_review(self, mapping_service):
        mapping = run_async(mapping_service.record_mapping("chunk-1", "greetings", 0.5))
        assert mapping.status == MappingStatus.PENDING

    def test_low_confidence_mapping_is_discarded(self, mapping_service):
        assert run_async(mapping_service.record_mapping("chunk-1", "greetings", 0.1)) is None
        assert run_async(mapping_service.list_mappings()) == []

    def test_out_of_range_confidence_is_refused(self, mapping_service):
        with pytest.raises(ValueError):
            run_async(mapping_service.record_mapping("chunk-1", "greetings", 1.5))

    def test_confirm_then_confirm_again_fails(self, mapping_service):
        async def test():
            mapping = await mapping_service.record_mapping("chunk-1", "greetings", 0.5)
            confirmed = await mapping_service.confirm_mapping(mapping.id, "op-1")
            assert confirmed.status == MappingStatus.CONFIRMED
            assert confirmed.confirmed_by == "op-1"

            with pytest.raises(MappingStateError) as exc_info:
                await mapping_service.reject_mapping(mapping.id)
            assert exc_info.value.status == MappingStatus.CONFIRMED

        run_async(test())

    def test_missing_mapping_raises(self, mapping_service):
        with pytest.raises(MappingNotFoundError):
            run_async(mapping_service.confirm_mapping("missing", "op-1"))

    def test_remapping_keeps_reviewed_status(self, mapping_service):
        async def test():
            mapping = await mapping_service.record_mapping("chunk-1", "greetings", 0.5)
            await mapping_service.reject_mapping(mapping.id, "op-1")

            again = await mapping_service.record_mapping("chunk-1", "greetings", 0.95)
            assert again.id == mapping.id
            assert again.status == MappingStatus.REJECTED
            assert again.confidence_score == 0.95

        run_async(test())

    def test_manual_mapping_overrides_review(self, mapping_service):
        async def test():
            mapping = await mapping_service.record_mapping("chunk-1", "greetings", 0.5)
            await mapping_service.reject_mapping(mapping.id, "op-1")

            manual = await mapping_service.manual_mapping("chunk-1", "greetings", "op-2")
            assert manual.id == mapping.id
            assert manual.status == MappingStatus.MANUAL
            assert manual.confidence_score == 1.0
            assert manual.confirmed_by == "op-2"

        run_async(test())

    def test_bulk_confirm_skips_reviewed_mappings(self, mapping_service):
        async def test():
            a = await mapping_service.record_mapping("chunk-1", "greetings", 0.5)
            b = await mapping_service.record_mapping("chunk-2", "greetings", 0.9)
            c = await mapping_service.record_mapping("chunk-3", "greetings", 0.5)
            await mapping_service.reject_mapping(c.id)

            confirmed = await mapping_service.bulk_confirm([a.id, b.id, c.id, "missing"], "op-1")
            assert sorted(m.id for m in confirmed) == sorted([a.id, b.id])

        run_async(test())


class TestTransformationService:
    def test_transformation_creates_drafts(self):
        emitter = RecordingEventEmitter()
        client = FakeTransformationClient()
        service, mappings, engine, _ = make_transformation(client, emitter=emitter)

        async def test():
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.9)
            job = await service.run(mapping.id)

            assert job.status == JobStatus.COMPLETED
            assert job.item_ids == [f"{job.id}-0", f"{job.id}-1"]
            assert job.tokens_input == 1200
            assert job.cost_usd == 0.0042

            utterance = await engine.require(f"{job.id}-0", ItemType.UTTERANCE)
            assert utterance.state == LifecycleState.DRAFT
            assert utterance.language == "es"
            assert utterance.level == CEFRLevel.A1
            assert utterance.data["text"] == "Buenos días"
            assert "item_type" not in utterance.data
            assert utterance.data["source"]["chunk_id"] == "chunk-1"

            meaning = await engine.require(f"{job.id}-1", ItemType.MEANING)
            assert meaning.data["translation"] == "day"

            assert len(emitter.of_type(EventType.TRANSFORMATION_COMPLETED)) == 1

        run_async(test())

    def test_transient_failures_are_retried(self):
        client = FakeTransformationClient(failures=2)
        service, mappings, _, _ = make_transformation(client, max_retries=3)

        async def test():
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.9)
            job = await service.run(mapping.id)

            assert job.status == JobStatus.COMPLETED
            assert job.retry_count == 2
            assert client.calls == 3

        run_async(test())

    def test_job_fails_after_retries_are_exhausted(self):
        emitter = RecordingEventEmitter()
        client = FakeTransformationClient(failures=10)
        service, mappings, engine, _ = make_transformation(
            client, max_retries=2, emitter=emitter
        )

        async def test():
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.9)
            job = await service.run(mapping.id)

            assert job.status == JobStatus.FAILED
            assert "service unavailable" in job.error_message
            assert client.calls == 3
            assert job.item_ids == []
            assert await engine.list_by_state(LifecycleState.DRAFT) == []
            assert len(emitter.of_type(EventType.TRANSFORMATION_FAILED)) == 1

            (stored,) = await service.list_jobs(mapping.id)
            assert stored.status == JobStatus.FAILED

        run_async(test())

    def test_leased_mapping_is_not_transformed(self):
        client = FakeTransformationClient()
        service, mappings, _, leases = make_transformation(client)

        async def test():
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.9)
            await leases.acquire(mapping_work_id(mapping.id))

            assert await service.run(mapping.id) is None
            assert client.calls == 0

        run_async(test())

    def test_pending_mapping_cannot_be_transformed(self):
        client = FakeTransformationClient()
        service, _, _, _ = make_transformation(client)

        async def test():
            mappings = MappingService(
                service.mapping_repository, auto_map_threshold=0.8, min_confidence=0.3
            )
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.5)

            with pytest.raises(MappingStateError):
                await service.run(mapping.id)
            # The lease is released on error
            assert not await service.lease_manager.is_leased(mapping_work_id(mapping.id))

        run_async(test())

    def test_malformed_entries_are_skipped(self):
        client = FakeTransformationClient(
            parsed_result={
                "items": [
                    {"item_type": "poem", "text": "???"},
                    {"item_type": "exercise", "text": "Fill in", "level": "Z9"},
                    {"item_type": "exercise", "text": "Complete", "level": "A2"},
                    "not an object",
                ]
            }
        )
        service, mappings, engine, _ = make_transformation(client)

        async def test():
            mapping = await mappings.record_mapping("chunk-1", "greetings", 0.9)
            job = await service.run(mapping.id)

            assert job.item_ids == [f"{job.id}-2"]
            item = await engine.require(f"{job.id}-2", ItemType.EXERCISE)
            assert item.level == CEFRLevel.A2

        run_async(test())


class TestHttpTransformationClient:
    def _client(self, handler, max_retries: int = 2) -> HttpTransformationClient:
        return HttpTransformationClient(
            base_url="http://transformer:8000",
            max_retries=max_retries,
            base_delay=0.0,
            max_delay=0.0,
            transport=httpx.MockTransport(handler),
        )

    def _mapping(self) -> TopicMapping:
        return TopicMapping(
            chunk_id="chunk-1",
            topic_id="greetings",
            confidence_score=0.9,
            status=MappingStatus.AUTO_MAPPED,
            language="es",
            level=CEFRLevel.A1,
        )

    def test_transform_posts_mapping_and_parses_result(self):
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "parsed_result": {"items": [{"text": "Hola"}]},
                    "tokens_in": 10,
                    "tokens_out": 5,
                    "cost_usd": 0.001,
                    "duration_ms": 42,
                },
            )

        async def test():
            async with self._client(handler) as client:
                result = await client.transform(self._mapping())

            assert result.items == [{"text": "Hola"}]
            assert result.tokens_in == 10
            assert requests[0].url.path == "/transform"
            payload = json.loads(requests[0].content)
            assert payload["topic_id"] == "greetings"
            assert payload["level"] == "A1"

        run_async(test())

    def test_retryable_status_is_retried(self):
        responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, json={})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        async def test():
            async with self._client(handler) as client:
                result = await client.transform(self._mapping())
            assert result.items == []
            assert responses == []

        run_async(test())

    def test_retries_are_bounded(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(502)

        async def test():
            async with self._client(handler, max_retries=1) as client:
                with pytest.raises(ExternalServiceError) as exc_info:
                    await client.transform(self._mapping())
            assert exc_info.value.status_code == 502
            assert len(calls) == 2

        run_async(test())

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"detail": "bad mapping"})

        async def test():
            async with self._client(handler) as client:
                with pytest.raises(ExternalServiceError) as exc_info:
                    await client.transform(self._mapping())
            assert exc_info.value.status_code == 400
            assert len(calls) == 1

        run_async(test())

    def test_connection_errors_are_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"parsed_result": {}})

        async def test():
            async with self._client(handler) as client:
                await client.transform(self._mapping())
            assert len(attempts) == 2

        run_async(test())

    def test_regenerate_returns_new_data(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert request.url.path == "/regenerate"
            assert body["feedback"]["comment"] == "simpler"
            return httpx.Response(200, json={"data": {"text": "Hola, amigo"}})

        item = CurationItem(
            item_id="u-1",
            item_type=ItemType.UTTERANCE,
            data={"text": "Salutaciones cordiales"},
            language="es",
            level=CEFRLevel.A1,
        )
        feedback = OperatorFeedback(
            item_id="u-1",
            item_type=ItemType.UTTERANCE,
            category=FeedbackCategory.WRONG_LEVEL,
            comment="simpler",
            action=FeedbackAction.REVISE,
        )

        async def test():
            async with self._client(handler) as client:
                data = await client.regenerate(item, feedback)
            assert data == {"text": "Hola, amigo"}

        run_async(test())

    def test_regenerate_without_data_fails(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": "nope"})

        item = CurationItem(item_id="u-1", item_type=ItemType.UTTERANCE)

        async def test():
            async with self._client(handler) as client:
                with pytest.raises(ExternalServiceError):
                    await client.regenerate(item, None)

        run_async(test())

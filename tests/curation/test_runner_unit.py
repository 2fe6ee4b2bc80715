"""Unit tests for the curation runner."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.curation.events.emitter import RecordingEventEmitter
from src.curation.events.models import EventType
from src.curation.feedback import InMemoryFeedbackRepository, RetryFeedbackLoop
from src.curation.feedback.models import FeedbackCategory
from src.curation.gates import (
    ApprovedItemIndex,
    InMemoryGateResultRepository,
    ItemPrerequisiteLookup,
    QualityGateEngine,
    create_default_registry,
)
from src.curation.leases import InMemoryLeaseRepository, WorkLeaseManager, item_work_id
from src.curation.runner import CurationRunner
from src.curation.state import (
    ApprovalType,
    CEFRLevel,
    InMemoryItemRepository,
    ItemType,
    LifecycleState,
    StateTransitionEngine,
)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def emitter():
    return RecordingEventEmitter()


@pytest.fixture
def runner(emitter):
    items = InMemoryItemRepository()
    engine = StateTransitionEngine(items, event_emitter=emitter)
    leases = WorkLeaseManager(InMemoryLeaseRepository())
    gate_engine = QualityGateEngine(
        create_default_registry(
            ApprovedItemIndex(items),
            prerequisite_lookup=ItemPrerequisiteLookup(items),
        ),
        InMemoryGateResultRepository(),
        event_emitter=emitter,
    )
    feedback_loop = RetryFeedbackLoop(
        engine,
        InMemoryFeedbackRepository(),
        leases,
        event_emitter=emitter,
    )
    return CurationRunner(
        engine,
        gate_engine,
        feedback_loop,
        leases,
        poll_interval_seconds=0.01,
        auto_approve=True,
        event_emitter=emitter,
    )


class TestRunOnce:
    def test_clean_draft_is_approved_in_one_pass(self, runner):
        async def test():
            await runner.engine.create(
                "u-1",
                ItemType.UTTERANCE,
                {"text": "Hola, ¿cómo estás?"},
                language="es",
                level=CEFRLevel.A1,
            )

            result = await runner.run_once()

            assert result.promoted == 1
            assert result.validated == 1
            assert result.approved == 1
            assert result.errors == 0

            item = await runner.engine.require("u-1", ItemType.UTTERANCE)
            assert item.state == LifecycleState.APPROVED
            approval = await runner.engine.repository.get_approval("u-1", ItemType.UTTERANCE)
            assert approval.approval_type == ApprovalType.AUTOMATIC

        run_async(test())

    def test_unsafe_candidate_is_rejected(self, runner, emitter):
        async def test():
            await runner.engine.create(
                "u-1",
                ItemType.UTTERANCE,
                {"text": "No torture al perro"},
                language="es",
                level=CEFRLevel.A1,
            )

            result = await runner.run_once()

            assert result.rejected == 1
            item = await runner.engine.require("u-1", ItemType.UTTERANCE)
            assert item.rejected
            assert item.state == LifecycleState.CANDIDATE
            assert len(emitter.of_type(EventType.ITEM_REJECTED)) == 1

        run_async(test())

    def test_wrong_level_candidate_is_sent_back_once(self, runner):
        async def test():
            await runner.engine.create(
                "g-1",
                ItemType.GRAMMAR_RULE,
                {"text": "Ojalá que llueva", "grammar_topic": "Present subjunctive"},
                language="es",
                level=CEFRLevel.A1,
            )

            first = await runner.run_once()
            assert first.sent_back == 1

            feedback = await runner.feedback_loop.repository.list_feedback(
                "g-1", ItemType.GRAMMAR_RULE
            )
            assert [f.category for f in feedback] == [FeedbackCategory.WRONG_LEVEL]
            assert await runner.feedback_loop.has_open_retry("g-1", ItemType.GRAMMAR_RULE)

            # Awaiting regeneration, so the gates are not re-run
            second = await runner.run_once()
            assert second.sent_back == 0
            assert second.skipped == 1

            history = await runner.gate_engine.history(ItemType.GRAMMAR_RULE, "g-1")
            assert len(history) == 3

        run_async(test())

    def test_leased_candidate_is_skipped(self, runner):
        async def test():
            await runner.engine.create(
                "u-1", ItemType.UTTERANCE, {"text": "Hola"}, language="es", level=CEFRLevel.A1
            )
            await runner.engine.advance("u-1", ItemType.UTTERANCE)
            await runner.lease_manager.acquire(item_work_id("utterance", "u-1"))

            result = await runner.run_once()

            assert result.skipped == 1
            item = await runner.engine.require("u-1", ItemType.UTTERANCE)
            assert item.state == LifecycleState.CANDIDATE

        run_async(test())


class TestRunForever:
    def test_stop_ends_the_loop(self, runner):
        async def test():
            task = asyncio.create_task(runner.run_forever())
            await asyncio.sleep(0.05)
            runner.stop()
            await asyncio.wait_for(task, timeout=1.0)
            assert not runner.running

        run_async(test())

    def test_failed_pass_is_reported_and_loop_continues(self, runner, emitter):
        runner.run_once = AsyncMock(side_effect=RuntimeError("database unavailable"))

        async def test():
            task = asyncio.create_task(runner.run_forever())
            await asyncio.sleep(0.05)
            runner.stop()
            await asyncio.wait_for(task, timeout=1.0)

        run_async(test())

        assert runner.run_once.await_count >= 2
        errors = emitter.of_type(EventType.ERROR)
        assert errors
        assert errors[0].details["error_message"] == "database unavailable"

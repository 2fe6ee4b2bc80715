"""Curation runner driving items through the lifecycle.

One pass (run_once) does, in order:
1. Reclaim stale work leases
2. Process due regeneration retries
3. Promote DRAFT items to CANDIDATE
4. Evaluate quality gates on CANDIDATE items and move them to VALIDATED,
   send them back for regeneration, or reject them
5. Auto-approve VALIDATED items when enabled

Item-level failures are recorded as data (gate results, feedback,
rejections) and never stop a pass. Lost races with other workers
(ConcurrentModificationError, AlreadyLeasedError) are expected and the
item is simply picked up again later.

Source:
- src/curation/state/machine.py (StateTransitionEngine)
- src/curation/gates/engine.py (QualityGateEngine)
- src/curation/feedback/loop.py (RetryFeedbackLoop)
- src/curation/leases/manager.py (WorkLeaseManager)
"""

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.feedback.loop import RetryFeedbackLoop, RetryLimitExceededError
from src.curation.feedback.models import (
    FeedbackAction,
    FeedbackCategory,
    RetryPassResult,
)
from src.curation.gates.builtin import CEFR_GATE
from src.curation.gates.engine import AttemptCeilingExceededError, QualityGateEngine
from src.curation.gates.models import GateRunOutcome, GateSpec, QualityGateResult
from src.curation.leases.manager import AlreadyLeasedError, WorkLeaseManager
from src.curation.leases.models import item_work_id
from src.curation.state.machine import (
    ConcurrentModificationError,
    StateTransitionEngine,
)
from src.curation.state.models import ApprovalType, CurationItem, LifecycleState


logger = logging.getLogger(__name__)


class RunPassResult(BaseModel):
    """Counts from one runner pass."""

    reclaimed_leases: int = 0
    retries: RetryPassResult = Field(default_factory=RetryPassResult)
    promoted: int = 0
    validated: int = 0
    sent_back: int = 0
    rejected: int = 0
    approved: int = 0
    skipped: int = 0
    errors: int = 0


class CurationRunner:
    """Polls the item store and advances work one pass at a time.

    Attributes:
        engine: Lifecycle state engine.
        gate_engine: Runs quality gates on candidates.
        feedback_loop: Regeneration retries and gate-failure feedback.
        lease_manager: Per-item mutual exclusion between workers.
        gate_specs: Ordered gates every candidate must pass.
        auto_approve: Approve validated items without an operator.

    Example:
        >>> runner = CurationRunner(engine, gate_engine, loop, leases)
        >>> result = await runner.run_once()
        >>> task = asyncio.create_task(runner.run_forever())
        >>> runner.stop()
    """

    def __init__(
        self,
        engine: StateTransitionEngine,
        gate_engine: QualityGateEngine,
        feedback_loop: RetryFeedbackLoop,
        lease_manager: WorkLeaseManager,
        gate_specs: Optional[List[GateSpec]] = None,
        batch_size: int = 50,
        poll_interval_seconds: float = 5.0,
        auto_approve: bool = False,
        lease_stale_after: Optional[timedelta] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.engine = engine
        self.gate_engine = gate_engine
        self.feedback_loop = feedback_loop
        self.lease_manager = lease_manager
        self.gate_specs = gate_specs or [
            GateSpec(name=name) for name in gate_engine.registry.names()
        ]
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.auto_approve = auto_approve
        self.lease_stale_after = lease_stale_after
        self.event_emitter = event_emitter or NullEventEmitter()
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self) -> None:
        """Ask run_forever() to exit after the current pass."""
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Run passes every poll_interval_seconds until stop() is called."""
        self._stop_event.clear()
        logger.info(
            "Curation runner started",
            extra={
                "poll_interval_seconds": self.poll_interval_seconds,
                "gates": [spec.name for spec in self.gate_specs],
                "auto_approve": self.auto_approve,
            },
        )
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("Curation runner pass failed")
                await self._safe_emit(
                    CurationEvent(
                        event_type=EventType.ERROR,
                        entity_type="runner",
                        entity_id="run_once",
                        details={"error_message": str(exc)},
                    )
                )
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Curation runner stopped")

    async def run_once(self) -> RunPassResult:
        result = RunPassResult()

        reclaimed = await self.lease_manager.reclaim_stale(self.lease_stale_after)
        result.reclaimed_leases = len(reclaimed)

        result.retries = await self.feedback_loop.process_due_retries(self.batch_size)

        await self._promote_drafts(result)
        await self._evaluate_candidates(result)

        if self.auto_approve:
            await self._approve_validated(result)

        logger.info("Curation runner pass finished", extra=result.model_dump())
        return result

    async def _promote_drafts(self, result: RunPassResult) -> None:
        drafts = await self.engine.list_by_state(
            LifecycleState.DRAFT, limit=self.batch_size
        )
        for item in drafts:
            if item.rejected:
                continue
            try:
                await self.engine.transition(
                    item.item_id,
                    item.item_type,
                    LifecycleState.CANDIDATE,
                    {"reason": "submitted for review"},
                )
                result.promoted += 1
            except ConcurrentModificationError:
                result.skipped += 1
            except Exception:
                result.errors += 1
                logger.exception(
                    "Failed to promote draft",
                    extra={"item_id": item.item_id, "item_type": item.item_type.value},
                )

    async def _evaluate_candidates(self, result: RunPassResult) -> None:
        candidates = await self.engine.list_by_state(
            LifecycleState.CANDIDATE, limit=self.batch_size
        )
        for item in candidates:
            if item.rejected:
                continue
            try:
                if await self.feedback_loop.has_open_retry(item.item_id, item.item_type):
                    result.skipped += 1
                    continue
                async with self.lease_manager.hold(
                    item_work_id(item.item_type.value, item.item_id)
                ):
                    await self._evaluate_candidate(item, result)
            except (AlreadyLeasedError, ConcurrentModificationError):
                result.skipped += 1
            except Exception:
                result.errors += 1
                logger.exception(
                    "Failed to evaluate candidate",
                    extra={"item_id": item.item_id, "item_type": item.item_type.value},
                )

    async def _evaluate_candidate(self, item: CurationItem, result: RunPassResult) -> None:
        current = await self.engine.get(item.item_id, item.item_type)
        if current is None or current.rejected or current.state != LifecycleState.CANDIDATE:
            result.skipped += 1
            return

        try:
            outcome = await self.gate_engine.evaluate_item(current, self.gate_specs)
        except AttemptCeilingExceededError as e:
            await self.engine.reject(current.item_id, current.item_type, str(e))
            result.rejected += 1
            return

        if outcome.all_passed:
            await self.engine.transition(
                current.item_id,
                current.item_type,
                LifecycleState.VALIDATED,
                {"gates": [r.gate_name for r in outcome.results]},
            )
            result.validated += 1
            return

        await self._handle_gate_failure(current, outcome, result)

    async def _handle_gate_failure(
        self,
        item: CurationItem,
        outcome: GateRunOutcome,
        result: RunPassResult,
    ) -> None:
        failed = outcome.failed_results
        summary = "; ".join(
            f"{r.gate_name}: {r.error_message or 'failed'}" for r in failed
        )

        # Gates that errored say nothing about the content; try again next pass.
        if all("error_type" in r.metadata for r in failed):
            logger.warning(
                "Quality gates errored; leaving candidate for next pass",
                extra={"item_id": item.item_id, "failures": summary},
            )
            result.skipped += 1
            return

        if any(not self._is_retryable(r) for r in failed):
            await self.engine.reject(
                item.item_id,
                item.item_type,
                f"Failed quality gates: {summary}",
            )
            result.rejected += 1
            return

        try:
            await self.feedback_loop.record_feedback(
                item.item_id,
                item.item_type,
                self._category_for(failed),
                f"Failed quality gates: {summary}",
                FeedbackAction.REVISE,
            )
            result.sent_back += 1
        except RetryLimitExceededError:
            result.rejected += 1

    def _is_retryable(self, gate_result: QualityGateResult) -> bool:
        if "error_type" in gate_result.metadata:
            return True
        return self.gate_engine.registry.get(gate_result.gate_name).retryable

    def _category_for(self, failed: List[QualityGateResult]) -> FeedbackCategory:
        if any(r.gate_name == CEFR_GATE for r in failed):
            return FeedbackCategory.WRONG_LEVEL
        return FeedbackCategory.POOR_QUALITY

    async def _approve_validated(self, result: RunPassResult) -> None:
        validated = await self.engine.list_by_state(
            LifecycleState.VALIDATED, limit=self.batch_size
        )
        for item in validated:
            if item.rejected:
                continue
            try:
                await self.engine.approve(
                    item.item_id,
                    item.item_type,
                    ApprovalType.AUTOMATIC,
                    notes="auto-approved by curation runner",
                )
                result.approved += 1
            except ConcurrentModificationError:
                result.skipped += 1
            except Exception:
                result.errors += 1
                logger.exception(
                    "Failed to auto-approve item",
                    extra={"item_id": item.item_id, "item_type": item.item_type.value},
                )

    async def _safe_emit(self, event: CurationEvent) -> None:
        """Emit an event, swallowing exceptions to keep the runner alive."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit curation event",
                extra={"event_type": event.event_type.value},
            )

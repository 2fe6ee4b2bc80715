"""Quality gate evaluation engine.

The engine runs a caller-supplied, ordered list of gates against one
entity and records one attempt-numbered result per gate run.

Attempt numbering: the next attempt for (entity, gate) is 1 + the
highest recorded attempt. The repository computes and inserts it in a
single atomic step; the unique key on
(entity_type, entity_id, gate_name, attempt_number) is the backstop.
Attempts are capped at 10 and exceeding the cap is fatal to the
evaluation, not a gate failure.

A gate that raises or times out is recorded as a failed result with the
error in its metadata; the evaluation carries on as if it had failed.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Protocol, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.gates.builtin import GateRegistry
from src.curation.gates.models import (
    MAX_ATTEMPTS,
    GateCheck,
    GateInput,
    GateRunOutcome,
    GateSpec,
    GateStatus,
    QualityGate,
    QualityGateResult,
)
from src.curation.state.models import CurationItem, ItemType


logger = logging.getLogger(__name__)


class AttemptCeilingExceededError(Exception):
    """Raised when a gate would exceed its maximum attempt number.

    Attributes:
        entity_type: Kind of the evaluated entity.
        entity_id: The evaluated entity.
        gate_name: The gate whose attempts are exhausted.
        max_attempts: The configured ceiling.
    """

    def __init__(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_name: str,
        max_attempts: int,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.gate_name = gate_name
        self.max_attempts = max_attempts
        super().__init__(
            f"Gate {gate_name} exceeded {max_attempts} attempts "
            f"for {entity_type.value}:{entity_id}"
        )


class GateEvaluationError(Exception):
    """A gate raised or timed out while checking an entity.

    Never propagated out of the engine; its message becomes the failed
    result's error_message.
    """

    def __init__(self, gate_name: str, original_error: BaseException):
        self.gate_name = gate_name
        self.original_error = original_error
        if isinstance(original_error, asyncio.TimeoutError):
            message = f"Gate {gate_name} timed out"
        else:
            message = f"Gate {gate_name} raised {type(original_error).__name__}: {original_error}"
        super().__init__(message)


@runtime_checkable
class GateResultRepository(Protocol):
    """Persistence for quality gate results."""

    async def next_attempt_number(
        self, entity_type: ItemType, entity_id: str, gate_name: str
    ) -> int:
        """Return 1 + the highest recorded attempt for (entity, gate)."""
        ...

    async def record_result(
        self, result: QualityGateResult, max_attempts: int = MAX_ATTEMPTS
    ) -> Optional[QualityGateResult]:
        """Assign the next attempt number and insert, atomically.

        The attempt_number on the passed result is ignored.

        Returns:
            The stored result, or None if the next attempt would exceed
            max_attempts.
        """
        ...

    async def list_results(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_name: Optional[str] = None,
    ) -> List[QualityGateResult]:
        """List results ordered by gate name, then attempt number."""
        ...


class QualityGateEngine:
    """Runs ordered quality gates with bounded, numbered attempts.

    Attributes:
        registry: Resolves gate names to gate implementations.
        repository: Stores attempt-numbered results.
        max_attempts: Attempt ceiling per (entity, gate), at most 10.
        gate_timeout_seconds: Per-gate time limit.
    """

    def __init__(
        self,
        registry: GateRegistry,
        repository: GateResultRepository,
        max_attempts: int = MAX_ATTEMPTS,
        gate_timeout_seconds: float = 30.0,
        event_emitter: Optional[EventEmitter] = None,
    ):
        if not 1 <= max_attempts <= MAX_ATTEMPTS:
            raise ValueError(f"max_attempts must be between 1 and {MAX_ATTEMPTS}")
        self.registry = registry
        self.repository = repository
        self.max_attempts = max_attempts
        self.gate_timeout_seconds = gate_timeout_seconds
        self.event_emitter = event_emitter or NullEventEmitter()

    async def evaluate(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_specs: List[GateSpec],
        gate_input: GateInput,
    ) -> GateRunOutcome:
        """Evaluate an entity against an ordered list of gates.

        Args:
            entity_type: Kind of the entity.
            entity_id: The entity being evaluated.
            gate_specs: Gates to run, in order.
            gate_input: Normalized content handed to each gate.

        Returns:
            The outcome with one result per gate that ran.

        Raises:
            ValueError: If gate_specs is empty or repeats a gate.
            UnknownGateError: If a gate name is not registered.
            AttemptCeilingExceededError: If any requested gate has
                already used all its attempts.
        """
        if not gate_specs:
            raise ValueError("gate_specs cannot be empty")

        names = [spec.name for spec in gate_specs]
        if len(set(names)) != len(names):
            raise ValueError("gate_specs cannot repeat a gate")

        gates: Dict[str, QualityGate] = {
            spec.name: self.registry.get(spec.name) for spec in gate_specs
        }

        for spec in gate_specs:
            next_attempt = await self.repository.next_attempt_number(
                entity_type, entity_id, spec.name
            )
            if next_attempt > self.max_attempts:
                logger.error(
                    "Gate attempt ceiling exceeded",
                    extra={
                        "entity_type": entity_type.value,
                        "entity_id": entity_id,
                        "gate_name": spec.name,
                        "max_attempts": self.max_attempts,
                    },
                )
                raise AttemptCeilingExceededError(
                    entity_type, entity_id, spec.name, self.max_attempts
                )

        started = time.monotonic()
        results: List[QualityGateResult] = []
        skipped: List[str] = []

        for index, spec in enumerate(gate_specs):
            check, elapsed_ms = await self._run_gate(gates[spec.name], gate_input)

            result = QualityGateResult(
                entity_type=entity_type,
                entity_id=entity_id,
                gate_name=spec.name,
                status=GateStatus.PASSED if check.passed else GateStatus.FAILED,
                error_message=check.error_message,
                score=check.score,
                metadata=check.details,
                execution_time_ms=elapsed_ms,
            )
            stored = await self.repository.record_result(result, self.max_attempts)
            if stored is None:
                raise AttemptCeilingExceededError(
                    entity_type, entity_id, spec.name, self.max_attempts
                )
            results.append(stored)

            if not stored.passed:
                await self.event_emitter.emit(
                    CurationEvent(
                        event_type=EventType.GATE_FAILED,
                        entity_type=entity_type.value,
                        entity_id=entity_id,
                        details={
                            "gate_name": spec.name,
                            "attempt_number": stored.attempt_number,
                            "error_message": stored.error_message,
                        },
                    )
                )
                if spec.blocking:
                    skipped = [s.name for s in gate_specs[index + 1:]]
                    break

        all_passed = not skipped and all(r.passed for r in results)
        duration = time.monotonic() - started

        logger.info(
            "Evaluated quality gates",
            extra={
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "all_passed": all_passed,
                "gates_run": len(results),
                "skipped": skipped,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.GATE_EVALUATED,
                entity_type=entity_type.value,
                entity_id=entity_id,
                details={
                    "all_passed": all_passed,
                    "gates_run": len(results),
                    "gate_statuses": {r.gate_name: r.passed for r in results},
                    "duration_seconds": duration,
                },
            )
        )

        return GateRunOutcome(
            entity_type=entity_type,
            entity_id=entity_id,
            all_passed=all_passed,
            results=results,
            skipped=skipped,
        )

    async def evaluate_item(
        self, item: CurationItem, gate_specs: List[GateSpec]
    ) -> GateRunOutcome:
        return await self.evaluate(
            item.item_type, item.item_id, gate_specs, GateInput.from_item(item)
        )

    async def _run_gate(self, gate: QualityGate, gate_input: GateInput):
        started = time.monotonic()
        try:
            check = await asyncio.wait_for(
                gate.check(gate_input), timeout=self.gate_timeout_seconds
            )
        except Exception as e:
            error = GateEvaluationError(gate.name, e)
            logger.warning(
                "Quality gate errored",
                extra={
                    "gate_name": gate.name,
                    "entity_id": gate_input.entity_id,
                    "error": str(error),
                },
            )
            check = GateCheck(
                passed=False,
                error_message=str(error),
                details={"error_type": type(e).__name__, "error": str(e)},
            )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return check, elapsed_ms

    async def history(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_name: Optional[str] = None,
    ) -> List[QualityGateResult]:
        return await self.repository.list_results(entity_type, entity_id, gate_name)

    async def latest_results(
        self, entity_type: ItemType, entity_id: str
    ) -> Dict[str, QualityGateResult]:
        """Return the newest result of every gate run on the entity."""
        latest: Dict[str, QualityGateResult] = {}
        for result in await self.repository.list_results(entity_type, entity_id):
            current = latest.get(result.gate_name)
            if current is None or result.attempt_number > current.attempt_number:
                latest[result.gate_name] = result
        return latest

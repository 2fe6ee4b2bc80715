"""Quality gate models.

This module defines the data models for quality gate evaluation:
- GateStatus: passed or failed
- GateSpec: One entry of the caller-supplied ordered gate list
- GateInput: Normalized view of the entity a gate checks
- GateCheck: What a single gate returns
- QualityGateResult: Persisted, attempt-numbered result of one gate run
- GateRunOutcome: Aggregate result of an ordered evaluation
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from src.curation.state.models import CEFRLevel, CurationItem, ItemType


MAX_ATTEMPTS = 10

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def normalize_text(text: str) -> str:
    """Lowercase text and collapse it to single-space separated words."""
    return " ".join(_WORD_RE.findall(text.lower()))


class GateStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class GateSpec(BaseModel):
    """One gate in an ordered evaluation.

    A failing blocking gate stops the evaluation; non-blocking gates
    always let the next gate run.
    """

    name: str = Field(..., min_length=1)
    blocking: bool = Field(
        default=True,
        description="Stop evaluation after this gate if it fails",
    )


class GateInput(BaseModel):
    """Normalized content of the entity under evaluation."""

    entity_type: ItemType
    entity_id: str = Field(..., min_length=1)
    text: str = Field(default="", description="Primary content text")
    language: Optional[str] = None
    level: Optional[CEFRLevel] = None
    explanation: Optional[str] = None
    grammar_topic: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def normalized_text(self) -> str:
        return normalize_text(self.text)

    @classmethod
    def from_item(cls, item: CurationItem) -> "GateInput":
        data = item.data
        return cls(
            entity_type=item.item_type,
            entity_id=item.item_id,
            text=str(data.get("text", "")),
            language=item.language,
            level=item.level,
            explanation=data.get("explanation"),
            grammar_topic=data.get("grammar_topic"),
            data=data,
        )


class GateCheck(BaseModel):
    """Outcome of one gate's check, before attempt numbering."""

    passed: bool
    score: Optional[float] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class QualityGateResult(BaseModel):
    """Persisted result of one gate run on one entity.

    Unique per (entity_type, entity_id, gate_name, attempt_number).
    """

    entity_type: ItemType

    entity_id: str = Field(..., min_length=1)

    gate_name: str = Field(..., min_length=1)

    status: GateStatus

    attempt_number: int = Field(
        default=1,
        ge=1,
        le=MAX_ATTEMPTS,
        description="Ordinal of this gate's evaluation for the entity",
    )

    error_message: Optional[str] = None

    score: Optional[float] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    execution_time_ms: int = Field(default=0, ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASSED


class GateRunOutcome(BaseModel):
    """Aggregate result of an ordered gate evaluation.

    all_passed is True only if every requested gate ran and passed. When
    a blocking gate fails, the gates after it are listed in skipped.
    """

    entity_type: ItemType
    entity_id: str
    all_passed: bool
    results: List[QualityGateResult] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)

    @property
    def failed_results(self) -> List[QualityGateResult]:
        return [r for r in self.results if not r.passed]


@runtime_checkable
class QualityGate(Protocol):
    """A named, deterministic check applied to a candidate.

    retryable is False for gates whose failure regeneration cannot fix,
    such as unsafe or duplicate content.
    """

    name: str
    retryable: bool

    async def check(self, gate_input: GateInput) -> GateCheck:
        ...

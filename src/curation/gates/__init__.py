"""Quality gate engine.

Runs named, ordered checks against candidate items, numbers every
attempt per (entity, gate) up to a ceiling of 10, and detects
near-duplicates of approved content by trigram similarity. Prerequisite
links are checked against the item repository.
"""

from src.curation.gates.builtin import (
    CEFR_CRITERIA,
    CEFR_GATE,
    CONTENT_SAFETY_GATE,
    DEFAULT_SIMILARITY_THRESHOLD,
    DUPLICATION_GATE,
    LANGUAGE_STANDARD_GATE,
    ORTHOGRAPHY_GATE,
    PREREQUISITE_GATE,
    CEFRConsistencyGate,
    ContentSafetyGate,
    DuplicationGate,
    GateRegistry,
    LanguageStandardGate,
    OrthographyGate,
    PrerequisiteValidationGate,
    UnknownGateError,
    create_default_registry,
)
from src.curation.gates.engine import (
    AttemptCeilingExceededError,
    GateEvaluationError,
    GateResultRepository,
    QualityGateEngine,
)
from src.curation.gates.memory import InMemoryGateResultRepository
from src.curation.gates.models import (
    MAX_ATTEMPTS,
    GateCheck,
    GateInput,
    GateRunOutcome,
    GateSpec,
    GateStatus,
    QualityGate,
    QualityGateResult,
    normalize_text,
)
from src.curation.gates.prerequisites import (
    ItemPrerequisiteLookup,
    PrerequisiteInfo,
    PrerequisiteLookup,
)
from src.curation.gates.repository import PostgresGateResultRepository
from src.curation.gates.similarity import (
    ApprovedItemIndex,
    PostgresSimilarityIndex,
    SimilarityIndex,
    SimilarityMatch,
    trigram_similarity,
    trigrams,
)

__all__ = [
    # Models
    "GateCheck",
    "GateInput",
    "GateRunOutcome",
    "GateSpec",
    "GateStatus",
    "MAX_ATTEMPTS",
    "QualityGate",
    "QualityGateResult",
    "normalize_text",
    # Similarity
    "ApprovedItemIndex",
    "PostgresSimilarityIndex",
    "SimilarityIndex",
    "SimilarityMatch",
    "trigram_similarity",
    "trigrams",
    # Prerequisites
    "ItemPrerequisiteLookup",
    "PrerequisiteInfo",
    "PrerequisiteLookup",
    # Built-in gates
    "CEFR_CRITERIA",
    "CEFR_GATE",
    "CONTENT_SAFETY_GATE",
    "DEFAULT_SIMILARITY_THRESHOLD",
    "DUPLICATION_GATE",
    "LANGUAGE_STANDARD_GATE",
    "ORTHOGRAPHY_GATE",
    "PREREQUISITE_GATE",
    "CEFRConsistencyGate",
    "ContentSafetyGate",
    "DuplicationGate",
    "GateRegistry",
    "LanguageStandardGate",
    "OrthographyGate",
    "PrerequisiteValidationGate",
    "UnknownGateError",
    "create_default_registry",
    # Engine
    "AttemptCeilingExceededError",
    "GateEvaluationError",
    "GateResultRepository",
    "QualityGateEngine",
    # Repositories
    "InMemoryGateResultRepository",
    "PostgresGateResultRepository",
]

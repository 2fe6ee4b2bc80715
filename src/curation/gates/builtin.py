"""Built-in quality gates and the gate registry.

Gates:
- DuplicationGate ("duplication-detection"): trigram near-duplicate check
  against approved content of the same type and language
- CEFRConsistencyGate ("cefr-consistency"): word and explanation length
  limits per CEFR level, advanced grammar topics below B2
- OrthographyGate ("orthography-consistency"): characters outside the
  language's alphabet
- ContentSafetyGate ("content-safety"): unsafe content patterns
- LanguageStandardGate ("language-standard"): forms from a regional
  variant other than the one taught
- PrerequisiteValidationGate ("prerequisite-validation"): prerequisites
  that are missing, self-referencing, cyclic, of a higher level or in
  another language

Every gate is a pure function of its GateInput, plus the similarity
index for duplication and the prerequisite lookup for prerequisites.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from src.curation.gates.models import GateCheck, GateInput, QualityGate
from src.curation.gates.prerequisites import PrerequisiteLookup, prerequisite_ids
from src.curation.gates.similarity import SimilarityIndex, is_exact_duplicate
from src.curation.state.models import CEFRLevel, ItemType


logger = logging.getLogger(__name__)


DUPLICATION_GATE = "duplication-detection"
CEFR_GATE = "cefr-consistency"
ORTHOGRAPHY_GATE = "orthography-consistency"
CONTENT_SAFETY_GATE = "content-safety"
LANGUAGE_STANDARD_GATE = "language-standard"
PREREQUISITE_GATE = "prerequisite-validation"

DEFAULT_SIMILARITY_THRESHOLD = 0.85


class UnknownGateError(Exception):
    """Raised when a gate name is not registered.

    This is a configuration error and is fatal to the evaluation.
    """

    def __init__(self, gate_name: str):
        self.gate_name = gate_name
        super().__init__(f"Unknown quality gate: {gate_name}")


class DuplicationGate:
    """Fails candidates that are near-duplicates of approved content."""

    name = DUPLICATION_GATE
    retryable = False

    def __init__(
        self,
        index: SimilarityIndex,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1]")
        self.index = index
        self.threshold = threshold

    async def check(self, gate_input: GateInput) -> GateCheck:
        if not gate_input.normalized_text:
            return GateCheck(passed=True, details={"note": "No text to compare"})

        matches = await self.index.similar_to(
            gate_input.text,
            gate_input.entity_type,
            gate_input.language,
            self.threshold,
            exclude_id=gate_input.entity_id,
        )
        if not matches:
            return GateCheck(passed=True, score=0.0)

        for match in matches:
            if is_exact_duplicate(gate_input.text, match.text):
                return GateCheck(
                    passed=False,
                    score=1.0,
                    error_message=f"Exact duplicate of {match.id}",
                    details={"duplicate_of": match.id, "similarity": 1.0},
                )

        best = matches[0]
        return GateCheck(
            passed=False,
            score=best.score,
            error_message=(
                f"Too similar to {best.id} "
                f"({best.score:.0%} >= {self.threshold:.0%})"
            ),
            details={
                "similar_to": best.id,
                "similarity": round(best.score, 4),
                "matched_text": best.text,
                "threshold": self.threshold,
            },
        )


# Per-level limits: (max word length, max explanation words, max explanation sentences)
CEFR_CRITERIA: Dict[CEFRLevel, Tuple[int, int, int]] = {
    CEFRLevel.A0: (8, 30, 2),
    CEFRLevel.A1: (10, 50, 3),
    CEFRLevel.A2: (12, 100, 5),
    CEFRLevel.B1: (15, 150, 8),
    CEFRLevel.B2: (18, 250, 12),
    CEFRLevel.C1: (25, 400, 20),
    CEFRLevel.C2: (50, 600, 30),
}

ADVANCED_GRAMMAR_CONCEPTS = (
    "subjunctive",
    "conditional perfect",
    "passive infinitive",
    "cleft sentence",
    "inversion",
)

BASIC_LEVELS = (CEFRLevel.A0, CEFRLevel.A1, CEFRLevel.A2, CEFRLevel.B1)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


class CEFRConsistencyGate:
    """Checks that content complexity matches its CEFR level."""

    name = CEFR_GATE
    retryable = True

    async def check(self, gate_input: GateInput) -> GateCheck:
        level = gate_input.level
        if level is None:
            return GateCheck(
                passed=False,
                error_message="Missing CEFR level",
                details={"issues": ["Missing CEFR level"]},
            )

        max_word, max_expl_words, max_expl_sentences = CEFR_CRITERIA[level]
        issues: List[str] = []

        if gate_input.entity_type.value == "meaning":
            longest = max((len(w) for w in gate_input.text.split()), default=0)
            if longest > max_word:
                issues.append(
                    f"Word too long for {level.value}: {longest} chars (max {max_word})"
                )

        explanation = gate_input.explanation
        if explanation:
            word_count = len(explanation.split())
            sentence_count = len(
                [s for s in _SENTENCE_SPLIT_RE.split(explanation) if s.strip()]
            )
            if word_count > max_expl_words:
                issues.append(
                    f"Explanation too long for {level.value}: "
                    f"{word_count} words (max {max_expl_words})"
                )
            if sentence_count > max_expl_sentences:
                issues.append(
                    f"Explanation too complex for {level.value}: "
                    f"{sentence_count} sentences (max {max_expl_sentences})"
                )

        if gate_input.grammar_topic and level in BASIC_LEVELS:
            topic = gate_input.grammar_topic.lower()
            for concept in ADVANCED_GRAMMAR_CONCEPTS:
                if concept in topic:
                    issues.append(
                        f'Advanced grammar concept "{concept}" not suitable for {level.value}'
                    )

        if issues:
            return GateCheck(
                passed=False,
                error_message="CEFR level consistency issues",
                details={"issues": issues, "level": level.value},
            )
        return GateCheck(passed=True)


_PUNCTUATION = r"0-9\s.,!?;:'\"()\-–—…"

VALID_ALPHABETS: Dict[str, Pattern[str]] = {
    "en": re.compile(rf"^[A-Za-z{_PUNCTUATION}]+$"),
    "es": re.compile(rf"^[A-Za-zÁÉÍÓÚÑÜáéíóúñü¿¡{_PUNCTUATION}]+$"),
    "it": re.compile(rf"^[A-Za-zÀÈÉÌÒÙàèéìòù{_PUNCTUATION}]+$"),
    "pt": re.compile(rf"^[A-Za-zÁÂÃÀÇÉÊÍÓÔÕÚáâãàçéêíóôõú{_PUNCTUATION}]+$"),
    "sl": re.compile(rf"^[A-Za-zČŠŽčšž{_PUNCTUATION}]+$"),
}


class OrthographyGate:
    """Fails text containing characters outside the language's alphabet."""

    name = ORTHOGRAPHY_GATE
    retryable = False

    async def check(self, gate_input: GateInput) -> GateCheck:
        language = (gate_input.language or "").lower()
        pattern = VALID_ALPHABETS.get(language)
        if pattern is None:
            return GateCheck(
                passed=True,
                details={"note": f"No orthography rules for language: {language or 'unset'}"},
            )

        text = gate_input.text
        if not text or pattern.match(text):
            return GateCheck(passed=True)

        invalid = sorted(
            {ch for ch in text if not ch.isspace() and not pattern.match(ch)}
        )
        return GateCheck(
            passed=False,
            error_message=f"Invalid characters for {language}: {', '.join(invalid)}",
            details={"invalid_characters": invalid, "language": language},
        )


SAFETY_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bf+u+c+k+", re.I), "profanity"),
    (re.compile(r"\bs+h+i+t+\b", re.I), "profanity"),
    (re.compile(r"\bc+u+n+t+\b", re.I), "profanity"),
    (
        re.compile(r"\b(kill|murder|stab|shoot)\s+(someone|people|person|him|her|them)\b", re.I),
        "violence",
    ),
    (re.compile(r"\b(torture|mutilate|dismember)\b", re.I), "violence"),
    (re.compile(r"\b(pornographic|explicit\s+sexual)\b", re.I), "inappropriate"),
    (re.compile(r"\b(drug\s+abuse|substance\s+abuse)\b", re.I), "inappropriate"),
    (re.compile(r"\b(racial\s+slur|hate\s+speech)\b", re.I), "hate"),
    (re.compile(r"\b(nazi|white\s+supremac)", re.I), "hate"),
]


class ContentSafetyGate:
    """Fails content matching unsafe-content patterns.

    Checks the primary text, the explanation, and any extra strings the
    payload lists under "texts".
    """

    name = CONTENT_SAFETY_GATE
    retryable = False

    async def check(self, gate_input: GateInput) -> GateCheck:
        texts = [gate_input.text, gate_input.explanation or ""]
        texts.extend(str(t) for t in gate_input.data.get("texts", []))
        combined = " ".join(t for t in texts if t)

        categories = sorted(
            {category for pattern, category in SAFETY_PATTERNS if pattern.search(combined)}
        )
        if categories:
            return GateCheck(
                passed=False,
                error_message=f"Content safety violations: {', '.join(categories)}",
                details={"categories": categories},
            )
        return GateCheck(passed=True)


# language -> (taught variant, [(pattern, violation)])
LANGUAGE_STANDARDS: Dict[str, Tuple[str, List[Tuple[Pattern[str], str]]]] = {
    "en": (
        "US English",
        [
            (
                re.compile(r"\b(colour|favour|honour|behaviour|neighbour)\b", re.I),
                "British spelling",
            ),
            (re.compile(r"\b(realise|organise|recognise)\b", re.I), "British -ise spelling"),
            (re.compile(r"\b(centre|theatre|metre)\b", re.I), "British -re spelling"),
            (re.compile(r"\bgrey\b", re.I), 'British spelling (use "gray")'),
        ],
    ),
    "pt": (
        "European Portuguese",
        [
            (re.compile(r"\bvc\b", re.I), "Brazilian abbreviation"),
            (re.compile(r"\btá\b", re.I), "Brazilian informal"),
            (re.compile(r"\bpra\b", re.I), 'Brazilian contraction (use "para")'),
            (re.compile(r"\bônibus\b", re.I), 'Brazilian spelling (use "autocarro")'),
        ],
    ),
    "es": (
        "Castilian Spanish",
        [
            (re.compile(r"\bustedes\b.*\b(tienen|hacen|van)\b", re.I), "Latin American form"),
        ],
    ),
    "it": ("Standard Italian", []),
    "sl": ("Standard Slovenian", []),
}


class LanguageStandardGate:
    """Fails text using forms of a regional variant other than the taught one."""

    name = LANGUAGE_STANDARD_GATE
    retryable = False

    async def check(self, gate_input: GateInput) -> GateCheck:
        language = (gate_input.language or "").lower()
        standard = LANGUAGE_STANDARDS.get(language)
        if standard is None:
            return GateCheck(
                passed=True,
                details={"note": f"No standard defined for language: {language or 'unset'}"},
            )

        variant, patterns = standard
        violations = [v for pattern, v in patterns if pattern.search(gate_input.text)]
        if violations:
            return GateCheck(
                passed=False,
                error_message=f"{variant} violations detected",
                details={"violations": violations, "expected_variant": variant},
            )
        return GateCheck(passed=True)


CEFR_RANK: Dict[CEFRLevel, int] = {level: rank for rank, level in enumerate(CEFRLevel)}


class PrerequisiteValidationGate:
    """Validates the prerequisites an item lists under data["prerequisites"].

    An item fails when it lists itself, lists an id that does not exist,
    lists a prerequisite of a higher CEFR level or another language, or
    closes a cycle in the prerequisite graph.
    """

    name = PREREQUISITE_GATE
    retryable = False

    def __init__(self, lookup: PrerequisiteLookup):
        self.lookup = lookup

    async def check(self, gate_input: GateInput) -> GateCheck:
        prerequisites = prerequisite_ids(gate_input.data)
        if not prerequisites:
            return GateCheck(passed=True)

        item_id = gate_input.entity_id
        item_type = gate_input.entity_type
        issues: List[str] = []

        if item_id in prerequisites:
            issues.append("Item cannot be its own prerequisite")

        found = await self.lookup.find(prerequisites, item_type)
        found_ids = {p.id for p in found}
        missing = [p for p in prerequisites if p not in found_ids]
        if missing:
            issues.append(f"Missing prerequisites: {', '.join(missing)}")

        level = gate_input.level
        for prereq in found:
            if (
                level is not None
                and prereq.level is not None
                and CEFR_RANK[prereq.level] > CEFR_RANK[level]
            ):
                issues.append(
                    f'Prerequisite "{prereq.id}" has higher level '
                    f"({prereq.level.value}) than item ({level.value})"
                )
            if prereq.language != gate_input.language:
                issues.append(
                    f'Prerequisite "{prereq.id}" is in different language ({prereq.language})'
                )

        cycle = await self._find_cycle(item_id, item_type, prerequisites)
        if cycle:
            issues.append(f"Circular dependency detected: {' -> '.join(cycle)}")

        if issues:
            return GateCheck(
                passed=False,
                error_message="Prerequisite validation failed",
                details={
                    "issues": issues,
                    "prerequisites": prerequisites,
                    "missing": missing,
                },
            )
        return GateCheck(passed=True)

    async def _find_cycle(
        self, item_id: str, item_type: ItemType, direct: List[str]
    ) -> Optional[List[str]]:
        """Depth-first search for a path from a prerequisite back onto itself."""
        visited = set()

        async def visit(current: str, path: List[str]) -> Optional[List[str]]:
            if current in path:
                return path + [current]
            if current in visited:
                return None
            visited.add(current)
            for next_id in await self.lookup.prerequisites_of(current, item_type):
                cycle = await visit(next_id, path + [current])
                if cycle:
                    return cycle
            return None

        for prereq_id in direct:
            if prereq_id == item_id:
                # Reported as a self-reference
                continue
            cycle = await visit(prereq_id, [item_id])
            if cycle:
                return cycle
        return None

class GateRegistry:
    """Name → gate lookup used by the engine to resolve GateSpecs."""

    def __init__(self, gates: Optional[Iterable[QualityGate]] = None):
        self._gates: Dict[str, QualityGate] = {}
        for gate in gates or []:
            self.register(gate)

    def register(self, gate: QualityGate) -> None:
        if gate.name in self._gates:
            raise ValueError(f"Gate already registered: {gate.name}")
        self._gates[gate.name] = gate

    def get(self, name: str) -> QualityGate:
        gate = self._gates.get(name)
        if gate is None:
            raise UnknownGateError(name)
        return gate

    def names(self) -> List[str]:
        return list(self._gates)

    def __contains__(self, name: object) -> bool:
        return name in self._gates


def create_default_registry(
    similarity_index: SimilarityIndex,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    prerequisite_lookup: Optional[PrerequisiteLookup] = None,
) -> GateRegistry:
    """Build a registry with the built-in gates.

    The prerequisite gate is registered only when a lookup is given.
    """
    gates: List[QualityGate] = [
        ContentSafetyGate(),
        OrthographyGate(),
        CEFRConsistencyGate(),
        LanguageStandardGate(),
    ]
    if prerequisite_lookup is not None:
        gates.append(PrerequisiteValidationGate(prerequisite_lookup))
    gates.append(DuplicationGate(similarity_index, similarity_threshold))
    return GateRegistry(gates)

"""Unit tests for the built-in quality gates and trigram similarity."""

import asyncio
from typing import List, Optional

import pytest

from src.curation.gates import (
    CEFR_GATE,
    CONTENT_SAFETY_GATE,
    DUPLICATION_GATE,
    LANGUAGE_STANDARD_GATE,
    ORTHOGRAPHY_GATE,
    PREREQUISITE_GATE,
    ApprovedItemIndex,
    CEFRConsistencyGate,
    ContentSafetyGate,
    DuplicationGate,
    GateInput,
    ItemPrerequisiteLookup,
    LanguageStandardGate,
    OrthographyGate,
    PrerequisiteValidationGate,
    SimilarityMatch,
    create_default_registry,
    trigram_similarity,
    trigrams,
)
from src.curation.state import (
    ApprovalType,
    CEFRLevel,
    CurationItem,
    InMemoryItemRepository,
    ItemType,
    StateTransitionEngine,
)


def run_async(coro):
    return asyncio.run(coro)


class FakeSimilarityIndex:
    """Returns canned matches and remembers the last query."""

    def __init__(self, matches: List[SimilarityMatch]):
        self.matches = matches
        self.queries = []

    async def similar_to(
        self,
        text: str,
        item_type: ItemType,
        language: Optional[str],
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> List[SimilarityMatch]:
        self.queries.append((text, item_type, language, threshold, exclude_id))
        return [m for m in self.matches if m.score >= threshold]


def utterance(text: str, level: Optional[CEFRLevel] = CEFRLevel.A1, **data) -> GateInput:
    return GateInput(
        entity_type=ItemType.UTTERANCE,
        entity_id="u-1",
        text=text,
        language="es",
        level=level,
        explanation=data.pop("explanation", None),
        grammar_topic=data.pop("grammar_topic", None),
        data=data,
    )


class TestTrigrams:
    def test_single_word_has_padded_trigrams(self):
        assert trigrams("cat") == frozenset({"  c", " ca", "cat", "at "})

    def test_case_and_punctuation_are_ignored(self):
        assert trigrams("Cat!") == trigrams("cat")

    def test_identical_texts_are_fully_similar(self):
        assert trigram_similarity("buenos días", "buenos días") == 1.0

    def test_disjoint_texts_are_not_similar(self):
        assert trigram_similarity("gato", "perro") == 0.0

    def test_empty_text_has_zero_similarity(self):
        assert trigram_similarity("", "hola") == 0.0

    def test_similarity_is_symmetric(self):
        a, b = "el gato negro", "el gato blanco"
        assert trigram_similarity(a, b) == trigram_similarity(b, a)
        assert 0.0 < trigram_similarity(a, b) < 1.0


class TestDuplicationGate:
    def test_near_duplicate_fails_and_names_the_approved_item(self):
        index = FakeSimilarityIndex(
            [SimilarityMatch(id="approved-7", score=0.9, text="¿Dónde está el baño?")]
        )
        gate = DuplicationGate(index, threshold=0.85)

        check = run_async(gate.check(utterance("¿Dónde está el baño, por favor?")))

        assert not check.passed
        assert check.details["similar_to"] == "approved-7"
        assert check.details["similarity"] == 0.9
        assert check.score == 0.9

    def test_below_threshold_passes(self):
        index = FakeSimilarityIndex([SimilarityMatch(id="approved-7", score=0.6)])
        gate = DuplicationGate(index, threshold=0.85)

        check = run_async(gate.check(utterance("Hola")))
        assert check.passed

    def test_exact_duplicate_is_reported(self):
        index = FakeSimilarityIndex([SimilarityMatch(id="approved-1", score=1.0, text="Hola")])
        gate = DuplicationGate(index)

        check = run_async(gate.check(utterance("  hola ")))
        assert not check.passed
        assert check.details["duplicate_of"] == "approved-1"

    def test_candidate_is_excluded_from_its_own_matches(self):
        index = FakeSimilarityIndex([])
        gate = DuplicationGate(index)

        run_async(gate.check(utterance("Hola")))
        assert index.queries[0][4] == "u-1"

    def test_invalid_threshold_is_refused(self):
        with pytest.raises(ValueError):
            DuplicationGate(FakeSimilarityIndex([]), threshold=0.0)


class TestApprovedItemIndex:
    def test_only_approved_items_of_the_same_type_match(self):
        repository = InMemoryItemRepository()
        engine = StateTransitionEngine(repository)

        async def test():
            await engine.create("approved", ItemType.UTTERANCE, {"text": "buenos días"}, "es")
            for _ in range(2):
                await engine.advance("approved", ItemType.UTTERANCE)
            await engine.approve(
                "approved", ItemType.UTTERANCE, ApprovalType.AUTOMATIC
            )
            await engine.create("draft", ItemType.UTTERANCE, {"text": "buenos días"}, "es")
            await engine.create("meaning", ItemType.MEANING, {"text": "buenos días"}, "es")

            index = ApprovedItemIndex(repository)
            matches = await index.similar_to(
                "buenos días", ItemType.UTTERANCE, "es", 0.85, exclude_id="draft"
            )
            assert [m.id for m in matches] == ["approved"]
            assert matches[0].score == 1.0

            other_language = await index.similar_to(
                "buenos días", ItemType.UTTERANCE, "it", 0.85
            )
            assert other_language == []

        run_async(test())

    def test_approved_item_without_language_matches_any_language(self):
        repository = InMemoryItemRepository()
        engine = StateTransitionEngine(repository)

        async def test():
            await engine.create("untagged", ItemType.UTTERANCE, {"text": "buenos días"})
            for _ in range(2):
                await engine.advance("untagged", ItemType.UTTERANCE)
            await engine.approve("untagged", ItemType.UTTERANCE, ApprovalType.AUTOMATIC)

            index = ApprovedItemIndex(repository)
            matches = await index.similar_to("buenos días", ItemType.UTTERANCE, "es", 0.85)
            assert [m.id for m in matches] == ["untagged"]

        run_async(test())


class TestCEFRConsistencyGate:
    def test_missing_level_fails(self):
        check = run_async(CEFRConsistencyGate().check(utterance("Hola", level=None)))
        assert not check.passed

    def test_long_explanation_fails_at_low_level(self):
        explanation = " ".join(["palabra"] * 60)
        check = run_async(
            CEFRConsistencyGate().check(utterance("Hola", explanation=explanation))
        )
        assert not check.passed
        assert any("too long" in issue for issue in check.details["issues"])

    def test_advanced_grammar_below_b2_fails(self):
        check = run_async(
            CEFRConsistencyGate().check(
                utterance("Ojalá", level=CEFRLevel.A2, grammar_topic="Present subjunctive")
            )
        )
        assert not check.passed

    def test_advanced_grammar_at_c1_passes(self):
        check = run_async(
            CEFRConsistencyGate().check(
                utterance("Ojalá", level=CEFRLevel.C1, grammar_topic="Present subjunctive")
            )
        )
        assert check.passed

    def test_long_word_fails_for_meanings(self):
        gate_input = GateInput(
            entity_type=ItemType.MEANING,
            entity_id="m-1",
            text="electroencefalografista",
            level=CEFRLevel.A1,
        )
        check = run_async(CEFRConsistencyGate().check(gate_input))
        assert not check.passed


class TestOrthographyGate:
    def test_valid_spanish_passes(self):
        check = run_async(OrthographyGate().check(utterance("¿Cómo estás, señor?")))
        assert check.passed

    def test_foreign_characters_fail(self):
        check = run_async(OrthographyGate().check(utterance("Привет")))
        assert not check.passed
        assert "П" in check.details["invalid_characters"]

    def test_unknown_language_passes(self):
        gate_input = GateInput(
            entity_type=ItemType.UTTERANCE, entity_id="u-1", text="こんにちは", language="ja"
        )
        assert run_async(OrthographyGate().check(gate_input)).passed


class TestContentSafetyGate:
    def test_clean_text_passes(self):
        assert run_async(ContentSafetyGate().check(utterance("Me gusta el café"))).passed

    def test_violence_is_flagged(self):
        check = run_async(ContentSafetyGate().check(utterance("I will kill someone")))
        assert not check.passed
        assert check.details["categories"] == ["violence"]

    def test_extra_texts_are_checked(self):
        check = run_async(
            ContentSafetyGate().check(utterance("Hola", texts=["hate speech example"]))
        )
        assert not check.passed


class TestLanguageStandardGate:
    def test_british_spelling_fails_for_english(self):
        gate_input = GateInput(
            entity_type=ItemType.UTTERANCE,
            entity_id="u-1",
            text="My favourite colour is grey",
            language="en",
        )
        check = run_async(LanguageStandardGate().check(gate_input))

        assert not check.passed
        assert check.details["expected_variant"] == "US English"
        assert check.details["violations"] == ["British spelling", 'British spelling (use "gray")']

    def test_brazilian_forms_fail_for_portuguese(self):
        gate_input = GateInput(
            entity_type=ItemType.UTTERANCE,
            entity_id="u-1",
            text="Vou pra casa de ônibus",
            language="pt",
        )
        check = run_async(LanguageStandardGate().check(gate_input))

        assert not check.passed
        assert len(check.details["violations"]) == 2

    def test_latin_american_form_fails_for_spanish(self):
        check = run_async(LanguageStandardGate().check(utterance("Ustedes tienen razón")))
        assert not check.passed

    def test_castilian_text_passes(self):
        check = run_async(LanguageStandardGate().check(utterance("Vosotros tenéis razón")))
        assert check.passed

    def test_language_without_standard_passes(self):
        gate_input = GateInput(
            entity_type=ItemType.UTTERANCE, entity_id="u-1", text="colour", language="de"
        )
        check = run_async(LanguageStandardGate().check(gate_input))
        assert check.passed
        assert "No standard defined" in check.details["note"]


def grammar_rule(
    item_id: str,
    prerequisites: List[str],
    level: CEFRLevel = CEFRLevel.A2,
    language: str = "es",
) -> GateInput:
    return GateInput(
        entity_type=ItemType.GRAMMAR_RULE,
        entity_id=item_id,
        text="ser vs estar",
        language=language,
        level=level,
        data={"text": "ser vs estar", "prerequisites": prerequisites},
    )


class TestPrerequisiteValidationGate:
    @pytest.fixture
    def engine(self):
        return StateTransitionEngine(InMemoryItemRepository())

    @pytest.fixture
    def gate(self, engine):
        return PrerequisiteValidationGate(ItemPrerequisiteLookup(engine.repository))

    async def _add_rule(self, engine, item_id, level, language="es", prerequisites=()):
        await engine.create(
            item_id,
            ItemType.GRAMMAR_RULE,
            {"text": item_id, "prerequisites": list(prerequisites)},
            language=language,
            level=level,
        )

    def test_no_prerequisites_passes(self, gate):
        assert run_async(gate.check(grammar_rule("g-1", []))).passed

    def test_valid_prerequisites_pass(self, engine, gate):
        async def test():
            await self._add_rule(engine, "g-articles", CEFRLevel.A1)
            return await gate.check(grammar_rule("g-1", ["g-articles"]))

        assert run_async(test()).passed

    def test_self_reference_fails(self, gate):
        check = run_async(gate.check(grammar_rule("g-1", ["g-1"])))

        assert not check.passed
        assert "Item cannot be its own prerequisite" in check.details["issues"]

    def test_missing_prerequisite_fails(self, gate):
        check = run_async(gate.check(grammar_rule("g-1", ["g-unknown"])))

        assert not check.passed
        assert check.details["missing"] == ["g-unknown"]

    def test_higher_level_prerequisite_fails(self, engine, gate):
        async def test():
            await self._add_rule(engine, "g-subjunctive", CEFRLevel.B2)
            return await gate.check(grammar_rule("g-1", ["g-subjunctive"], level=CEFRLevel.A2))

        check = run_async(test())
        assert not check.passed
        assert any("higher level" in issue for issue in check.details["issues"])

    def test_other_language_prerequisite_fails(self, engine, gate):
        async def test():
            await self._add_rule(engine, "g-articoli", CEFRLevel.A1, language="it")
            return await gate.check(grammar_rule("g-1", ["g-articoli"]))

        check = run_async(test())
        assert not check.passed
        assert any("different language" in issue for issue in check.details["issues"])

    def test_rejected_prerequisite_counts_as_missing(self, engine, gate):
        async def test():
            await self._add_rule(engine, "g-old", CEFRLevel.A1)
            await engine.reject("g-old", ItemType.GRAMMAR_RULE, "Superseded")
            return await gate.check(grammar_rule("g-1", ["g-old"]))

        check = run_async(test())
        assert check.details["missing"] == ["g-old"]

    def test_cycle_fails(self, engine, gate):
        async def test():
            await self._add_rule(engine, "g-1", CEFRLevel.A2, prerequisites=["g-2"])
            await self._add_rule(engine, "g-2", CEFRLevel.A1, prerequisites=["g-1"])
            return await gate.check(grammar_rule("g-1", ["g-2"]))

        check = run_async(test())
        assert not check.passed
        assert "Circular dependency detected: g-1 -> g-2 -> g-1" in check.details["issues"]


class TestDefaultRegistry:
    def test_registry_order_and_retryability(self):
        registry = create_default_registry(
            FakeSimilarityIndex([]),
            prerequisite_lookup=ItemPrerequisiteLookup(InMemoryItemRepository()),
        )

        assert registry.names() == [
            CONTENT_SAFETY_GATE,
            ORTHOGRAPHY_GATE,
            CEFR_GATE,
            LANGUAGE_STANDARD_GATE,
            PREREQUISITE_GATE,
            DUPLICATION_GATE,
        ]
        assert [registry.get(n).retryable for n in registry.names()] == [
            False,
            False,
            True,
            False,
            False,
            False,
        ]

    def test_prerequisite_gate_needs_a_lookup(self):
        registry = create_default_registry(FakeSimilarityIndex([]))

        assert PREREQUISITE_GATE not in registry
        assert LANGUAGE_STANDARD_GATE in registry

    def test_gate_input_reads_item_payload(self):
        item = CurationItem(
            item_id="g-1",
            item_type=ItemType.GRAMMAR_RULE,
            data={"text": "ser vs estar", "explanation": "Uses", "grammar_topic": "copula"},
            language="es",
            level=CEFRLevel.A2,
        )
        gate_input = GateInput.from_item(item)
        assert gate_input.text == "ser vs estar"
        assert gate_input.explanation == "Uses"
        assert gate_input.grammar_topic == "copula"
        assert gate_input.level == CEFRLevel.A2

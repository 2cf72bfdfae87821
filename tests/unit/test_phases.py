"""Unit tests for stage declarations and the generic phase executor."""

import json

import pytest

from bible_fakes import CHARACTERS, STORY_DNA, SUBPLOTS, ScriptedLLMClient, make_context
from storybible.exceptions import MissingStageOutputError
from storybible.generators.phases import (
    CENTRAL_PLOT,
    CHARACTERS as CHARACTERS_SPEC,
    PHASE_SPECS,
    STORY_DNA as STORY_DNA_SPEC,
    SUBPLOTS as SUBPLOTS_SPEC,
    PhaseExecutor,
    check_characters,
    check_subplots,
)
from storybible.prompts.bible_prompts import CHARACTERS_SYSTEM_PROMPT, STORY_DNA_SYSTEM_PROMPT
from storybible.validators.schema import FailureKind, StageFailure, StageResult


def run_story_dna(reply, context):
    client = ScriptedLLMClient({STORY_DNA_SYSTEM_PROMPT: reply})
    return PhaseExecutor(STORY_DNA_SPEC, client).execute(context), client


class TestPhaseSpecs:
    def test_stage_order(self):
        assert [spec.stage for spec in PHASE_SPECS] == [1, 2, 3, 4, 5]
        assert [spec.key for spec in PHASE_SPECS] == [
            "story_dna", "characters", "central_plot", "subplots", "plot_architecture",
        ]

    def test_coherence_fields(self):
        assert STORY_DNA_SPEC.coherence_fields == ["concept_honored", "level_considered"]
        assert len(PHASE_SPECS[4].coherence_fields) == 7


class TestPhaseExecutor:
    """Test one stage run against a scripted model."""

    def test_success(self, context):
        result, client = run_story_dna(json.dumps(STORY_DNA), context)

        assert isinstance(result, StageResult)
        assert result.stage == 1
        assert result.key == "story_dna"
        assert result.data == STORY_DNA
        assert result.coherence.valid is True
        assert result.warnings == []
        system_prompt, user_prompt = client.calls[0]
        assert system_prompt == STORY_DNA_SYSTEM_PROMPT
        assert context.concept in user_prompt
        assert "## READING LEVEL: Beginner" in user_prompt

    def test_fenced_response(self, context):
        result, _ = run_story_dna(f"Here is the DNA:\n```json\n{json.dumps(STORY_DNA)}\n```", context)
        assert isinstance(result, StageResult)
        assert result.data["subgenre"] == "Historical romance"

    def test_coherence_failure_is_a_warning(self, context):
        payload = {**STORY_DNA, "coherence_check": {"concept_honored": "Yes", "level_considered": ""}}
        result, _ = run_story_dna(json.dumps(payload), context)

        assert isinstance(result, StageResult)
        assert result.coherence.valid is False
        assert result.coherence.missing == ["level_considered"]
        assert result.warnings[0].code == "coherence"
        assert result.warnings[0].message == "Missing coherence fields: level_considered"

    def test_missing_coherence_block(self, context):
        payload = {key: value for key, value in STORY_DNA.items() if key != "coherence_check"}
        result, _ = run_story_dna(json.dumps(payload), context)

        assert isinstance(result, StageResult)
        assert result.coherence.message == "coherence_check missing from output"

    def test_model_call_failure(self, context):
        result, _ = run_story_dna(RuntimeError("service unavailable"), context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.MODEL_CALL
        assert result.message == "Stage 1 model call failed: service unavailable"

    def test_extraction_failure(self, context):
        result, _ = run_story_dna("I'd rather write a poem.", context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.EXTRACTION
        assert result.message == "Stage 1 JSON parse failed: Could not find valid JSON in response"
        assert result.raw == "I'd rather write a poem."

    def test_missing_primary_fields(self, context):
        payload = {**STORY_DNA, "tropes": {}, "premise": ""}
        payload.pop("theme")
        result, _ = run_story_dna(json.dumps(payload), context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.PRIMARY_FIELDS
        assert result.message == "Stage 1 missing required fields: tropes, theme, premise"

    def test_array_response_misses_every_field(self, context):
        result, _ = run_story_dna("[1, 2, 3]", context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.PRIMARY_FIELDS

    def test_structural_check_failure(self):
        context = make_context(outputs={"story_dna": STORY_DNA})
        payload = {**CHARACTERS, "love_interests": {"name": "Tomás"}}
        client = ScriptedLLMClient({CHARACTERS_SYSTEM_PROMPT: json.dumps(payload)})

        result = PhaseExecutor(CHARACTERS_SPEC, client).execute(context)

        assert isinstance(result, StageFailure)
        assert result.message == "Stage 2 missing required fields: love_interests must be a non-empty list"

    def test_revision_instructions_in_prompt(self):
        context = make_context().model_copy(update={"instructions": "Make the ending bittersweet"})
        _, client = run_story_dna(json.dumps(STORY_DNA), context)

        assert "REVISION INSTRUCTIONS" in client.calls[0][1]
        assert "Make the ending bittersweet" in client.calls[0][1]

    def test_prompt_needs_earlier_stages(self, context):
        """Test that a stage cannot run before the stages it reads from."""
        client = ScriptedLLMClient({})

        with pytest.raises(MissingStageOutputError, match="story_dna"):
            PhaseExecutor(CENTRAL_PLOT, client).execute(context)

        assert client.calls == []

    def test_unexpected_error_is_a_stage_failure(self, context):
        def broken_summary(data):
            raise TypeError("unhashable type: 'list'")

        spec = STORY_DNA_SPEC.model_copy(update={"summarize": broken_summary})
        client = ScriptedLLMClient({STORY_DNA_SYSTEM_PROMPT: json.dumps(STORY_DNA)})

        result = PhaseExecutor(spec, client).execute(context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.UNEXPECTED
        assert result.message == "Stage 1 failed: unhashable type: 'list'"


class TestTextBusinessFields:
    """Test stages whose model output uses plain text where an object is usual."""

    TEXT_DNA = {
        **STORY_DNA,
        "tropes": "Enemies to lovers, slow burn",
        "pov": "Dual third person",
        "theme": "Trust",
        "ending": "HEA",
    }
    TEXT_CHARACTERS = {**CHARACTERS, "protagonist": "Lucía, the keeper's daughter", "love_interests": ["Tomás"]}

    def test_story_dna_with_text_fields(self, context):
        result, _ = run_story_dna(json.dumps(self.TEXT_DNA), context)

        assert isinstance(result, StageResult)
        assert result.data["tropes"] == "Enemies to lovers, slow burn"

    def test_characters_with_text_cast(self):
        context = make_context(outputs={"story_dna": STORY_DNA})
        client = ScriptedLLMClient({CHARACTERS_SYSTEM_PROMPT: json.dumps(self.TEXT_CHARACTERS)})

        result = PhaseExecutor(CHARACTERS_SPEC, client).execute(context)

        assert isinstance(result, StageResult)
        assert result.data["protagonist"] == "Lucía, the keeper's daughter"

    def test_later_prompts_build_from_text_fields(self):
        context = make_context(
            outputs={
                "story_dna": self.TEXT_DNA,
                "characters": self.TEXT_CHARACTERS,
                "central_plot": {"key_moments": "The storm night"},
            }
        )

        characters_prompt = CHARACTERS_SPEC.build_prompt(context)
        central_plot_prompt = CENTRAL_PLOT.build_prompt(context)
        subplots_prompt = SUBPLOTS_SPEC.build_prompt(context)

        assert "established in the story DNA" in characters_prompt
        assert "the protagonist's wound" in central_plot_prompt
        assert "established burn rate" in central_plot_prompt
        assert "the key moments" in subplots_prompt


class TestStructuralChecks:
    def test_characters_ok(self):
        assert check_characters(CHARACTERS) == []

    def test_characters_empty_list(self):
        assert check_characters({"love_interests": []}) == ["love_interests must be a non-empty list"]

    def test_subplots_ok(self):
        assert check_subplots(SUBPLOTS) == []

    def test_subplot_missing_fields(self):
        subplot = {**SUBPLOTS["subplots"][0], "key_moments": [], "collision_points": None}
        problems = check_subplots({**SUBPLOTS, "subplots": [subplot]})

        assert problems == ['Subplot "The harbor sale" missing required fields (key_moments, collision_points)']

    def test_unnamed_subplot_labelled_by_position(self):
        problems = check_subplots({**SUBPLOTS, "subplots": [SUBPLOTS["subplots"][0], {"functions": ["x"]}]})

        assert problems == ['Subplot "2" missing required fields (character, key_moments, collision_points)']

    def test_subplots_structure(self):
        problems = check_subplots(
            {"forces": {"external_pressures": []}, "subplots": [], "collision_timeline": {}}
        )

        assert problems == [
            "forces must contain external_pressures and thematic_positions",
            "subplots must be a non-empty list",
            "collision_timeline must be a list",
        ]

    def test_subplots_spec_runs_structural_check(self):
        assert SUBPLOTS_SPEC.structural_check is check_subplots

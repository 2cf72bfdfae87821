"""Phase executors for bible stages 1-5.

Each stage is declared as a ``PhaseSpec`` (prompts, primary fields, coherence
fields, optional structural check) and run by one generic ``PhaseExecutor``:

1. Build the user prompt from the run context (prior stage outputs)
2. Invoke the model through ``LLMClient.generate_text``
3. Extract the JSON value from the response text
4. Check primary fields and the structural check (hard failure)
5. Validate the ``coherence_check`` block (soft warning)

Hard failures are returned as ``StageFailure`` rather than raised; the
orchestrator decides how to surface them.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from storybible.constants import LLM_MAX_TOKENS
from storybible.exceptions import MissingStageOutputError
from storybible.parsers.json_extractor import ExtractionFailure, extract_json, truncate_raw
from storybible.prompts import bible_prompts
from storybible.utils.llm_client import CallOptions, LLMClient
from storybible.utils.logging_config import pipeline_stage_logger
from storybible.validators.coherence import find_missing_primary_fields, validate_coherence
from storybible.validators.schema import (
    FailureKind,
    PipelineContext,
    StageFailure,
    StageResult,
    StageWarning,
    as_array,
    as_object,
)

logger = logging.getLogger(__name__)

StructuralCheck = Callable[[Dict[str, Any]], List[str]]
StageSummary = Callable[[Dict[str, Any]], Dict[str, Any]]


class PhaseSpec(BaseModel):
    """Declaration of one pipeline stage."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stage: int = Field(..., ge=1)
    key: str
    name: str
    description: str = Field(..., description="One-line description for progress reporting")
    system_prompt: str
    build_prompt: Callable[[PipelineContext], str]
    primary_fields: List[str]
    coherence_fields: List[str]
    structural_check: Optional[StructuralCheck] = None
    summarize: Optional[StageSummary] = None
    max_tokens: int = LLM_MAX_TOKENS


# ============================================================================
# Structural checks
# ============================================================================


def check_characters(data: Dict[str, Any]) -> List[str]:
    """Stage 2 needs at least one love interest in a list."""
    love_interests = data.get("love_interests")
    if not isinstance(love_interests, list) or not love_interests:
        return ["love_interests must be a non-empty list"]
    return []


SUBPLOT_REQUIRED_FIELDS = ["functions", "character", "key_moments", "collision_points"]


def check_subplots(data: Dict[str, Any]) -> List[str]:
    """Stage 4 forces, subplot entries and collision timeline."""
    problems = []

    forces = data.get("forces")
    if not isinstance(forces, dict) or find_missing_primary_fields(
        forces, ["external_pressures", "thematic_positions"]
    ):
        problems.append("forces must contain external_pressures and thematic_positions")

    subplots = data.get("subplots")
    if not isinstance(subplots, list) or not subplots:
        problems.append("subplots must be a non-empty list")
    else:
        for index, subplot in enumerate(subplots, 1):
            missing = find_missing_primary_fields(subplot, SUBPLOT_REQUIRED_FIELDS)
            if missing:
                label = subplot.get("name") if isinstance(subplot, dict) else None
                problems.append(
                    f"Subplot \"{label or index}\" missing required fields ({', '.join(missing)})"
                )

    if not isinstance(data.get("collision_timeline"), list):
        problems.append("collision_timeline must be a list")

    return problems


# ============================================================================
# Summaries (log lines and progress details)
# ============================================================================


def _summarize_story_dna(data: Dict[str, Any]) -> Dict[str, Any]:
    pov = as_object(data.get("pov"))
    return {
        "subgenre": data.get("subgenre"),
        "origin": as_object(data.get("tropes")).get("origin"),
        "ending": as_object(data.get("ending")).get("type"),
        "pov": f"{pov.get('person')} / {pov.get('structure')}",
        "theme": as_object(data.get("theme")).get("core"),
    }


def _summarize_characters(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "protagonist": as_object(data.get("protagonist")).get("name"),
        "love_interests": len(as_array(data.get("love_interests"))),
        "rival_dynamics": len(as_array(as_object(data.get("dynamics")).get("rivals"))),
    }


def _summarize_central_plot(data: Dict[str, Any]) -> Dict[str, Any]:
    dark_moment = as_object(data.get("dark_moment")).get("what_happens") or ""
    return {
        "key_moments": len(as_array(data.get("key_moments"))),
        "dark_moment": str(dark_moment)[:50],
    }


def _summarize_subplots(data: Dict[str, Any]) -> Dict[str, Any]:
    forces = as_object(data.get("forces"))
    return {
        "external_pressures": len(as_array(forces.get("external_pressures"))),
        "thematic_positions": len(as_array(forces.get("thematic_positions"))),
        "subplots": len(as_array(data.get("subplots"))),
        "timeline_entries": len(as_array(data.get("collision_timeline"))),
    }


def _summarize_plot_architecture(data: Dict[str, Any]) -> Dict[str, Any]:
    beat_sheet = data.get("beat_sheet")
    return {
        "beats": len(beat_sheet) if isinstance(beat_sheet, (dict, list)) else 0,
        "foreshadowing_seeds": len(as_array(as_object(data.get("foreshadowing")).get("seeds"))),
        "climax_chapter": as_object(data.get("tension_curve")).get("climax_chapter"),
    }


# ============================================================================
# Stage declarations
# ============================================================================

STORY_DNA = PhaseSpec(
    stage=1,
    key="story_dna",
    name="Story DNA",
    description="Establishing tropes, theme, ending and central conflict",
    system_prompt=bible_prompts.STORY_DNA_SYSTEM_PROMPT,
    build_prompt=bible_prompts.build_story_dna_user_prompt,
    primary_fields=[
        "subgenre", "tropes", "ending", "tone", "timespan", "pov", "conflict", "theme", "premise",
    ],
    coherence_fields=["concept_honored", "level_considered"],
    summarize=_summarize_story_dna,
)

CHARACTERS = PhaseSpec(
    stage=2,
    key="characters",
    name="Characters",
    description="Developing the protagonist and love interests",
    system_prompt=bible_prompts.CHARACTERS_SYSTEM_PROMPT,
    build_prompt=bible_prompts.build_characters_user_prompt,
    primary_fields=["protagonist", "love_interests", "dynamics"],
    coherence_fields=["wounds_tied_to_theme", "arcs_match_ending", "love_interest_count_justified"],
    structural_check=check_characters,
    summarize=_summarize_characters,
)

CENTRAL_PLOT = PhaseSpec(
    stage=3,
    key="central_plot",
    name="Central Plot",
    description="Designing the romance arc, dark moment and resolution",
    system_prompt=bible_prompts.CENTRAL_PLOT_SYSTEM_PROMPT,
    build_prompt=bible_prompts.build_central_plot_user_prompt,
    primary_fields=["arc_shape", "key_moments", "wound_integration", "dark_moment", "resolution"],
    coherence_fields=[
        "arc_follows_origin_trope", "dark_moment_triggers_wounds", "resolution_earns_ending",
    ],
    summarize=_summarize_central_plot,
)

SUBPLOTS = PhaseSpec(
    stage=4,
    key="subplots",
    name="Subplots",
    description="Mapping forces into subplots and their collisions",
    system_prompt=bible_prompts.SUBPLOTS_SYSTEM_PROMPT,
    build_prompt=bible_prompts.build_subplots_user_prompt,
    primary_fields=["forces", "subplots", "collision_timeline"],
    coherence_fields=["pressures_mapped", "positions_not_duplicated", "every_subplot_collides"],
    structural_check=check_subplots,
    summarize=_summarize_subplots,
)

PLOT_ARCHITECTURE = PhaseSpec(
    stage=5,
    key="plot_architecture",
    name="Plot Architecture",
    description="Creating the beat sheet, foreshadowing and tension curve",
    system_prompt=bible_prompts.PLOT_ARCHITECTURE_SYSTEM_PROMPT,
    build_prompt=bible_prompts.build_plot_architecture_user_prompt,
    primary_fields=["beat_sheet", "foreshadowing", "tension_curve"],
    coherence_fields=[
        "timespan_honored",
        "characters_used",
        "key_moments_placed",
        "subplots_placed",
        "conflict_pressured",
        "theme_expressed",
        "arcs_delivered",
    ],
    summarize=_summarize_plot_architecture,
)

PHASE_SPECS: List[PhaseSpec] = [STORY_DNA, CHARACTERS, CENTRAL_PLOT, SUBPLOTS, PLOT_ARCHITECTURE]


# ============================================================================
# Executor
# ============================================================================


class PhaseExecutor:
    """Runs one declared stage against the model."""

    def __init__(
        self,
        spec: PhaseSpec,
        llm_client: LLMClient,
        options: Optional[CallOptions] = None,
    ):
        """Initialize the executor.

        Args:
            spec: Stage declaration
            llm_client: Client used for the stage's model call
            options: Call options (default: CallOptions with the stage's max_tokens)
        """
        self.spec = spec
        self.llm_client = llm_client
        self.options = options or CallOptions(max_tokens=spec.max_tokens)

    def execute(self, context: PipelineContext) -> Union[StageResult, StageFailure]:
        """Run the stage.

        Args:
            context: Run context holding every earlier stage's output

        Returns:
            StageResult on success (coherence problems attached as warnings),
            StageFailure when the model call, extraction or primary fields fail,
            or when anything else goes wrong while running the stage

        Raises:
            MissingStageOutputError: If an earlier stage has not run yet
        """
        spec = self.spec
        with pipeline_stage_logger(spec.key, stage=spec.stage) as stage_logger:
            try:
                return self._run(context, stage_logger)
            except MissingStageOutputError:
                raise
            except Exception as e:
                stage_logger.exception(f"Stage {spec.stage} failed unexpectedly: {e}")
                return self._failure(FailureKind.UNEXPECTED, f"Stage {spec.stage} failed: {e}")

    def _run(self, context: PipelineContext, stage_logger: logging.Logger) -> Union[StageResult, StageFailure]:
        spec = self.spec
        user_prompt = spec.build_prompt(context)

        try:
            response = self.llm_client.generate_text(spec.system_prompt, user_prompt, self.options)
        except Exception as e:
            stage_logger.error(f"Stage {spec.stage} model call failed: {e}")
            return self._failure(FailureKind.MODEL_CALL, f"Stage {spec.stage} model call failed: {e}")

        outcome = extract_json(response)
        if isinstance(outcome, ExtractionFailure):
            stage_logger.error(f"Stage {spec.stage} JSON parse failed: {outcome.error}")
            return self._failure(
                FailureKind.EXTRACTION,
                f"Stage {spec.stage} JSON parse failed: {outcome.error}",
                raw=outcome.raw,
            )

        data = outcome.value
        problems = self._structural_problems(data)
        if problems:
            message = f"Stage {spec.stage} missing required fields: {'; '.join(problems)}"
            stage_logger.error(message)
            return self._failure(FailureKind.PRIMARY_FIELDS, message, raw=truncate_raw(response))

        coherence = validate_coherence(data.get("coherence_check"), spec.coherence_fields)
        warnings = []
        if not coherence.valid:
            stage_logger.warning(f"Stage {spec.stage} coherence warning: {coherence.message}")
            warnings.append(StageWarning(code="coherence", message=coherence.message))

        if spec.summarize:
            stage_logger.info(f"Stage {spec.stage} complete: {spec.summarize(data)}")

        return StageResult(
            stage=spec.stage,
            key=spec.key,
            name=spec.name,
            raw_response=response,
            data=data,
            coherence=coherence,
            warnings=warnings,
        )

    def _structural_problems(self, data: Any) -> List[str]:
        missing = find_missing_primary_fields(data, self.spec.primary_fields)
        if missing:
            return [", ".join(missing)]
        if self.spec.structural_check:
            return self.spec.structural_check(data)
        return []

    def _failure(self, kind: FailureKind, message: str, raw: str = "") -> StageFailure:
        return StageFailure(stage=self.spec.stage, key=self.spec.key, kind=kind, message=message, raw=raw)

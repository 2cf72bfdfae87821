"""Pydantic models for all pipeline entities.

This module defines the data models passed between pipeline stages and the
aggregate document handed back to callers. Business fields produced by the
model (tropes, wounds, beats, ...) are kept as plain JSON; only the
structure the pipeline itself relies on is typed.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storybible.constants import CHAPTER_COUNTS
from storybible.exceptions import MissingStageOutputError
from storybible.models.audit import BibleAudit

CHAPTER_BREAKDOWN_KEY = "chapter_breakdown"


# ============================================================================
# Enums
# ============================================================================


class LengthPreset(str, Enum):
    """Length preset; each maps to a fixed chapter count."""

    NOVELLA = "novella"
    NOVEL = "novel"

    @property
    def chapter_count(self) -> int:
        return CHAPTER_COUNTS[self.value]


class ReadingLevel(str, Enum):
    """Reading level tier."""

    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    NATIVE = "Native"


class ChapterStatus(str, Enum):
    """Lifecycle of one chapter in the detail pass."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    DETAILED = "detailed"
    DEGRADED = "degraded"


class FailureKind(str, Enum):
    """Why a stage failed fatally."""

    MODEL_CALL = "model_call"
    EXTRACTION = "extraction"
    PRIMARY_FIELDS = "primary_fields"
    UNEXPECTED = "unexpected"


# ============================================================================
# Validation results
# ============================================================================


class CoherenceReport(BaseModel):
    """Presence check of a stage's self-attested coherence fields."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    missing: List[str] = Field(default_factory=list)
    message: str


class StageWarning(BaseModel):
    """Non-fatal finding attached to a stage result."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Short machine-readable code, e.g. 'coherence'")
    message: str


# ============================================================================
# Stage results
# ============================================================================


class StageResult(BaseModel):
    """Parsed, validated output of one pipeline stage."""

    model_config = ConfigDict(frozen=True)

    stage: int = Field(..., ge=1, description="Stage number (1-6)")
    key: str = Field(..., description="Stage key, e.g. 'story_dna'")
    name: str
    raw_response: str = Field(..., description="Model text the value was extracted from")
    data: Any = Field(..., description="Decoded structured value")
    coherence: CoherenceReport
    warnings: List[StageWarning] = Field(default_factory=list)


class StageFailure(BaseModel):
    """Hard failure of a stage; aborts the run."""

    model_config = ConfigDict(frozen=True)

    stage: int
    key: str
    kind: FailureKind
    message: str
    raw: str = Field(default="", description="Truncated excerpt of the offending response")


# ============================================================================
# Business field access
# ============================================================================


def as_object(value: Any) -> Dict[str, Any]:
    """``value`` when it is a JSON object, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def as_array(value: Any) -> List[Any]:
    """A JSON array as-is; a lone value becomes a one-item list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


# ============================================================================
# Chapters
# ============================================================================


class ChapterOutlineEntry(BaseModel):
    """One chapter of the outline pass; input to that chapter's detail pass.

    Only ``number`` is structural. The other fields are whatever the model
    wrote (beat identifiers may be names or numbers).
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    number: int = Field(..., ge=1)
    title: Optional[str] = None
    pov: Any = Field(None, description="Point-of-view character")
    purpose: Any = Field(None, description="What the chapter accomplishes")
    pivotal_moment: Any = Field(
        None, description="Key moment from the central plot or subplots placed here"
    )
    plot_beats: List[Any] = Field(
        default_factory=list, description="Beat-sheet beats placed in this chapter"
    )
    ends_with: Any = None

    @field_validator("title", mode="before")
    @classmethod
    def _title_as_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("plot_beats", mode="before")
    @classmethod
    def _beats_as_list(cls, value: Any) -> List[Any]:
        return as_array(value)


class Scene(BaseModel):
    """One scene of a chapter; ``events`` are its ordered micro-beats.

    Events and characters may be strings or objects; a lone value is wrapped
    in a list.
    """

    model_config = ConfigDict(extra="allow")

    location: Any = None
    characters: List[Any] = Field(default_factory=list)
    events: List[Any] = Field(default_factory=list)
    function: Any = None

    @field_validator("characters", "events", mode="before")
    @classmethod
    def _wrap_single(cls, value: Any) -> List[Any]:
        return as_array(value)


class Foreshadowing(BaseModel):
    plants: List[Any] = Field(default_factory=list)
    payoffs: List[Any] = Field(default_factory=list)


class ChapterHook(BaseModel):
    type: str = "emotional"
    description: str = "Chapter concludes"


class ChapterDetail(BaseModel):
    """Scene/beat expansion of one outline entry.

    A degraded chapter keeps its outline identity with an empty scene list.
    """

    model_config = ConfigDict(extra="allow")

    outline: ChapterOutlineEntry
    scenes: List[Scene] = Field(default_factory=list)
    reader_learns: List[Any] = Field(default_factory=list)
    foreshadowing: Foreshadowing = Field(default_factory=Foreshadowing)
    hook: ChapterHook = Field(default_factory=ChapterHook)
    status: ChapterStatus = ChapterStatus.PENDING
    attempts: int = 0

    @property
    def number(self) -> int:
        return self.outline.number

    @property
    def is_degraded(self) -> bool:
        return self.status == ChapterStatus.DEGRADED

    def event_count(self) -> int:
        return sum(len(scene.events) for scene in self.scenes)


class ChapterBreakdown(BaseModel):
    """Output of the chapter sub-pipeline."""

    chapters: List[ChapterDetail]
    pov_distribution: Dict[str, Any] = Field(default_factory=dict)
    coherence_check: Dict[str, Any] = Field(default_factory=dict)

    @property
    def detailed_count(self) -> int:
        return sum(1 for chapter in self.chapters if chapter.status == ChapterStatus.DETAILED)

    @property
    def degraded_count(self) -> int:
        return sum(1 for chapter in self.chapters if chapter.is_degraded)


# ============================================================================
# Run context
# ============================================================================


class PipelineContext(BaseModel):
    """Inputs of one run plus the decoded outputs of the stages completed so far.

    Prompt builders read prior stages only through ``require``; the
    orchestrator adds each stage's output with ``with_output`` once its
    StageResult exists.
    """

    model_config = ConfigDict(frozen=True)

    concept: str = Field(..., description="Concept used in prompts (expanded when expansion ran)")
    original_concept: str
    level: ReadingLevel
    length_preset: LengthPreset
    language: str
    level_guidance: str = Field(..., description="Rendered reading-level constraints")
    outputs: Dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = Field(None, description="Revision instructions for a regeneration")

    @property
    def chapter_count(self) -> int:
        return self.length_preset.chapter_count

    def require(self, key: str) -> Any:
        """Decoded output of an earlier stage.

        Raises:
            MissingStageOutputError: If that stage has not produced a result
        """
        if key not in self.outputs:
            raise MissingStageOutputError(f"Stage output '{key}' is not available yet")
        return self.outputs[key]

    def with_output(self, key: str, data: Any) -> "PipelineContext":
        return self.model_copy(update={"outputs": {**self.outputs, key: data}})

    def without_outputs_from(self, keys: List[str]) -> "PipelineContext":
        return self.model_copy(
            update={"outputs": {k: v for k, v in self.outputs.items() if k not in keys}}
        )


# ============================================================================
# Progress and aggregate document
# ============================================================================


class ProgressEvent(BaseModel):
    """Progress notification sent to the caller's ``on_progress`` callback."""

    phase: int
    total_phases: int
    phase_name: str
    description: str
    status: str = Field(..., description="starting | complete | regenerating | error | ...")
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BibleDocument(BaseModel):
    """The pipeline's sole output: every stage result, stage 6 carrying the chapters.

    The chapter list always holds exactly one entry per chapter of the length
    preset, degraded chapters included.
    """

    model_config = ConfigDict(frozen=True)

    concept: str
    expanded_concept: str
    level: ReadingLevel
    length_preset: LengthPreset
    language: str
    stages: Dict[str, StageResult]
    audit: Optional[BibleAudit] = None
    audit_attempts: int = 0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def check_chapter_count(self) -> "BibleDocument":
        breakdown = self.stages.get(CHAPTER_BREAKDOWN_KEY)
        if breakdown is None or not isinstance(breakdown.data, ChapterBreakdown):
            raise ValueError(f"stages must include a '{CHAPTER_BREAKDOWN_KEY}' ChapterBreakdown")
        expected = self.length_preset.chapter_count
        if len(breakdown.data.chapters) != expected:
            raise ValueError(
                f"chapter list has {len(breakdown.data.chapters)} entries, expected {expected}"
            )
        return self

    def stage_data(self, key: str) -> Any:
        """Decoded value of the stage with ``key``."""
        return self.stages[key].data

    @property
    def breakdown(self) -> ChapterBreakdown:
        return self.stages[CHAPTER_BREAKDOWN_KEY].data

    @property
    def chapters(self) -> List[ChapterDetail]:
        return self.breakdown.chapters

    @property
    def pov_distribution(self) -> Dict[str, Any]:
        return self.breakdown.pov_distribution

    @property
    def degraded_chapters(self) -> List[int]:
        return [chapter.number for chapter in self.chapters if chapter.is_degraded]

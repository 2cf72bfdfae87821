"""Stage 6: two-pass chapter breakdown.

Pass 1 asks for an outline of every chapter in one call. Pass 2 expands each
outline entry into scenes and events, one call per chapter, strictly in
chapter order. A chapter gets ``CHAPTER_DETAIL_MAX_ATTEMPTS`` attempts; when
none yields at least one scene it is kept as a degraded chapter (outline
identity, no scenes, placeholder hook) and the pass moves on.

A returned chapter is always detailed or degraded. Pending and attempting
only show up in the per-chapter log lines.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from storybible.constants import CHAPTER_DETAIL_MAX_ATTEMPTS, LLM_MAX_TOKENS, OUTLINE_MAX_TOKENS
from storybible.exceptions import MissingStageOutputError
from storybible.parsers.json_extractor import ExtractionFailure, extract_json, truncate_raw
from storybible.prompts.bible_prompts import (
    CHAPTER_DETAIL_SYSTEM_PROMPT,
    CHAPTER_OUTLINE_SYSTEM_PROMPT,
    build_chapter_detail_user_prompt,
    build_chapter_outline_user_prompt,
)
from storybible.utils.llm_client import CallOptions, LLMClient
from storybible.utils.logging_config import pipeline_stage_logger
from storybible.validators.coherence import validate_coherence
from storybible.validators.schema import (
    CHAPTER_BREAKDOWN_KEY,
    ChapterBreakdown,
    ChapterDetail,
    ChapterHook,
    ChapterOutlineEntry,
    ChapterStatus,
    FailureKind,
    Foreshadowing,
    PipelineContext,
    Scene,
    StageFailure,
    StageResult,
)

logger = logging.getLogger(__name__)

CHAPTER_BREAKDOWN_STAGE = 6
CHAPTER_BREAKDOWN_NAME = "Chapter Breakdown"
CHAPTER_BREAKDOWN_DESCRIPTION = "Outlining every chapter, then breaking each into scenes"
SUMMARY_COHERENCE_FIELDS = ["chapter_count_correct", "chapters_detailed", "chapters_degraded"]

ChapterCallback = Callable[[ChapterDetail, int], None]


class ChapterOutline(BaseModel):
    """Outline pass result, normalized to the requested chapter count."""

    entries: List[ChapterOutlineEntry]
    synthesized: List[int] = Field(
        default_factory=list, description="Chapter numbers the outline did not cover"
    )
    pov_distribution: Dict[str, Any] = Field(default_factory=dict)
    raw_response: str = ""


def _outline_entry(raw: Any, number: int) -> Optional[ChapterOutlineEntry]:
    """Outline entry for chapter ``number``, or None when ``raw`` carries nothing usable."""
    if isinstance(raw, str) and raw.strip():
        return ChapterOutlineEntry(number=number, purpose=raw.strip())
    if not isinstance(raw, dict):
        return None

    fields = {**raw, "number": number}
    try:
        return ChapterOutlineEntry.model_validate(fields)
    except ValidationError as e:
        # Keep the entry's identity, drop only the fields that did not validate
        rejected = {error["loc"][0] for error in e.errors() if error["loc"]}
        logger.warning(f"Chapter {number}: ignoring malformed outline fields {sorted(map(str, rejected))}")
        return ChapterOutlineEntry.model_validate(
            {key: value for key, value in fields.items() if key not in rejected}
        )


def normalize_outline(raw_chapters: List[Any], chapter_count: int) -> ChapterOutline:
    """Fit the model's chapter list to exactly ``chapter_count`` entries.

    Entries are taken by position and renumbered 1..N. Extra entries are
    dropped. A plain-text entry becomes the chapter's purpose. A missing
    entry (or one that is neither an object nor text) is replaced by a bare
    entry carrying only its number and is listed in ``synthesized``.

    Args:
        raw_chapters: ``chapters`` list from the outline response
        chapter_count: Requested number of chapters

    Returns:
        ChapterOutline with one entry per chapter
    """
    entries = []
    synthesized = []
    for index in range(chapter_count):
        number = index + 1
        raw = raw_chapters[index] if index < len(raw_chapters) else None
        entry = _outline_entry(raw, number)
        if entry is None:
            entry = ChapterOutlineEntry(number=number)
            synthesized.append(number)
        entries.append(entry)

    if len(raw_chapters) > chapter_count:
        logger.warning(f"Outline has {len(raw_chapters)} chapters, dropping {len(raw_chapters) - chapter_count}")

    return ChapterOutline(entries=entries, synthesized=synthesized)


def unwrap_chapter_payload(value: Any) -> Any:
    """Accept both ``{"scenes": ...}`` and ``{"chapters": [{"scenes": ...}]}``."""
    if isinstance(value, dict):
        chapters = value.get("chapters")
        if isinstance(chapters, list) and chapters and isinstance(chapters[0], dict):
            return chapters[0]
    return value


def _scene_payload(raw: Any) -> Dict[str, Any]:
    # A bare string or list is the scene's events; some responses name the list "beats"
    if not isinstance(raw, dict):
        return {"events": raw}
    if "events" not in raw and "beats" in raw:
        return {**raw, "events": raw["beats"]}
    return raw


def degraded_chapter(entry: ChapterOutlineEntry, attempts: int) -> ChapterDetail:
    """Chapter kept for its outline identity after every detail attempt failed."""
    return ChapterDetail(
        outline=entry,
        scenes=[],
        foreshadowing=Foreshadowing(),
        hook=ChapterHook(),
        status=ChapterStatus.DEGRADED,
        attempts=attempts,
    )


class ChapterSubPipeline:
    """Outline pass followed by per-chapter detail passes with degradation."""

    def __init__(
        self,
        llm_client: LLMClient,
        max_attempts: int = CHAPTER_DETAIL_MAX_ATTEMPTS,
        outline_options: Optional[CallOptions] = None,
        detail_options: Optional[CallOptions] = None,
        on_chapter: Optional[ChapterCallback] = None,
    ):
        """Initialize the sub-pipeline.

        Args:
            llm_client: Client used for every call
            max_attempts: Detail attempts per chapter before degrading it
            outline_options: Call options for the outline pass
            detail_options: Call options for each detail attempt
            on_chapter: Called with each chapter once it reaches a terminal state
                and the total chapter count
        """
        self.llm_client = llm_client
        self.max_attempts = max_attempts
        self.outline_options = outline_options or CallOptions(max_tokens=OUTLINE_MAX_TOKENS)
        self.detail_options = detail_options or CallOptions(max_tokens=LLM_MAX_TOKENS)
        self.on_chapter = on_chapter

    def execute(self, context: PipelineContext) -> Union[StageResult, StageFailure]:
        """Run both passes.

        Args:
            context: Run context with stages 1-5 complete

        Returns:
            StageResult whose data is a ChapterBreakdown with exactly one entry
            per requested chapter, or StageFailure when the outline pass fails
            or anything else goes wrong while running the stage

        Raises:
            MissingStageOutputError: If stages 1-5 have not all run
        """
        chapter_count = context.chapter_count
        with pipeline_stage_logger(
            CHAPTER_BREAKDOWN_KEY, stage=CHAPTER_BREAKDOWN_STAGE, chapter_count=chapter_count
        ) as stage_logger:
            try:
                return self._run(context, stage_logger)
            except MissingStageOutputError:
                raise
            except Exception as e:
                stage_logger.exception(f"Stage {CHAPTER_BREAKDOWN_STAGE} failed unexpectedly: {e}")
                return self._failure(FailureKind.UNEXPECTED, f"Stage {CHAPTER_BREAKDOWN_STAGE} failed: {e}")

    def _run(self, context: PipelineContext, stage_logger: logging.Logger) -> Union[StageResult, StageFailure]:
        chapter_count = context.chapter_count
        outline = self.generate_outline(context)
        if isinstance(outline, StageFailure):
            stage_logger.error(outline.message)
            return outline

        stage_logger.info(
            f"Outline complete: {chapter_count} chapters "
            f"({len(outline.synthesized)} synthesized)"
        )

        chapters = []
        for entry in outline.entries:
            if entry.number in outline.synthesized:
                stage_logger.warning(f"Chapter {entry.number}: no outline entry, degrading")
                chapter = degraded_chapter(entry, attempts=0)
            else:
                chapter = self.detail_chapter(context, entry)
            chapters.append(chapter)
            self._notify(chapter, chapter_count)

        breakdown = ChapterBreakdown(
            chapters=chapters,
            pov_distribution=outline.pov_distribution,
            coherence_check=self._summary(chapters, chapter_count),
        )
        coherence = validate_coherence(breakdown.coherence_check, SUMMARY_COHERENCE_FIELDS)

        stage_logger.info(
            f"Stage {CHAPTER_BREAKDOWN_STAGE} complete: {len(chapters)} chapters "
            f"({breakdown.detailed_count} detailed, {breakdown.degraded_count} degraded)"
        )

        return StageResult(
            stage=CHAPTER_BREAKDOWN_STAGE,
            key=CHAPTER_BREAKDOWN_KEY,
            name=CHAPTER_BREAKDOWN_NAME,
            raw_response=outline.raw_response,
            data=breakdown,
            coherence=coherence,
        )

    def generate_outline(self, context: PipelineContext) -> Union[ChapterOutline, StageFailure]:
        """Outline pass: one call covering every chapter."""
        user_prompt = build_chapter_outline_user_prompt(context)
        try:
            response = self.llm_client.generate_text(
                CHAPTER_OUTLINE_SYSTEM_PROMPT, user_prompt, self.outline_options
            )
        except Exception as e:
            return self._failure(FailureKind.MODEL_CALL, f"Stage 6 outline model call failed: {e}")

        outcome = extract_json(response)
        if isinstance(outcome, ExtractionFailure):
            return self._failure(
                FailureKind.EXTRACTION, f"Stage 6 outline parse failed: {outcome.error}", outcome.raw
            )

        value = outcome.value
        raw_chapters = value.get("chapters") if isinstance(value, dict) else None
        if not isinstance(raw_chapters, list) or not raw_chapters:
            return self._failure(
                FailureKind.PRIMARY_FIELDS,
                "Stage 6 outline missing required fields: chapters",
                truncate_raw(response),
            )

        outline = normalize_outline(raw_chapters, context.chapter_count)
        pov_distribution = value.get("pov_distribution")
        return outline.model_copy(
            update={
                "pov_distribution": pov_distribution if isinstance(pov_distribution, dict) else {},
                "raw_response": response,
            }
        )

    def detail_chapter(self, context: PipelineContext, entry: ChapterOutlineEntry) -> ChapterDetail:
        """Detail pass for one chapter; failed attempts degrade it instead of raising.

        Args:
            context: Run context with stages 1-5 complete
            entry: The chapter's outline entry

        Returns:
            ChapterDetail in the detailed or degraded state
        """
        status = ChapterStatus.PENDING
        title = entry.title or "Untitled"
        logger.info(f"Chapter {entry.number}: {status.value} - \"{title}\"")

        for attempt in range(1, self.max_attempts + 1):
            status = ChapterStatus.ATTEMPTING
            logger.debug(f"Chapter {entry.number}: {status.value} ({attempt}/{self.max_attempts})")

            chapter = self._attempt_detail(context, entry, attempt)
            if chapter is not None:
                logger.info(
                    f"Chapter {entry.number}: detailed on attempt {attempt} "
                    f"({len(chapter.scenes)} scenes, {chapter.event_count()} events)"
                )
                return chapter

        logger.warning(
            f"Chapter {entry.number}: degraded after {self.max_attempts} attempts, keeping outline only"
        )
        return degraded_chapter(entry, attempts=self.max_attempts)

    def _attempt_detail(
        self,
        context: PipelineContext,
        entry: ChapterOutlineEntry,
        attempt: int,
    ) -> Optional[ChapterDetail]:
        """One detail attempt; None is a soft failure."""
        label = f"Chapter {entry.number} attempt {attempt}"
        user_prompt = build_chapter_detail_user_prompt(context, entry)
        try:
            response = self.llm_client.generate_text(
                CHAPTER_DETAIL_SYSTEM_PROMPT, user_prompt, self.detail_options
            )
        except Exception as e:
            logger.warning(f"{label}: model call failed - {str(e)[:200]}")
            return None

        outcome = extract_json(response)
        if isinstance(outcome, ExtractionFailure):
            logger.warning(f"{label}: parse failed - {outcome.error}")
            return None

        data = unwrap_chapter_payload(outcome.value)
        raw_scenes = data.get("scenes") if isinstance(data, dict) else None
        if not isinstance(raw_scenes, list) or not raw_scenes:
            logger.warning(f"{label}: no scenes in response")
            return None

        try:
            scenes = [Scene.model_validate(_scene_payload(scene)) for scene in raw_scenes]
        except ValidationError as e:
            logger.warning(f"{label}: malformed scenes ({e.error_count()} errors)")
            return None

        return ChapterDetail(
            outline=entry,
            scenes=scenes,
            reader_learns=self._list_field(data, "reader_learns"),
            foreshadowing=self._foreshadowing(data.get("foreshadowing")),
            hook=self._hook(data.get("chapter_hook") or data.get("hook")),
            status=ChapterStatus.DETAILED,
            attempts=attempt,
        )

    @staticmethod
    def _list_field(data: Dict[str, Any], key: str) -> List[Any]:
        value = data.get(key)
        return value if isinstance(value, list) else []

    @staticmethod
    def _foreshadowing(value: Any) -> Foreshadowing:
        if isinstance(value, dict):
            try:
                return Foreshadowing.model_validate(value)
            except ValidationError:
                logger.debug("Ignoring malformed foreshadowing block")
        return Foreshadowing()

    @staticmethod
    def _hook(value: Any) -> ChapterHook:
        if isinstance(value, dict):
            try:
                return ChapterHook.model_validate(value)
            except ValidationError:
                logger.debug("Ignoring malformed chapter hook")
        return ChapterHook()

    @staticmethod
    def _summary(chapters: List[ChapterDetail], chapter_count: int) -> Dict[str, str]:
        detailed = [chapter.number for chapter in chapters if chapter.status == ChapterStatus.DETAILED]
        degraded = [chapter.number for chapter in chapters if chapter.is_degraded]
        return {
            "chapter_count_correct": (
                "Yes" if len(chapters) == chapter_count
                else f"Expected {chapter_count}, got {len(chapters)}"
            ),
            "chapters_detailed": f"{len(detailed)}/{chapter_count} chapters have scenes",
            "chapters_degraded": ", ".join(str(n) for n in degraded) if degraded else "none",
        }

    def _notify(self, chapter: ChapterDetail, chapter_count: int) -> None:
        if self.on_chapter is None:
            return
        try:
            self.on_chapter(chapter, chapter_count)
        except Exception as e:
            logger.warning(f"Chapter callback error: {e}")

    @staticmethod
    def _failure(kind: FailureKind, message: str, raw: str = "") -> StageFailure:
        return StageFailure(
            stage=CHAPTER_BREAKDOWN_STAGE,
            key=CHAPTER_BREAKDOWN_KEY,
            kind=kind,
            message=message,
            raw=raw,
        )

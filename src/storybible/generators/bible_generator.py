"""Story bible pipeline orchestrator.

Runs the stages strictly in sequence, threading each stage's decoded output
into the next stage's context:

0. Concept expansion (short concepts only)
1. Story DNA
2. Characters
3. Central plot
4. Subplots
5. Plot architecture
6. Chapter breakdown (outline pass + per-chapter detail passes)
7. Audit (optional), regenerating from the earliest failing stage

A stage's hard failure (StageFailure) becomes a BibleGenerationError at this
boundary; everything completed before it travels on the error as ``partial``.
"""

import logging
import random
from typing import Callable, Dict, List, Optional, Union

from langfuse import observe

from storybible.exceptions import BibleGenerationError
from storybible.generators.chapter_breakdown import (
    CHAPTER_BREAKDOWN_DESCRIPTION,
    CHAPTER_BREAKDOWN_NAME,
    CHAPTER_BREAKDOWN_STAGE,
    ChapterSubPipeline,
)
from storybible.generators.concept_expander import ConceptExpander
from storybible.generators.phases import PHASE_SPECS, PhaseExecutor
from storybible.prompts.level_definitions import format_level_definition_for_prompt
from storybible.utils.llm_client import LLMClient
from storybible.validators.bible_audit import BibleAuditor
from storybible.validators.schema import (
    BibleDocument,
    ChapterDetail,
    LengthPreset,
    PipelineContext,
    ProgressEvent,
    ReadingLevel,
    StageFailure,
    StageResult,
)

logger = logging.getLogger(__name__)

AUDIT_STAGE = 7
LAST_STAGE = CHAPTER_BREAKDOWN_STAGE

STAGE_DESCRIPTIONS = {
    **{spec.stage: (spec.name, spec.description) for spec in PHASE_SPECS},
    CHAPTER_BREAKDOWN_STAGE: (CHAPTER_BREAKDOWN_NAME, CHAPTER_BREAKDOWN_DESCRIPTION),
    AUDIT_STAGE: ("Audit", "Comprehensive coherence and quality audit"),
}

ProgressCallback = Callable[[ProgressEvent], None]


class BibleGenerator:
    """Generates a complete story bible from a short concept.

    Features:
    - Strictly sequential stages, each fed every earlier stage's output
    - Hard stage failures abort the run with BibleGenerationError
    - Chapter-level degradation never shrinks the chapter list
    - Optional concept expansion, progress callback and final audit
    - Regeneration from any stage of an existing document
    """

    def __init__(
        self,
        llm_client: LLMClient,
        expansion_client: Optional[LLMClient] = None,
        audit_client: Optional[LLMClient] = None,
        on_progress: Optional[ProgressCallback] = None,
        expand_concept: bool = True,
        audit_attempts: int = 0,
        library_summaries: Optional[List[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the generator.

        Args:
            llm_client: Client for stages 1-6
            expansion_client: Client for concept expansion (default: llm_client)
            audit_client: Client for the audit (default: llm_client)
            on_progress: Receives a ProgressEvent at every stage transition
            expand_concept: Expand concepts shorter than 20 words before stage 1
            audit_attempts: Maximum audits per run (0 disables the audit)
            library_summaries: Existing books the expanded concept must not repeat
            rng: Random source for concept expansion tracks
        """
        self.llm_client = llm_client
        self.expansion_client = expansion_client or llm_client
        self.on_progress = on_progress
        self.expand_concept = expand_concept
        self.audit_attempts = audit_attempts
        self.library_summaries = library_summaries or []
        self.rng = rng or random.Random()

        self.executors = [PhaseExecutor(spec, llm_client) for spec in PHASE_SPECS]
        self.chapter_pipeline = ChapterSubPipeline(llm_client, on_chapter=self._report_chapter)
        self.auditor = BibleAuditor(audit_client or llm_client)

    @property
    def total_phases(self) -> int:
        return AUDIT_STAGE if self.audit_attempts > 0 else LAST_STAGE

    @observe()
    def generate(
        self,
        concept: str,
        level: Union[ReadingLevel, str],
        length_preset: Union[LengthPreset, str],
        language: str = "Spanish",
    ) -> BibleDocument:
        """Run the full pipeline.

        Args:
            concept: Short natural-language story concept
            level: Beginner, Intermediate, or Native
            length_preset: novella (12 chapters) or novel (35 chapters)
            language: Target language name

        Returns:
            Frozen BibleDocument with every stage result and all chapters

        Raises:
            InvalidLevelError: If ``level`` is not a known tier
            ValueError: If ``length_preset`` is not a known preset
            BibleGenerationError: If any stage fails fatally
        """
        context = self._initial_context(concept, level, length_preset, language)
        logger.info(
            f"Starting bible generation: level={context.level.value}, "
            f"length={context.length_preset.value} ({context.chapter_count} chapters), "
            f"language={language}"
        )

        try:
            context = context.model_copy(update={"concept": self._expand(concept, language)})
            stages = self._run_stages(context, start_stage=1, stages={})
            document = self._build_document(context, stages)
            document = self._audit(document)
        except BibleGenerationError as e:
            logger.error(f"Bible generation failed at stage {e.stage} ({e.kind}): {e}")
            self._report_error(e)
            raise

        logger.info(
            f"Bible generation complete: {len(document.chapters)} chapters, "
            f"degraded={document.degraded_chapters or 'none'}, "
            f"audit={document.audit.validation_status if document.audit else 'NOT_AUDITED'}"
        )
        return document

    def regenerate_from(
        self,
        stage_number: int,
        document: BibleDocument,
        instructions: Optional[str] = None,
    ) -> BibleDocument:
        """Re-run ``stage_number`` and every later stage of an existing document.

        Args:
            stage_number: First stage to regenerate (1-6)
            document: Document whose earlier stages are kept
            instructions: Revision instructions added to every regenerated prompt

        Returns:
            New BibleDocument (the input is left untouched; audit cleared)

        Raises:
            ValueError: If ``stage_number`` is outside 1-6
            BibleGenerationError: If a regenerated stage fails fatally
        """
        try:
            return self._regenerate(stage_number, document, instructions)
        except BibleGenerationError as e:
            self._report_error(e)
            raise

    # ------------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------------

    def _initial_context(
        self,
        concept: str,
        level: Union[ReadingLevel, str],
        length_preset: Union[LengthPreset, str],
        language: str,
    ) -> PipelineContext:
        level_name = level.value if isinstance(level, ReadingLevel) else level
        level_guidance = format_level_definition_for_prompt(level_name, language)
        return PipelineContext(
            concept=concept,
            original_concept=concept,
            level=ReadingLevel(level_name),
            length_preset=LengthPreset(length_preset),
            language=language,
            level_guidance=level_guidance,
        )

    def _expand(self, concept: str, language: str) -> str:
        if not self.expand_concept:
            return concept
        expander = ConceptExpander(self.expansion_client, language=language, rng=self.rng)
        try:
            return expander.expand(concept, self.library_summaries)
        except Exception as e:
            raise BibleGenerationError(f"Concept expansion failed: {e}", stage=0, kind="model_call") from e

    def _run_stages(
        self,
        context: PipelineContext,
        start_stage: int,
        stages: Dict[str, StageResult],
    ) -> Dict[str, StageResult]:
        """Run stages ``start_stage``..6 in order, adding each result to ``stages``."""
        for executor in self.executors:
            spec = executor.spec
            if spec.stage < start_stage:
                continue
            self._report(spec.stage, "starting")
            result = executor.execute(context)
            if isinstance(result, StageFailure):
                raise self._stage_error(result, stages)
            stages[result.key] = result
            context = context.with_output(result.key, result.data)
            self._report(spec.stage, "complete", spec.summarize(result.data) if spec.summarize else None)

        self._report(CHAPTER_BREAKDOWN_STAGE, "starting", {"chapter_count": context.chapter_count})
        result = self.chapter_pipeline.execute(context)
        if isinstance(result, StageFailure):
            raise self._stage_error(result, stages)
        stages[result.key] = result
        self._report(
            CHAPTER_BREAKDOWN_STAGE,
            "complete",
            {
                "chapter_count": len(result.data.chapters),
                "detailed": result.data.detailed_count,
                "degraded": result.data.degraded_count,
            },
        )
        return stages

    def _regenerate(
        self,
        stage_number: int,
        document: BibleDocument,
        instructions: Optional[str],
    ) -> BibleDocument:
        if not 1 <= stage_number <= LAST_STAGE:
            raise ValueError(f"Invalid stage number: {stage_number}. Must be 1-{LAST_STAGE}.")

        logger.info(f"Regenerating from stage {stage_number}")
        if instructions:
            logger.info(f"Regeneration instructions: {instructions}")

        kept = {key: result for key, result in document.stages.items() if result.stage < stage_number}
        context = PipelineContext(
            concept=document.expanded_concept,
            original_concept=document.concept,
            level=document.level,
            length_preset=document.length_preset,
            language=document.language,
            level_guidance=format_level_definition_for_prompt(document.level.value, document.language),
            outputs={key: result.data for key, result in kept.items()},
            instructions=instructions,
        )
        stages = self._run_stages(context, start_stage=stage_number, stages=dict(kept))
        return self._build_document(context, stages, audit_attempts=document.audit_attempts)

    def _build_document(
        self,
        context: PipelineContext,
        stages: Dict[str, StageResult],
        audit_attempts: int = 0,
    ) -> BibleDocument:
        return BibleDocument(
            concept=context.original_concept,
            expanded_concept=context.concept,
            level=context.level,
            length_preset=context.length_preset,
            language=context.language,
            stages=dict(sorted(stages.items(), key=lambda item: item[1].stage)),
            audit_attempts=audit_attempts,
        )

    @staticmethod
    def _stage_error(failure: StageFailure, stages: Dict[str, StageResult]) -> BibleGenerationError:
        if failure.raw:
            logger.debug(f"Stage {failure.stage} raw excerpt: {failure.raw}")
        return BibleGenerationError(
            failure.message,
            stage=failure.stage,
            kind=failure.kind.value,
            partial={key: result.data for key, result in stages.items()},
        )

    # ------------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------------

    def _audit(self, document: BibleDocument) -> BibleDocument:
        """Audit, regenerating from the earliest failing stage, up to ``audit_attempts`` audits.

        Audit problems never abort the run: a failed audit call or a failed
        regeneration keeps the last complete document.
        """
        attempts = 0
        while attempts < self.audit_attempts:
            attempts += 1
            self._report(AUDIT_STAGE, "starting", {"attempt": attempts, "max_attempts": self.audit_attempts})

            try:
                audit = self.auditor.audit(document)
            except Exception as e:
                logger.error(f"Audit attempt {attempts} failed: {e}")
                break

            document = document.model_copy(update={"audit": audit, "audit_attempts": attempts})
            if audit.is_passing():
                self._report(
                    AUDIT_STAGE, "complete", {"validation_status": audit.validation_status, "attempts": attempts}
                )
                return document

            earliest = audit.recovery_plan.earliest_stage()
            if attempts >= self.audit_attempts or earliest is None or not 1 <= earliest <= LAST_STAGE:
                break

            self._report(
                AUDIT_STAGE,
                "regenerating",
                {"from_stage": earliest, "stages": audit.recovery_plan.required_regenerations},
            )
            try:
                document = self._regenerate(
                    earliest, document, audit.recovery_plan.specific_instructions or None
                )
            except BibleGenerationError as e:
                logger.error(f"Regeneration from stage {earliest} failed, keeping previous bible: {e}")
                break

        if self.audit_attempts > 0:
            status = document.audit.validation_status if document.audit else "NOT_AUDITED"
            self._report(AUDIT_STAGE, "complete_with_issues", {"validation_status": status, "attempts": attempts})
        return document

    # ------------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------------

    def _report(self, phase: int, status: str, details: Optional[Dict] = None) -> None:
        name, description = STAGE_DESCRIPTIONS[phase]
        logger.info(f"[Stage {phase}/{self.total_phases}] {name}: {status}")
        self._emit(
            ProgressEvent(
                phase=phase,
                total_phases=self.total_phases,
                phase_name=name,
                description=description,
                status=status,
                details=details,
            )
        )

    def _report_chapter(self, chapter: ChapterDetail, chapter_count: int) -> None:
        self._report(
            CHAPTER_BREAKDOWN_STAGE,
            "chapter_complete",
            {
                "chapter": chapter.number,
                "chapter_count": chapter_count,
                "status": chapter.status.value,
                "scenes": len(chapter.scenes),
            },
        )

    def _report_error(self, error: BibleGenerationError) -> None:
        self._emit(
            ProgressEvent(
                phase=0,
                total_phases=self.total_phases,
                phase_name="Error",
                description="Pipeline failed",
                status="error",
                details={"error": str(error), "stage": error.stage, "kind": error.kind},
            )
        )

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(event)
        except Exception as e:
            logger.warning(f"Progress callback error: {e}")

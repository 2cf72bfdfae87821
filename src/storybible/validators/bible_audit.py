"""Bible Audit Implementation

This module runs the optional final gate over a complete bible: one
structured model call that checks 13 coherence categories and, on failure,
names the stages to regenerate. Chapters are compressed to counts and
summaries so a full novel fits in one prompt.
"""

import json
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from storybible.models.audit import AUDIT_CHECK_NAMES, BibleAudit
from storybible.utils.llm_client import LLMClient
from storybible.validators.schema import CHAPTER_BREAKDOWN_KEY, BibleDocument, ChapterDetail

logger = logging.getLogger(__name__)

AUDIT_SYSTEM_PROMPT = (
    "You are a story continuity editor. Audit complete story bibles for coherence, "
    "completeness and internal consistency, and name the exact stage that must be "
    "regenerated for every critical problem."
)

_CHECK_GUIDANCE = {
    "character_arcs": "Every arc has setup, transformation and payoff",
    "subplot_resolution": "Every subplot completes its arc",
    "cause_and_effect": "Events chain logically",
    "foreshadowing_integrity": "Every seed is planted and paid off",
    "tension_curve": "Tension rises with valleys to rest in",
    "chapter_hooks": "Every chapter ends on a hook",
    "voice_distinction": "Characters sound different",
    "key_moment_placement": "Every key moment lands in a chapter",
    "timeline_consistency": "Time flows logically within the timespan",
    "pov_balance": "POV distribution matches the POV structure",
    "theme_expression": "The theme is expressed through character choices",
    "location_usage": "Locations are used consistently",
    "constraint_enforcement": "Obstacles stay real until they are resolved",
}


def compress_chapters_for_audit(chapters: List[ChapterDetail]) -> List[Dict[str, Any]]:
    """Keep chapter structure, drop event text.

    Args:
        chapters: Full chapter list

    Returns:
        One dict per chapter with outline fields, scene counts and scene summaries
    """
    compressed = []
    for chapter in chapters:
        outline = chapter.outline
        compressed.append(
            {
                "number": outline.number,
                "title": outline.title,
                "pov": outline.pov,
                "purpose": outline.purpose,
                "pivotal_moment": outline.pivotal_moment,
                "plot_beats": outline.plot_beats,
                "status": chapter.status.value,
                "scene_count": len(chapter.scenes),
                "total_events": chapter.event_count(),
                "scene_summaries": [
                    {
                        "location": scene.location,
                        "function": scene.function,
                        "event_count": len(scene.events),
                    }
                    for scene in chapter.scenes
                ],
                "ends_with": outline.ends_with or chapter.hook.description,
            }
        )
    return compressed


class BibleAuditor:
    """Structured-output audit of a complete bible."""

    def __init__(self, llm_client: LLMClient):
        """Initialize the auditor.

        Args:
            llm_client: Configured LLM client with instructor support
        """
        self.llm_client = llm_client

    def audit(self, document: BibleDocument) -> BibleAudit:
        """Audit every stage of ``document``.

        Args:
            document: Complete bible (audit field ignored)

        Returns:
            BibleAudit with status, per-check results and recovery plan

        Raises:
            ValidationError: If the model output doesn't match the audit schema
            Exception: If the model call fails after retries
        """
        logger.info(
            f"Auditing bible: {len(document.chapters)} chapters, "
            f"{len(document.degraded_chapters)} degraded"
        )
        prompt = self._build_audit_prompt(document)

        try:
            audit = self.llm_client.generate(
                prompt=prompt,
                response_model=BibleAudit,
                temperature=0.3,
                system_prompt=AUDIT_SYSTEM_PROMPT,
            )
        except ValidationError as e:
            logger.error(f"Bible audit output validation failed: {e}")
            raise
        except Exception as e:
            logger.error(f"Bible audit failed: {e}")
            raise

        audit.auditor_model = self.llm_client.model
        logger.info(
            f"Audit complete: status={audit.validation_status}, "
            f"failed_checks={audit.failed_checks()}, critical_issues={len(audit.critical_issues)}"
        )
        if not audit.is_passing():
            for issue in audit.critical_issues:
                logger.warning(f"Critical issue at {issue.location}: {issue.issue}")
        return audit

    def _build_audit_prompt(self, document: BibleDocument) -> str:
        sections = []
        for key, result in sorted(document.stages.items(), key=lambda item: item[1].stage):
            if key == CHAPTER_BREAKDOWN_KEY:
                continue
            sections.append(
                f"STAGE {result.stage} - {result.name.upper()}:\n"
                f"{json.dumps(result.data, indent=2, ensure_ascii=False)}"
            )

        chapters = json.dumps(
            {
                "chapters": compress_chapters_for_audit(document.chapters),
                "pov_distribution": document.pov_distribution,
            },
            indent=2,
            ensure_ascii=False,
        )
        sections.append(f"STAGE 6 - CHAPTER BREAKDOWN (compressed):\n{chapters}")

        checks = "\n".join(
            f"{i}. {name}: {_CHECK_GUIDANCE[name]}" for i, name in enumerate(AUDIT_CHECK_NAMES, 1)
        )

        return f"""Audit this story bible for a {document.level.value} {document.language} {document.length_preset.value}.

{chr(10).join(sections)}

Check all of these categories and report each one by name with status pass, fail or warning:
{checks}

Validation status:
- PASS: every check passes
- CONDITIONAL_PASS: warnings but no failures
- FAIL: at least one failure; list the stages to regenerate in recovery_plan.required_regenerations as "Stage N" (N from 1 to 6) with specific instructions

Set generation_ready to true only when the bible is complete and consistent."""

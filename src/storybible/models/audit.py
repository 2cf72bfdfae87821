"""Bible Audit Models

This module defines Pydantic models for the final audit of a complete story
bible. The audit checks 13 categories for coherence and completeness and, on
failure, names the stages to regenerate.
"""

import re
from datetime import UTC, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

AUDIT_CHECK_NAMES = [
    "character_arcs",
    "subplot_resolution",
    "cause_and_effect",
    "foreshadowing_integrity",
    "tension_curve",
    "chapter_hooks",
    "voice_distinction",
    "key_moment_placement",
    "timeline_consistency",
    "pov_balance",
    "theme_expression",
    "location_usage",
    "constraint_enforcement",
]

_STAGE_NUMBER = re.compile(r"(\d+)")


class AuditCheck(BaseModel):
    """Result of one audit category."""

    name: str = Field(..., description="Category name, e.g. 'character_arcs'")
    status: Literal["pass", "fail", "warning"]
    details: str = Field(default="", description="Specific findings")
    issues: List[str] = Field(default_factory=list)


class CriticalIssue(BaseModel):
    issue: str
    location: str = Field(..., description="Which stage/chapter")
    impact: str = Field(default="", description="What breaks if not fixed")
    fix: str = Field(default="", description="Recommended fix")
    regenerate_from: Optional[str] = Field(None, description="Stage to regenerate from, e.g. 'Stage 3'")


class AuditWarning(BaseModel):
    issue: str
    location: str
    recommendation: str = ""


class RecoveryPlan(BaseModel):
    required_regenerations: List[str] = Field(
        default_factory=list, description="Stages to regenerate, e.g. ['Stage 4', 'Stage 5']"
    )
    specific_instructions: str = Field(default="", description="What to fix in regeneration")

    def earliest_stage(self) -> Optional[int]:
        """Lowest stage number named in ``required_regenerations``."""
        numbers = []
        for entry in self.required_regenerations:
            match = _STAGE_NUMBER.search(entry)
            if match:
                numbers.append(int(match.group(1)))
        return min(numbers) if numbers else None


class BibleAudit(BaseModel):
    """Comprehensive coherence audit of a complete bible."""

    validation_status: Literal["PASS", "CONDITIONAL_PASS", "FAIL"]
    summary: str = Field(..., description="One paragraph overall assessment")
    checks: List[AuditCheck] = Field(default_factory=list)
    critical_issues: List[CriticalIssue] = Field(default_factory=list)
    warnings: List[AuditWarning] = Field(default_factory=list)
    recovery_plan: RecoveryPlan = Field(default_factory=RecoveryPlan)
    generation_ready: bool = False

    audited_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    auditor_model: Optional[str] = None

    def is_passing(self) -> bool:
        return self.validation_status in ("PASS", "CONDITIONAL_PASS")

    def failed_checks(self) -> List[str]:
        return [check.name for check in self.checks if check.status == "fail"]

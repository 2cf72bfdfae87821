"""Typed response models for structured (instructor) model calls."""

from storybible.models.audit import BibleAudit, RecoveryPlan

__all__ = ["BibleAudit", "RecoveryPlan"]

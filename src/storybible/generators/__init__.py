"""Generators for the story bible pipeline.

- phases.py: Stage declarations and the generic executor for stages 1-5
- chapter_breakdown.py: Stage 6 outline and per-chapter detail passes
- concept_expander.py: Expansion of short concepts before stage 1
- bible_generator.py: Orchestrator sequencing every stage
"""

from storybible.generators.bible_generator import BibleGenerator

__all__ = ["BibleGenerator"]

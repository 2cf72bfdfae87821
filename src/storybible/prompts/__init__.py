"""Centralized prompts for the story bible pipeline.

This package contains all model prompts used throughout the pipeline:
- level_definitions.py: Reading-level constraint profiles rendered into prompts
- bible_prompts.py: System prompts and user-prompt builders for the six stages
- concept_prompts.py: Concept expansion templates
"""

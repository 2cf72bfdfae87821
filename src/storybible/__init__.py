"""
Story Bible Generation Pipeline

This package turns a short concept into a complete story bible for a graded
reader novel: story DNA, characters, central plot, subplots, plot
architecture, and a scene-by-scene chapter breakdown.

**Version**: 0.1.0
**Python**: >=3.11
**Key Dependencies**: anthropic, openai, instructor, pydantic, langfuse
"""

__version__ = "0.1.0"
__author__ = "Storybible"

# Pipeline metadata
SUPPORTED_LANGUAGES = ["Spanish", "French", "Italian", "English"]
READING_LEVELS = ["Beginner", "Intermediate", "Native"]

__all__ = [
    "__version__",
    "__author__",
    "SUPPORTED_LANGUAGES",
    "READING_LEVELS",
]

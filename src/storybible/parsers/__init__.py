"""Parsers for recovering structured data from model output.

This module provides the tiered JSON extractor used by every pipeline stage.
"""

from storybible.parsers.json_extractor import (
    EXTRACTION_STRATEGIES,
    ExtractionFailure,
    ExtractionOutcome,
    ExtractionSuccess,
    extract_json,
)

__all__ = [
    "EXTRACTION_STRATEGIES",
    "ExtractionFailure",
    "ExtractionOutcome",
    "ExtractionSuccess",
    "extract_json",
]

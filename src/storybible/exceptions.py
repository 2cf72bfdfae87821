"""Exception hierarchy for the story bible pipeline."""

from typing import Any, Dict, Optional


class StoryBibleError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(StoryBibleError):
    """Raised when a model handle cannot be initialized (unknown model, missing key)."""


class ModelInvocationError(StoryBibleError):
    """Raised when a model call fails and no underlying error was captured."""


class MissingStageOutputError(StoryBibleError, KeyError):
    """Raised when a prompt needs the output of a stage that has not run yet."""


class InvalidLevelError(StoryBibleError, ValueError):
    """Raised for a reading level name outside Beginner/Intermediate/Native."""


class BibleGenerationError(StoryBibleError):
    """Raised when a stage fails fatally and the whole run is aborted.

    Attributes:
        stage: Stage number that failed (0 when the failure is outside a stage)
        kind: Failure kind (model_call, extraction, primary_fields, unexpected)
        partial: Stage outputs completed before the failure, keyed by stage key
    """

    def __init__(
        self,
        message: str,
        stage: int = 0,
        kind: str = "unknown",
        partial: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.kind = kind
        self.partial = partial or {}

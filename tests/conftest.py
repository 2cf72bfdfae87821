"""Shared pytest fixtures."""

import os

import pytest

os.environ.setdefault("LANGFUSE_TRACING_ENABLED", "false")

from bible_fakes import STAGE_PAYLOADS, make_context  # noqa: E402


@pytest.fixture
def context():
    """Novella context with no stage outputs yet."""
    return make_context()


@pytest.fixture
def full_context():
    """Novella context with stages 1-5 complete."""
    return make_context(outputs=dict(STAGE_PAYLOADS))

"""Prompt templates for expanding short concepts before stage 1.

Templates carry ``{user_concept}``, ``{location}`` and ``{time_period}`` slots
and are filled with ``str.format``.
"""

from typing import List

CLASSIC_SYSTEM_PROMPT = "You are a classic romance novelist."
NEUTRAL_SYSTEM_PROMPT = "You are a romance novelist."

_ANSWER_FORMAT = "Answer in 2-3 sentences with no preamble."

REGENCY_TEMPLATE = (
    "Invent an original romance novel idea in the manner of classic Regency romance, "
    "set in {location} in {time_period}. Give the lovers a social obstacle that keeps "
    "them from simply being together: an Austen or Quinn style love story, not modern "
    "career stakes. " + _ANSWER_FORMAT
)

LITERARY_TEMPLATE = (
    "Invent an original idea for a literary romance novel set in {location} in "
    "{time_period}. Give the lovers a serious obstacle that keeps them from simply being "
    "together: a Brontë or Hemingway style story, not modern career stakes. " + _ANSWER_FORMAT
)

REGENCY_EXPAND_TEMPLATE = (
    'Turn "{user_concept}" into a romance novel concept in the manner of classic Regency '
    "romance, set in {location} in {time_period}, with a social obstacle that keeps the "
    "lovers apart. Keep everything the user asked for. " + _ANSWER_FORMAT
)

LITERARY_EXPAND_TEMPLATE = (
    'Turn "{user_concept}" into a literary romance novel concept set in {location} in '
    "{time_period}, with a serious obstacle that keeps the lovers apart. Keep everything "
    "the user asked for. " + _ANSWER_FORMAT
)

NEUTRAL_EXPAND_TEMPLATE = (
    "Develop this into a complete romance novel concept. Keep everything the user asked "
    "for and add character names, a specific setting and a clear obstacle to the "
    "relationship. " + _ANSWER_FORMAT + "\n\n"
    'User\'s concept: "{user_concept}"\n'
    "Setting: {location}, {time_period}"
)


def build_library_avoid_list(library_summaries: List[str]) -> str:
    """Suffix telling the model not to repeat books already in the library."""
    if not library_summaries:
        return ""
    numbered = "\n".join(f"{i}. {summary}" for i, summary in enumerate(library_summaries, 1))
    return f"\n\nDo not repeat the idea of any of these existing books:\n{numbered}"


def build_different_concept_suffix(existing_concept: str, library_summaries: List[str]) -> str:
    """Suffix asking for a concept unlike the current one and the library."""
    avoid = [f"Current: {existing_concept}"]
    avoid.extend(f"{i}. {summary}" for i, summary in enumerate(library_summaries, 1))
    return "\n\nMake it different from all of these:\n" + "\n".join(avoid)

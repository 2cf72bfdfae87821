"""Concept expansion before stage 1.

Short concepts give stage 1 too little to work with, so anything under
``CONCEPT_DETAILED_WORD_COUNT`` words is expanded by one model call:

- Blank concepts ("romance", "from scratch", fewer than 3 words) use one of two
  classic tracks, Regency or Literary, picked at random.
- Other short concepts use a neutral template that keeps what the user said.

Location and time period are pulled out of the concept first ("slots") so the
expansion keeps them; unfilled slots get defaults.
"""

import logging
import random
import re
from typing import List, Optional

from pydantic import BaseModel

from storybible.constants import CONCEPT_DETAILED_WORD_COUNT, EXPANSION_MAX_TOKENS
from storybible.prompts import concept_prompts
from storybible.utils.llm_client import CallOptions, LLMClient

logger = logging.getLogger(__name__)

DEFAULT_TIME_PERIOD = "any time period"

# Most specific first: cities, then countries, then regions
LOCATION_PATTERNS = {
    "cities": [
        "buenos aires", "mexico city", "madrid", "barcelona", "lima", "bogotá", "bogota",
        "havana", "santiago", "caracas", "quito", "medellín", "medellin", "guadalajara",
        "monterrey", "seville", "sevilla", "valencia", "cartagena", "córdoba", "cordoba",
        "rosario", "mendoza", "cusco", "cuzco", "arequipa", "san juan", "montevideo",
        "asunción", "asuncion", "la paz", "santa cruz", "paris", "lyon", "marseille",
        "rome", "florence", "venice", "naples", "milan", "london", "bath", "edinburgh",
    ],
    "countries": [
        "argentina", "mexico", "spain", "colombia", "peru", "chile", "cuba", "venezuela",
        "ecuador", "guatemala", "bolivia", "dominican republic", "honduras", "paraguay",
        "el salvador", "nicaragua", "costa rica", "panama", "uruguay", "puerto rico",
        "france", "italy", "england", "scotland", "ireland",
    ],
    "regions": [
        "patagonia", "andalusia", "andalucía", "yucatan", "yucatán", "galicia", "catalonia",
        "cataluña", "basque country", "castile", "la mancha", "pampas", "tierra del fuego",
        "andes", "amazon", "oaxaca", "chiapas", "provence", "normandy", "tuscany", "sicily",
    ],
}

# Checked in this order; the first match fills the time period slot
TIME_PATTERNS = [
    (
        "contemporary",
        re.compile(
            r"\b(contemporary|modern|present-day|present day|current|today|now|"
            r"21st century|2000s|2010s|2020s)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "decade",
        re.compile(
            r"\b(18[0-9]0s|19[0-9]0s|20[0-2]0s|the\s+(twenties|thirties|forties|fifties|"
            r"sixties|seventies|eighties|nineties))\b",
            re.IGNORECASE,
        ),
    ),
    ("century", re.compile(r"\b(1[6-9]th|20th|21st)\s+century\b", re.IGNORECASE)),
    (
        "era",
        re.compile(
            r"\b(colonial|victorian|edwardian|post-war|postwar|pre-war|prewar|golden age|"
            r"belle époque|belle epoque|prohibition|revolution|civil war)\b",
            re.IGNORECASE,
        ),
    ),
]

BLANK_CONCEPTS = {
    "from-scratch",
    "from scratch",
    "romance",
    "love story",
    "a romance",
    "a love story",
    "romance novel",
    "a romance novel",
}
_FROM_SCRATCH = {"from-scratch", "from scratch"}


class ConceptSlots(BaseModel):
    """Location and time period found in a concept (None when absent)."""

    location: Optional[str] = None
    time_period: Optional[str] = None


def extract_concept_slots(concept: str) -> ConceptSlots:
    """Pull location and time period out of a concept.

    Args:
        concept: User concept

    Returns:
        ConceptSlots with title-cased location and lowercased time period
    """
    lowered = concept.lower()
    slots = ConceptSlots()

    for group in ("cities", "countries", "regions"):
        match = next((place for place in LOCATION_PATTERNS[group] if place in lowered), None)
        if match:
            slots.location = " ".join(word.capitalize() for word in match.split(" "))
            break

    for kind, pattern in TIME_PATTERNS:
        match = pattern.search(concept)
        if not match:
            continue
        text = match.group(0).lower()
        if kind == "contemporary":
            slots.time_period = text
        elif kind == "decade":
            slots.time_period = "the " + text.replace("the ", "")
        elif kind == "century":
            slots.time_period = "the " + text
        else:
            slots.time_period = f"the {text} era"
        break

    logger.debug(f"Concept slots: location={slots.location}, time_period={slots.time_period}")
    return slots


def is_blank_concept(concept: Optional[str]) -> bool:
    """True for empty or generic concepts and anything under three words."""
    if not concept:
        return True
    normalized = concept.lower().strip()
    return normalized in BLANK_CONCEPTS or len(normalized.split()) < 3


def default_location(language: str) -> str:
    return f"anywhere in the {language}-speaking world"


class ConceptExpander:
    """Expands short concepts with one model call."""

    def __init__(
        self,
        llm_client: LLMClient,
        language: str = "Spanish",
        rng: Optional[random.Random] = None,
        options: Optional[CallOptions] = None,
    ):
        """Initialize the expander.

        Args:
            llm_client: Client for the expansion model
            language: Target language, used for the default location
            rng: Random source for the Regency/Literary track choice
            options: Call options (default: EXPANSION_MAX_TOKENS output cap)
        """
        self.llm_client = llm_client
        self.language = language
        self.rng = rng or random.Random()
        self.options = options or CallOptions(max_tokens=EXPANSION_MAX_TOKENS)

    def expand(self, concept: str, library_summaries: Optional[List[str]] = None) -> str:
        """Return ``concept`` unchanged when detailed enough, else an expanded concept.

        Args:
            concept: User concept
            library_summaries: Summaries of existing books to avoid repeating

        Returns:
            Concept text for stage 1
        """
        library_summaries = library_summaries or []
        word_count = len(concept.split())
        if word_count >= CONCEPT_DETAILED_WORD_COUNT:
            logger.info(f"Concept has {word_count} words, skipping expansion")
            return concept

        slots = extract_concept_slots(concept)
        location = slots.location or default_location(self.language)
        time_period = slots.time_period or DEFAULT_TIME_PERIOD

        if is_blank_concept(concept):
            use_regency = self.rng.random() < 0.5
            track = "Regency" if use_regency else "Literary"
            system_prompt = concept_prompts.CLASSIC_SYSTEM_PROMPT
            if concept.lower().strip() and concept.lower().strip() not in _FROM_SCRATCH:
                template = (
                    concept_prompts.REGENCY_EXPAND_TEMPLATE
                    if use_regency
                    else concept_prompts.LITERARY_EXPAND_TEMPLATE
                )
            else:
                template = (
                    concept_prompts.REGENCY_TEMPLATE if use_regency else concept_prompts.LITERARY_TEMPLATE
                )
        else:
            track = "Neutral"
            system_prompt = concept_prompts.NEUTRAL_SYSTEM_PROMPT
            template = concept_prompts.NEUTRAL_EXPAND_TEMPLATE

        user_prompt = template.format(user_concept=concept, location=location, time_period=time_period)
        user_prompt += concept_prompts.build_library_avoid_list(library_summaries)

        logger.info(
            f"Expanding concept ({word_count} words): track={track}, location={location}, "
            f"time_period={time_period}, library_size={len(library_summaries)}"
        )
        expanded = self.llm_client.generate_text(system_prompt, user_prompt, self.options).strip()
        logger.info(f"Expanded concept: {expanded}")
        return expanded

    def generate_different_concept(
        self,
        existing_concept: str,
        library_summaries: Optional[List[str]] = None,
    ) -> str:
        """Generate a fresh concept unlike ``existing_concept`` and the library.

        Args:
            existing_concept: Concept to move away from
            library_summaries: Summaries of existing books to avoid

        Returns:
            New concept text
        """
        library_summaries = library_summaries or []
        use_regency = self.rng.random() < 0.5
        template = concept_prompts.REGENCY_TEMPLATE if use_regency else concept_prompts.LITERARY_TEMPLATE

        user_prompt = template.format(
            location=default_location(self.language), time_period=DEFAULT_TIME_PERIOD
        )
        user_prompt += concept_prompts.build_different_concept_suffix(existing_concept, library_summaries)

        logger.info(
            f"Generating a different concept: track={'Regency' if use_regency else 'Literary'}, "
            f"library_size={len(library_summaries)}"
        )
        return self.llm_client.generate_text(
            concept_prompts.CLASSIC_SYSTEM_PROMPT, user_prompt, self.options
        ).strip()

"""Canned stage payloads and a scripted stand-in for LLMClient."""

import json
import re
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple, Union

from storybible.generators.chapter_breakdown import degraded_chapter
from storybible.generators.phases import PHASE_SPECS
from storybible.prompts.bible_prompts import (
    CENTRAL_PLOT_SYSTEM_PROMPT,
    CHAPTER_DETAIL_SYSTEM_PROMPT,
    CHAPTER_OUTLINE_SYSTEM_PROMPT,
    CHARACTERS_SYSTEM_PROMPT,
    PLOT_ARCHITECTURE_SYSTEM_PROMPT,
    STORY_DNA_SYSTEM_PROMPT,
    SUBPLOTS_SYSTEM_PROMPT,
)
from storybible.prompts.level_definitions import format_level_definition_for_prompt
from storybible.validators.schema import (
    BibleDocument,
    ChapterBreakdown,
    ChapterDetail,
    ChapterOutlineEntry,
    ChapterStatus,
    CoherenceReport,
    LengthPreset,
    PipelineContext,
    ReadingLevel,
    Scene,
    StageResult,
)

CHAPTER_NUMBER = re.compile(r"CHAPTER (\d+) OF (\d+)")

STORY_DNA = {
    "subgenre": "Historical romance",
    "tropes": {"origin": "Enemies to lovers", "dynamic": ["Slow burn"]},
    "ending": {"type": "HEA"},
    "tone": {"heat": "Sweet"},
    "timespan": {"duration": "One summer"},
    "pov": {"person": "third", "structure": "Dual"},
    "conflict": {"external": "A disputed lighthouse"},
    "theme": {"core": "Trust", "question": "Can you trust what you cannot chart?"},
    "premise": "A lighthouse keeper's daughter and a shipwrecked cartographer",
    "coherence_check": {"concept_honored": "Yes, coastal setting kept", "level_considered": "Simple plot"},
}

CHARACTERS = {
    "protagonist": {"name": "Lucía", "wound": "Her mother left by sea"},
    "love_interests": [
        {"name": "Tomás", "role_in_story": "Primary", "wound": "Lost his crew", "lie": "Maps are safer than people"},
    ],
    "dynamics": {"rivals": []},
    "coherence_check": {
        "wounds_tied_to_theme": "Both wounds are about trust",
        "arcs_match_ending": "Both learn to stay",
        "love_interest_count_justified": "One, as the concept implies",
    },
}

CENTRAL_PLOT = {
    "arc_shape": "Slow thaw",
    "key_moments": [{"moment": "The storm night"}, {"moment": "The burned map"}],
    "wound_integration": [{"love_interest": "Tomás"}],
    "dark_moment": {"what_happens": "Tomás sails away without a word"},
    "resolution": {"what_happens": "He returns with a map of her coast"},
    "coherence_check": {
        "arc_follows_origin_trope": "Yes",
        "dark_moment_triggers_wounds": "Abandonment by sea",
        "resolution_earns_ending": "He chooses to stay",
    },
}

SUBPLOTS = {
    "forces": {
        "external_pressures": [{"name": "The harbor authority"}],
        "thematic_positions": [{"name": "The widow who never trusted again"}],
    },
    "subplots": [
        {
            "name": "The harbor sale",
            "functions": ["Raises the stakes"],
            "character": {"name": "Don Ernesto"},
            "key_moments": ["The offer"],
            "collision_points": ["The storm night"],
        }
    ],
    "collision_timeline": [{"chapter": 4, "event": "The offer arrives"}],
    "coherence_check": {
        "pressures_mapped": "Yes",
        "positions_not_duplicated": "Yes",
        "every_subplot_collides": "Yes",
    },
}

PLOT_ARCHITECTURE = {
    "beat_sheet": {"opening_image": {"chapters": "1"}, "climax": {"chapters": "11"}},
    "foreshadowing": {"seeds": [{"plant": "The compass", "payoff": "Chapter 11"}]},
    "tension_curve": {"climax_chapter": 11},
    "coherence_check": {
        "timespan_honored": "Yes",
        "characters_used": "Yes",
        "key_moments_placed": "Yes",
        "subplots_placed": "Yes",
        "conflict_pressured": "Yes",
        "theme_expressed": "Yes",
        "arcs_delivered": "Yes",
    },
}

STAGE_PAYLOADS = {
    "story_dna": STORY_DNA,
    "characters": CHARACTERS,
    "central_plot": CENTRAL_PLOT,
    "subplots": SUBPLOTS,
    "plot_architecture": PLOT_ARCHITECTURE,
}


def outline_payload(chapter_count: int) -> Dict:
    return {
        "chapters": [
            {
                "number": number,
                "title": f"Chapter {number}",
                "pov": "Lucía" if number % 2 else "Tomás",
                "purpose": "Move the romance forward",
                "plot_beats": ["catalyst"] if number == 1 else [],
                "ends_with": "A door left open",
            }
            for number in range(1, chapter_count + 1)
        ],
        "pov_distribution": {"Lucía": "50%", "Tomás": "50%"},
    }


def chapter_payload(number: int) -> Dict:
    return {
        "scenes": [
            {
                "location": "The lighthouse",
                "characters": ["Lucía", "Tomás"],
                "events": [f"Event {number}.1", f"Event {number}.2"],
                "function": "Builds tension",
            }
        ],
        "reader_learns": ["Tomás cannot swim"],
        "foreshadowing": {"plants": ["The compass"], "payoffs": []},
        "chapter_hook": {"type": "question", "description": "Who lit the lamp?"},
    }


def detail_response(user_prompt: str) -> str:
    """Detail-pass reply for whichever chapter the prompt asks about."""
    number = int(CHAPTER_NUMBER.search(user_prompt).group(1))
    return json.dumps(chapter_payload(number))


Reply = Union[str, Exception, Callable[[str], Union[str, Exception]]]


class ScriptedLLMClient:
    """Answers ``generate_text`` by system prompt and records every call.

    A reply is a string, an exception to raise, or a callable taking the user
    prompt; a list of replies is consumed one call at a time.
    """

    def __init__(self, replies: Dict[str, Union[Reply, List[Reply]]], model: str = "claude-test"):
        self.replies = {key: list(value) if isinstance(value, list) else value for key, value in replies.items()}
        self.model = model
        self.calls: List[Tuple[str, str]] = []

    def generate_text(self, system_prompt: str, user_prompt: str, options=None) -> str:
        self.calls.append((system_prompt, user_prompt))
        reply = self.replies[system_prompt]
        if isinstance(reply, list):
            reply = reply.pop(0)
        if callable(reply):
            reply = reply(user_prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def calls_for(self, system_prompt: str) -> List[str]:
        return [user for system, user in self.calls if system == system_prompt]


def full_run_replies(chapter_count: int, overrides: Optional[Dict[str, Reply]] = None) -> Dict[str, Reply]:
    """Replies for a successful stages 1-6 run, with ``overrides`` keyed by system prompt."""
    replies = {
        STORY_DNA_SYSTEM_PROMPT: json.dumps(STORY_DNA),
        CHARACTERS_SYSTEM_PROMPT: json.dumps(CHARACTERS),
        CENTRAL_PLOT_SYSTEM_PROMPT: json.dumps(CENTRAL_PLOT),
        SUBPLOTS_SYSTEM_PROMPT: json.dumps(SUBPLOTS),
        PLOT_ARCHITECTURE_SYSTEM_PROMPT: json.dumps(PLOT_ARCHITECTURE),
        CHAPTER_OUTLINE_SYSTEM_PROMPT: json.dumps(outline_payload(chapter_count)),
        CHAPTER_DETAIL_SYSTEM_PROMPT: detail_response,
    }
    replies.update(overrides or {})
    return replies


def make_context(
    length_preset: LengthPreset = LengthPreset.NOVELLA,
    outputs: Optional[Dict] = None,
    level: ReadingLevel = ReadingLevel.BEGINNER,
    language: str = "Spanish",
) -> PipelineContext:
    concept = "A lighthouse keeper's daughter and a shipwrecked cartographer"
    return PipelineContext(
        concept=concept,
        original_concept=concept,
        level=level,
        length_preset=length_preset,
        language=language,
        level_guidance=format_level_definition_for_prompt(level.value, language),
        outputs=outputs or {},
    )


def anthropic_response(text: Optional[str], input_tokens: int = 10, output_tokens: int = 5):
    """Object shaped like an Anthropic Messages response."""
    content = [SimpleNamespace(type="text", text=text)] if text is not None else []
    return SimpleNamespace(
        content=content,
        usage=SimpleNamespace(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_input_tokens=0,
        ),
    )


def make_document(degraded=(), chapter_count: int = 12, **overrides) -> BibleDocument:
    """Complete novella document built from the canned payloads."""
    coherence = CoherenceReport(valid=True, message="All coherence checks passed")
    stages = {
        spec.key: StageResult(
            stage=spec.stage,
            key=spec.key,
            name=spec.name,
            raw_response=json.dumps(STAGE_PAYLOADS[spec.key]),
            data=STAGE_PAYLOADS[spec.key],
            coherence=coherence,
        )
        for spec in PHASE_SPECS
    }

    chapters = []
    for number in range(1, chapter_count + 1):
        entry = ChapterOutlineEntry(number=number, title=f"Chapter {number}", pov="Lucía", purpose="Meet")
        if number in degraded:
            chapters.append(degraded_chapter(entry, attempts=2))
        else:
            chapters.append(
                ChapterDetail(
                    outline=entry,
                    scenes=[Scene.model_validate(scene) for scene in chapter_payload(number)["scenes"]],
                    status=ChapterStatus.DETAILED,
                    attempts=1,
                )
            )
    stages["chapter_breakdown"] = StageResult(
        stage=6,
        key="chapter_breakdown",
        name="Chapter Breakdown",
        raw_response=json.dumps(outline_payload(chapter_count)),
        data=ChapterBreakdown(chapters=chapters, pov_distribution={"Lucía": "100%"}),
        coherence=coherence,
    )

    fields = {
        "concept": "lighthouse romance",
        "expanded_concept": "A lighthouse keeper's daughter and a shipwrecked cartographer",
        "level": ReadingLevel.BEGINNER,
        "length_preset": LengthPreset.NOVELLA,
        "language": "Spanish",
        "stages": stages,
    }
    fields.update(overrides)
    return BibleDocument(**fields)

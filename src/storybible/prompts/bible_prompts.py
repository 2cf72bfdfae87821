"""System prompts and user-prompt builders for the six bible stages.

Every stage prompt asks for a single JSON object. Stages 1-5 end their output
with a ``coherence_check`` block whose fields attest that the stage honored the
stages before it; the chapter outline and chapter detail prompts belong to the
stage 6 sub-pipeline.

User-prompt builders take a ``PipelineContext`` and read earlier stage outputs
through ``context.require``, so a builder cannot run before the stages it
depends on have produced a result.
"""

import json
from typing import Any, Dict, List

from storybible.validators.schema import ChapterOutlineEntry, PipelineContext, as_array, as_object


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _names(items: Any, key: str = "name") -> List[str]:
    if not isinstance(items, list):
        return []
    return [str(item[key]) for item in items if isinstance(item, dict) and item.get(key)]


def _instructions_block(context: PipelineContext) -> str:
    if not context.instructions:
        return ""
    return f"\n\nREVISION INSTRUCTIONS (a previous version failed review, fix these):\n{context.instructions}"


# ============================================================================
# Stage 1: Story DNA
# ============================================================================

STORY_DNA_SYSTEM_PROMPT = """You establish the DNA of a romance novel written for language learners.

Read the concept and decide the story's fundamentals. Infer tropes the user did not name. When the concept is vague, choose boldly rather than falling back on the most common options.

## Decisions

TROPES
- Origin (one): Enemies to Lovers, Friends to Lovers, Strangers to Lovers, Second Chance, Childhood Sweethearts
- Situation: what forces the leads together, what keeps them apart, what arrangement binds them (all may be null)
- Dynamic (one or two): Slow Burn, Fast Burn, Opposites Attract, Grumpy/Sunshine
- Complication (optional): Love Triangle

SUBGENRE: Historical, Contemporary, Paranormal, Fantasy, Sci-Fi, Romantic Suspense, ...

TIMESPAN: how much story time passes, and why.

POV: First or Third person; Single, Dual-Alternating, Multiple, or Omniscient.

ENDING: HEA, HFN, Bittersweet, or Tragic. Honor an ending the concept implies.

TONE: lightness 0-10, sensuality 0-10, fade_to_black, mood.

CONFLICT: the external circumstance and the internal barrier keeping the leads apart.

THEME: a core word or phrase, the question the story asks, and how the romance explores it. Draw the theme out of the concept; do not impose one.

The reading level constrains what the story can ask of its reader. Prefer structures the level can carry (a Beginner story should not depend on subtext or non-linear time).

## Output

Respond with one JSON object and nothing else:

{
  "subgenre": string,
  "tropes": {
    "origin": string,
    "situation": {"forces_together": string|null, "keeps_apart": string|null, "arrangement": string|null},
    "dynamic": [string],
    "complication": string|null
  },
  "ending": {"type": "HEA|HFN|Bittersweet|Tragic", "reason": string},
  "tone": {"lightness": number, "sensuality": number, "fade_to_black": boolean, "mood": string},
  "timespan": {"duration": string, "rationale": string},
  "pov": {"person": "First|Third", "structure": "Single|Dual-Alternating|Multiple|Omniscient", "rationale": string},
  "conflict": {"external": string, "internal": string},
  "theme": {"core": string, "question": string, "explored_through": string},
  "premise": string,
  "coherence_check": {
    "concept_honored": "Which elements of the concept were kept and where they appear",
    "level_considered": "How the reading level shaped POV, timespan and structure"
  }
}"""


def build_story_dna_user_prompt(context: PipelineContext) -> str:
    """Build the stage 1 user prompt.

    Args:
        context: Run context (concept, length preset, level guidance)

    Returns:
        User prompt string
    """
    return f"""CONCEPT: {context.concept}

LENGTH: {context.length_preset.value} ({context.chapter_count} chapters)
LEVEL: {context.level.value}
TARGET LANGUAGE: {context.language}

{context.level_guidance}

Analyze this concept and establish the story's DNA.{_instructions_block(context)}"""


# ============================================================================
# Stage 2: Characters
# ============================================================================

CHARACTERS_SYSTEM_PROMPT = """You design the romantic leads of a romance novel.

You receive the concept and the story DNA. Build characters whose inner damage drives the romance:
1. Every wound connects to the story's theme
2. Every arc fits the ending type (HEA: flaws overcome; Bittersweet/Tragic: flaws or circumstances win)
3. The dynamics explain why these particular people break each other open

## Guidelines

LOVE INTEREST COUNT: create exactly as many love interests as the concept implies. "Three suitors" means 3, a love triangle means 2, a standard romance means 1. Mark one as Primary unless the ending is tragic or open.

NAMES: keep names the concept gives; otherwise fit them to setting, era and class.

WOUNDS are concrete events ("left at a convent door at seven"), not traits ("trust issues"). The lie is the belief the wound produced.

WANT is what they chase; NEED is what would make them whole. The story moves them from one to the other.

VOICE: each character must sound different in register, patterns and emotional tells.

RIVALS: with two or more love interests, describe how they deal with each other, not only with the protagonist.

## Output

Respond with one JSON object and nothing else:

{
  "protagonist": {
    "name": string, "age": number, "role": string,
    "wound": string, "lie": string, "want": string, "need": string, "flaw": string,
    "arc": {"starts": string, "ends": string},
    "voice": {"register": string, "patterns": string, "tells": string}
  },
  "love_interests": [
    {
      "name": string, "age": number, "role": string,
      "role_in_story": "Primary|Rival|Secondary",
      "wound": string, "lie": string, "want": string, "need": string, "flaw": string,
      "arc": {"starts": string, "ends": string},
      "voice": {"register": string, "patterns": string, "tells": string}
    }
  ],
  "dynamics": {
    "romantic": [
      {"between": [string, string], "attraction": string, "friction": string, "challenge": string, "balance": string}
    ],
    "rivals": [
      {"between": [string, string], "conflict_type": string, "methods": string, "dynamic": string}
    ]
  },
  "coherence_check": {
    "wounds_tied_to_theme": "How each wound relates to the theme",
    "arcs_match_ending": "How the arcs deliver the chosen ending",
    "love_interest_count_justified": "Why this number of love interests follows from the concept"
  }
}"""


def build_characters_user_prompt(context: PipelineContext) -> str:
    """Build the stage 2 user prompt from the story DNA."""
    story_dna = context.require("story_dna")
    theme = as_object(story_dna.get("theme"))
    ending = as_object(story_dna.get("ending"))

    return f"""CONCEPT: {context.concept}

STORY DNA:
{_dump(story_dna)}

Create the romantic leads for this story.

Make sure that:
- Every wound connects to the theme "{theme.get('core', 'established in the story DNA')}"
- Every arc fits the {ending.get('type', 'chosen')} ending
- The number of love interests matches what the concept implies
- Each love interest has a different wound and a different way of loving
- Rival dynamics are included when there are several love interests{_instructions_block(context)}"""


# ============================================================================
# Stage 3: Central plot
# ============================================================================

CENTRAL_PLOT_SYSTEM_PROMPT = """You design the central romance arc of a novel.

You receive the concept, the story DNA and the characters. The plot must grow out of the characters' wounds, not out of a template.

## Guidelines

ORIGIN TROPE SHAPES THE ARC
- Enemies to Lovers: antagonism, forced respect, the crack in the hostility
- Strangers to Lovers: the meeting, the noticing, the drawing closer
- Friends to Lovers: the disruption of comfort, the realization
- Second Chance: what ended it, the forced reunion, what is different now
- Childhood Sweethearts: the separation, the reunion, how they changed

BURN RATE SHAPES PACING: slow burn means more moments before intimacy; fast burn makes the conflict about staying together.

ENDING SHAPES THE THIRD ACT: HEA overcomes the dark moment; HFN leaves outside uncertainty; Bittersweet separates them or costs them dearly; Tragic lets the flaw or the world win.

THE DARK MOMENT must trigger a specific wound and feel inevitable for these people. It is not always a misunderstanding.

KEY MOMENTS: no fixed count. Each one is named, tied to a wound or the theme, and shifts the relationship.

With several love interests, integrate every one of them; the choice between them should be thematic.

Leave out subplots, supporting cast, locations and chapter assignments. Later stages handle them.

## Output

Respond with one JSON object and nothing else:

{
  "arc_shape": {"origin_type": string, "burn_rate": string, "ending_type": string},
  "key_moments": [
    {"moment": string, "what_happens": string, "why_it_matters": string, "what_shifts": string}
  ],
  "wound_integration": {
    "protagonist": {"wound_triggered_by": string, "lie_reinforced_by": string, "lie_challenged_by": string, "transformation_moment": string},
    "love_interests": [
      {"name": string, "wound_triggered_by": string, "lie_reinforced_by": string, "lie_challenged_by": string, "transformation_moment": string}
    ]
  },
  "dark_moment": {"what_happens": string, "why_it_feels_fatal": string, "what_each_believes": string},
  "resolution": {"what_changes": string, "who_acts": string, "what_they_sacrifice": string, "final_state": string},
  "coherence_check": {
    "arc_follows_origin_trope": "How the origin trope shapes the arc",
    "dark_moment_triggers_wounds": "Which wounds the dark moment triggers and how",
    "resolution_earns_ending": "Why the resolution earns the chosen ending"
  }
}"""


def _primary_love_interest(characters: Dict[str, Any]) -> Dict[str, Any]:
    love_interests = as_array(characters.get("love_interests"))
    for love_interest in love_interests:
        if isinstance(love_interest, dict) and love_interest.get("role_in_story") == "Primary":
            return love_interest
    return as_object(love_interests[0]) if love_interests else {}


def build_central_plot_user_prompt(context: PipelineContext) -> str:
    """Build the stage 3 user prompt from the story DNA and characters."""
    story_dna = context.require("story_dna")
    characters = context.require("characters")

    protagonist = as_object(characters.get("protagonist"))
    primary = _primary_love_interest(characters)
    love_interest_count = len(as_array(characters.get("love_interests"))) or 1
    tropes = as_object(story_dna.get("tropes"))
    dynamic = "/".join(str(item) for item in as_array(tropes.get("dynamic"))) or "established"

    return f"""CONCEPT: {context.concept}

STORY DNA:
{_dump(story_dna)}

CHARACTERS:
{_dump(characters)}

Design the central romance arc. It must grow out of {protagonist.get('name', 'the protagonist')}'s wound ("{protagonist.get('wound', '')}") and the love interests' wounds.

Primary love interest: {primary.get('name', 'unknown')} ("{primary.get('wound', '')}")
Total love interests: {love_interest_count}

Shape the arc with the {tropes.get('origin', 'chosen')} origin and the {dynamic} burn rate.
Include a wound_integration entry for all {love_interest_count} love interest(s).{_instructions_block(context)}"""


# ============================================================================
# Stage 4: Subplots
# ============================================================================

SUBPLOTS_SYSTEM_PROMPT = """You map every force acting on a romance and turn those forces into subplots that collide with the central plot.

You receive the concept, story DNA, characters and central plot. Work in four steps.

1. EXTERNAL PRESSURES: list every party with a stake in the outcome (families, institutions, factions, creditors, rivals).
2. THEMATIC POSITIONS: state the theme question and list every answer to it, inside and outside the binary. Give each position a genuine good and a genuine bad. The love interests' lies already are positions; do not duplicate them.
3. SUBPLOTS: group forces a single character can embody. Each subplot has exactly one character serving one to three functions. Do not force consolidation.
4. KEY MOMENTS AND COLLISIONS: give each subplot the moments the reader must see, then map which of them hit a central-plot key moment. Every subplot needs at least one collision.

Position types: past_mirror (already chose, lives with it), present_mirror (choosing now, parallel arc), transcends (outside the question).

Love interests are not supporting cast.

## Output

Respond with one JSON object and nothing else:

{
  "forces": {
    "external_pressures": [{"party": string, "interest": string, "pressure_on": string}],
    "thematic_positions": [{"position": string, "type": "past_mirror|present_mirror|transcends", "the_good": string, "the_bad": string}]
  },
  "subplots": [
    {
      "name": string,
      "functions": [{"type": string, "party": string|null, "position": string|null}],
      "character": {
        "name": string, "age": number, "role": string, "wound": string,
        "thematic_stance": string, "relationship_to_leads": string,
        "voice": {"register": string, "distinct_from_leads": string}
      },
      "key_moments": [
        {"moment": string, "what_happens": string, "why_it_matters": string, "what_shifts": string, "serves_functions": [string]}
      ],
      "collision_points": [
        {"subplot_moment": string, "hits_central_moment": string, "effect_on_main_plot": string}
      ]
    }
  ],
  "collision_timeline": [
    {"central_moment": string, "main_plot": string, "subplots_active": [{"subplot": string, "moment": string, "what_happens": string}]}
  ],
  "coherence_check": {
    "pressures_mapped": "How each external pressure reaches a subplot",
    "positions_not_duplicated": "How the positions differ from the love interests' lies",
    "every_subplot_collides": "Which central moment each subplot collides with"
  }
}"""

# (external pressures, thematic positions, subplots) per length preset
_SUBPLOT_COMPLEXITY = {
    "novella": ("3-5", "3-4", "2-4"),
    "novel": ("5-8", "5-7", "4-6"),
}


def build_subplots_user_prompt(context: PipelineContext) -> str:
    """Build the stage 4 user prompt from stages 1-3."""
    story_dna = context.require("story_dna")
    characters = context.require("characters")
    central_plot = context.require("central_plot")

    theme = as_object(story_dna.get("theme"))
    love_interests = as_array(characters.get("love_interests"))
    moment_names = ", ".join(_names(central_plot.get("key_moments"), "moment")) or "the key moments"
    love_interest_names = ", ".join(_names(love_interests)) or "the love interests"
    existing_positions = "\n".join(
        f"    {li.get('name')}: \"{li.get('lie')}\"" for li in love_interests if isinstance(li, dict)
    )
    pressures, positions, subplots = _SUBPLOT_COMPLEXITY[context.length_preset.value]

    return f"""CONCEPT: {context.concept}

STORY DNA:
{_dump(story_dna)}

CHARACTERS:
{_dump(characters)}

CENTRAL PLOT:
{_dump(central_plot)}

LENGTH: {context.length_preset.value}

Theme question: "{theme.get('question', '')}"
Theme core: {theme.get('core', '')}

Central key moments to collide with: {moment_names}

Positions already held by the love interests (do not duplicate):
{existing_positions}

{love_interest_names} are already created; they are not supporting cast.

Complexity for a {context.length_preset.value}:
- External pressures: {pressures}
- Thematic positions: {positions}
- Subplots: {subplots}{_instructions_block(context)}"""


# ============================================================================
# Stage 5: Plot architecture
# ============================================================================

PLOT_ARCHITECTURE_SYSTEM_PROMPT = """You build the structural skeleton of a romance novel: the beat sheet, the placement of subplot moments, the foreshadowing map and the tension curve.

You receive the concept, stages 1-4 and the chapter count.

## Guidelines

BEAT SHEET: opening_image, setup, catalyst, debate, break_into_two, b_story, fun_and_games, midpoint, bad_guys_close_in, all_is_lost, dark_night, break_into_three, finale, final_image. Give every beat a concrete chapter range within the chapter count. A short book compresses beats; a long one lets them breathe.

PLACEMENT: every central key moment and every subplot key moment gets a chapter.

FORESHADOWING: plant at least five seeds of different kinds (object, dialogue, event, trait, world detail), each with a plant chapter and a payoff chapter.

TENSION: rising overall, with valleys to rest in, peaks at the midpoint and the dark moment, and the climax highest.

## Output

Respond with one JSON object and nothing else:

{
  "beat_sheet": {
    "<beat_name>": {"description": string, "chapter_range": string, "purpose": string}
  },
  "moment_placement": [
    {"moment": string, "source": "central_plot|<subplot name>", "chapter": number}
  ],
  "foreshadowing": {
    "seeds": [{"seed": string, "plant_chapter": number, "payoff_chapter": number, "type": string}]
  },
  "tension_curve": {
    "description": string,
    "peaks": [string],
    "valleys": [string],
    "climax_chapter": number
  },
  "coherence_check": {
    "timespan_honored": "How the plot fits the timespan",
    "characters_used": "How every lead and subplot character appears",
    "key_moments_placed": "Where the central key moments land",
    "subplots_placed": "Where the subplot moments and collisions land",
    "conflict_pressured": "How the external and internal conflicts are pressed",
    "theme_expressed": "How events express the theme",
    "arcs_delivered": "How the character arcs are delivered"
  }
}"""


def build_plot_architecture_user_prompt(context: PipelineContext) -> str:
    """Build the stage 5 user prompt from stages 1-4."""
    return f"""CONCEPT: {context.concept}

LENGTH: {context.length_preset.value} ({context.chapter_count} chapters)

STORY DNA:
{_dump(context.require('story_dna'))}

CHARACTERS:
{_dump(context.require('characters'))}

CENTRAL PLOT:
{_dump(context.require('central_plot'))}

SUBPLOTS:
{_dump(context.require('subplots'))}

Create the plot architecture for this {context.length_preset.value}. Place every beat in a chapter range between 1 and {context.chapter_count}, place every key moment, and plan foreshadowing that pays off.{_instructions_block(context)}"""


# ============================================================================
# Stage 6: Chapter outline and chapter detail
# ============================================================================

CHAPTER_OUTLINE_SYSTEM_PROMPT = """You distribute a planned plot across chapters.

Assign every beat-sheet beat and every key moment to a chapter. Decide each chapter's POV character, purpose and closing hook. Structure only: scenes come later.

Respond with one JSON object and nothing else:

{
  "chapters": [
    {
      "number": number,
      "title": string,
      "pov": string,
      "purpose": string,
      "pivotal_moment": string|null,
      "plot_beats": [string],
      "ends_with": string
    }
  ],
  "pov_distribution": {"<character name>": [chapter numbers]}
}"""


def build_chapter_outline_user_prompt(context: PipelineContext) -> str:
    """Build the outline-pass prompt covering every chapter."""
    count = context.chapter_count
    return f"""CONCEPT: {context.concept}

LENGTH: {context.length_preset.value} ({count} chapters)
LEVEL: {context.level.value}

STORY DNA:
{_dump(context.require('story_dna'))}

CENTRAL PLOT (key moments must be placed):
{_dump(context.require('central_plot'))}

SUBPLOTS (key moments must be placed):
{_dump(context.require('subplots'))}

PLOT ARCHITECTURE (beats must be distributed):
{_dump(context.require('plot_architecture'))}

Outline all {count} chapters, numbered 1 to {count}, in order. For each chapter give the POV character, its purpose, the pivotal moment it contains (if any), the beats it carries and what it ends with.{_instructions_block(context)}"""


CHAPTER_DETAIL_SYSTEM_PROMPT = """You list what happens in one chapter of a novel. Do not write prose.

Each scene has a location, the characters present, 3-6 events and the function the scene serves. Events are plain factual statements of what happens, with no imagery or style.

Respond with one JSON object and nothing else:

{
  "scenes": [
    {"location": string, "characters": [string], "events": [string], "function": string}
  ],
  "reader_learns": [string],
  "foreshadowing": {"plants": [string], "payoffs": [string]},
  "chapter_hook": {"type": "cliffhanger|question|emotional|revelation", "description": string}
}"""


def _cast_summary(context: PipelineContext) -> str:
    characters = context.require("characters")
    subplots = context.require("subplots")

    protagonist = as_object(characters.get("protagonist"))
    lines = [f"Protagonist: {protagonist.get('name', 'unknown')}"]
    for love_interest in as_array(characters.get("love_interests")):
        if isinstance(love_interest, dict):
            lines.append(
                f"Love interest: {love_interest.get('name', 'unknown')} ({love_interest.get('role_in_story', 'Primary')})"
            )
    for subplot in as_array(subplots.get("subplots")):
        character = subplot.get("character") if isinstance(subplot, dict) else None
        if isinstance(character, dict) and character.get("name"):
            lines.append(f"Supporting: {character['name']} ({subplot.get('name', 'subplot')})")
    return "\n".join(lines)


def build_chapter_detail_user_prompt(context: PipelineContext, entry: ChapterOutlineEntry) -> str:
    """Build the detail-pass prompt for one chapter.

    Args:
        context: Run context with stages 1-5 complete
        entry: The chapter's outline entry

    Returns:
        User prompt string
    """
    scenes_per_chapter = "2-3" if context.length_preset.value == "novella" else "2-4"
    level = context.level.value

    return f"""CONCEPT: {context.concept}

LEVEL: {level} (the events must be narratable at this level)

CAST:
{_cast_summary(context)}

CHAPTER {entry.number} OF {context.chapter_count}:
{_dump(entry.model_dump(mode="json", exclude_none=True))}

Break this chapter into {scenes_per_chapter} scenes. Honor its POV, its pivotal moment and every beat it carries, and end on what the outline says it ends with."""

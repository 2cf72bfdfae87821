"""Reading-level constraint profiles.

These definitions are the source of truth for level-appropriate generation.
``format_level_definition_for_prompt`` renders a level, merged with any
language-specific notes, into the text block that stage prompts embed verbatim.
"""

import copy
from typing import Any, Dict

from storybible.exceptions import InvalidLevelError

# Applies at every level below Native
_ANTI_EXPOSITION = [
    "Backstory dumps or exposition paragraphs",
    "Character description blocks",
    "Long internal monologue passages",
    "Summarizing instead of dramatizing",
]

LEVEL_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "Beginner": {
        "name": "Beginner",
        "description": "For absolute beginners and early learners (A1-A2 equivalent)",
        "sentences": {
            "average_length": {"min": 6, "max": 12},
            "max_length": 15,
            "structure": "Simple sentences only. Subject-verb-object pattern. Avoid subordinate clauses.",
            "connectors": "Use basic connectors only: and, but, so, because, then, when",
        },
        "vocabulary": {
            "scope": "Top 1000-1500 most common words in target language only",
            "exceptions": "Character names, place names, and story-critical terms (introduce with context)",
            "forbidden": [
                "Literary vocabulary",
                "Abstract nouns (use concrete equivalents)",
                "Idioms and expressions (use literal language)",
                "Metaphors and figurative language",
                "Technical or specialized terms",
                "Formal/archaic language",
            ],
            "handling": "If a concept requires a harder word, explain it immediately in simple terms",
        },
        "meaning": {
            "explicitness": "ALL meaning must be explicit. Nothing implied.",
            "subtext": "NO SUBTEXT. Characters say what they mean. Narration states emotions directly.",
            "emotions": 'Name emotions explicitly: "She felt angry" not "Her jaw tightened"',
            "motivation": 'State character motivations directly: "He wanted to help because..."',
        },
        "narrative": {
            "cause_effect": "Simple, direct cause-and-effect. One cause, one effect per sentence.",
            "timeflow": "Strictly chronological. No flashbacks, no flash-forwards.",
            "pov": "Single, clear POV. No head-hopping within scenes.",
            "showing": "TELL over show at this level. Clarity trumps literary technique.",
        },
        "dialogue": {
            "style": "Direct and functional. Characters say what they mean.",
            "length": "Short exchanges. 1-2 sentences per turn maximum.",
            "attribution": 'Always use "said" - avoid fancy dialogue tags',
            "subtext": "NO dialogue subtext. No sarcasm, no implication.",
        },
        "cultural": {
            "references": "Avoid cultural references that require background knowledge",
            "setting": "Explain any setting-specific concepts in simple terms",
            "customs": "If customs/traditions matter to plot, explain them explicitly",
        },
        "forbidden": [
            "Complex sentence structures",
            "Passive voice (use active)",
            "Rhetorical questions",
            "Irony or sarcasm",
            "Unreliable narration",
            "Stream of consciousness",
            "Non-linear timeline",
            "Multiple POVs in single scene",
            "Metaphors and similes",
            "Poetic or lyrical prose",
            "Setting lectures",
            *_ANTI_EXPOSITION,
        ],
    },
    "Intermediate": {
        "name": "Intermediate",
        "description": "For learners with foundation knowledge (B1-B2 equivalent)",
        "sentences": {
            "average_length": {"min": 10, "max": 18},
            "max_length": 20,
            "structure": "Mix of simple and compound sentences. Subordinate clauses allowed BUT total must stay under 20 words.",
            "connectors": "Common connectors: although, however, so, while, when, because, but",
        },
        "vocabulary": {
            "scope": "Common vocabulary plus topic-specific words with context clues",
            "exceptions": "Can use less common words if meaning is clear from context",
            "forbidden": [
                "Obscure literary terms",
                "Archaic language",
                "Heavy slang or dialect",
                "Untranslatable idioms without explanation",
                "Anachronistic vocabulary (modern terms in historical settings)",
            ],
            "handling": "Context should make meaning inferable. No need for explicit definitions.",
        },
        "meaning": {
            "explicitness": "Key meaning explicit. Some inference allowed for non-critical details.",
            "subtext": "LIGHT SUBTEXT allowed. But critical plot/emotional points still explicit.",
            "emotions": "Mix of telling and showing. Can imply some emotions through action.",
            "motivation": "Core motivations clear. Secondary motivations can be implied.",
        },
        "narrative": {
            "cause_effect": "Direct cause-effect preferred. Multi-step chains OK if clear.",
            "timeflow": "Strictly chronological. No flashbacks or temporal jumps.",
            "pov": "Clear single POV throughout scene. No head-hopping.",
            "showing": "IMMEDIATE ACTION over reflection. Dramatize, do not summarize.",
        },
        "dialogue": {
            "style": "More naturalistic. Characters can be indirect sometimes.",
            "length": "Natural conversation length. Can have longer exchanges.",
            "attribution": "Varied dialogue tags allowed, but not overly creative",
            "subtext": "Some dialogue subtext allowed if body language makes meaning accessible.",
        },
        "cultural": {
            "references": "Can include cultural references with brief in-story context",
            "setting": "Setting details can be richer. Explain only truly foreign concepts.",
            "customs": "Customs can be shown naturally if context makes them understandable",
        },
        "forbidden": [
            "Dense literary prose",
            "Heavy use of passive voice",
            "Unreliable narration",
            "Experimental structure",
            "Heavy dialect transcription",
            "Obscure cultural references without context",
            "Sentences over 20 words",
            *_ANTI_EXPOSITION,
        ],
    },
    "Native": {
        "name": "Native",
        "description": "Natural language as native speakers use it (C1-C2 equivalent)",
        "sentences": {
            "average_length": {"min": 10, "max": 30},
            "max_length": None,
            "structure": "Full range of sentence structures. Variety for rhythm and effect.",
            "connectors": "Full linguistic toolkit available",
        },
        "vocabulary": {
            "scope": "Full vocabulary range appropriate to genre and characters",
            "exceptions": "None - use best word for the context",
            "forbidden": [],
            "handling": "Trust the reader. Context provides meaning.",
        },
        "meaning": {
            "explicitness": "Natural balance. Critical plot explicit, rest can be nuanced.",
            "subtext": "FULL SUBTEXT available. Implication, suggestion, omission.",
            "emotions": "Show over tell. Let readers feel through action and detail.",
            "motivation": "Complex, layered motivations that emerge through story.",
        },
        "narrative": {
            "cause_effect": "Complex causality. Delayed payoffs. Interweaving threads.",
            "timeflow": "Non-linear available. Flashbacks, flash-forwards, parallel timelines.",
            "pov": "Multiple POVs, unreliable narration, all techniques available.",
            "showing": "Primarily show. Tell only for pacing and transition.",
        },
        "dialogue": {
            "style": "Authentic to character. Can be messy, interrupted, incomplete.",
            "length": "Whatever serves the scene",
            "attribution": "Full range including action beats and no attribution",
            "subtext": "Full dialogue subtext. Characters can lie, deflect, imply.",
        },
        "cultural": {
            "references": "Natural cultural references without explanation",
            "setting": "Rich, immersive setting details",
            "customs": "Shown naturally as characters would experience them",
        },
        "forbidden": [
            "Blatant backstory dumps (weave backstory naturally instead)",
            "Character description blocks (reveal through action)",
            "Info-dump paragraphs (trust the reader)",
        ],
    },
}

LANGUAGE_LEVEL_ADJUSTMENTS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "Spanish": {
        "Beginner": {
            "notes": [
                "Avoid subjunctive mood - use indicative alternatives",
                "Use ser/estar carefully - stick to clear-cut cases",
                "Avoid complex pronoun combinations (se lo, te la)",
                "Use simple past (pretérito) over imperfect when possible",
                "Avoid regional vocabulary - use neutral Spanish",
            ],
            "vocabulary": {"frequency_list": "Based on RAE frequency corpus - top 1500 words"},
        },
        "Intermediate": {
            "notes": [
                "Subjunctive in common expressions OK (quiero que, espero que)",
                "Ser/estar distinctions can be shown naturally",
                "Pronoun combinations allowed in common patterns",
                "Mix of past tenses for natural narrative",
            ],
        },
        "Native": {
            "notes": [
                "Full subjunctive usage",
                "Regional flavor acceptable if consistent",
                "All verb tenses and moods available",
            ],
        },
    },
    "French": {
        "Beginner": {
            "notes": [
                "Avoid subjunctive entirely",
                "Use passé composé over passé simple",
                "Avoid complex relative clauses (dont, lequel)",
                "Stick to common prepositions",
                "Avoid literary inversions",
            ],
            "vocabulary": {"frequency_list": "Based on Lexique frequency data - top 1500 words"},
        },
        "Intermediate": {
            "notes": [
                "Common subjunctive triggers OK (il faut que, bien que)",
                "Passé composé primary, imperfect for description",
                "Basic relative pronouns (qui, que, où)",
            ],
        },
        "Native": {
            "notes": [
                "Passé simple acceptable for literary style",
                "Full range of literary French available",
                "Complex grammatical structures OK",
            ],
        },
    },
    "Italian": {
        "Beginner": {
            "notes": [
                "Avoid subjunctive (congiuntivo)",
                "Use passato prossimo over passato remoto",
                "Avoid combined pronouns (glielo, ce lo)",
                "Simple prepositions only",
                "Avoid formal Lei where possible - use tu",
            ],
            "vocabulary": {"frequency_list": "Based on CoLFIS frequency data - top 1500 words"},
        },
        "Intermediate": {
            "notes": [
                "Common subjunctive OK (penso che, credo che)",
                "Mix of past tenses acceptable",
                "Basic pronoun combinations allowed",
            ],
        },
        "Native": {
            "notes": [
                "Passato remoto for literary style",
                "Full grammatical range",
                "Regional expressions acceptable if consistent",
            ],
        },
    },
    "English": {
        "Beginner": {
            "notes": [
                "Simple present and past tense only",
                "Avoid perfect tenses where simple past works",
                "Avoid conditional sentences beyond basic if/then",
                "Avoid phrasal verbs - use single-word alternatives",
                "Avoid idioms entirely",
            ],
            "vocabulary": {"frequency_list": "Based on Oxford 3000 - top 1500 words"},
        },
        "Intermediate": {
            "notes": [
                "Perfect tenses allowed",
                "Common conditionals OK",
                "Common phrasal verbs allowed",
                "Well-known idioms with clear meaning OK",
            ],
        },
        "Native": {
            "notes": [
                "Full grammatical range",
                "All idioms and expressions available",
                "Regional variety acceptable",
            ],
        },
    },
}


def get_level_definition(level: str, language: str = "English") -> Dict[str, Any]:
    """Merge a level profile with the language's adjustments for that level.

    Args:
        level: Beginner, Intermediate, or Native
        language: Target language name (unknown languages get no adjustments)

    Returns:
        Copy of the level definition with a ``language_specific`` entry

    Raises:
        InvalidLevelError: If ``level`` is not a known tier
    """
    base = LEVEL_DEFINITIONS.get(level)
    if base is None:
        raise InvalidLevelError(
            f"Invalid level: {level}. Must be Beginner, Intermediate, or Native."
        )

    definition = copy.deepcopy(base)
    definition["language_specific"] = copy.deepcopy(
        LANGUAGE_LEVEL_ADJUSTMENTS.get(language, {}).get(level, {})
    )
    return definition


def _bullets(items, prefix: str = "- ") -> str:
    return "\n".join(f"{prefix}{item}" for item in items)


def format_level_definition_for_prompt(level: str, language: str = "English") -> str:
    """Render the merged constraint profile as prompt text.

    Args:
        level: Beginner, Intermediate, or Native
        language: Target language name

    Returns:
        Markdown-style block of level rules

    Raises:
        InvalidLevelError: If ``level`` is not a known tier
    """
    d = get_level_definition(level, language)
    sentences = d["sentences"]
    vocabulary = d["vocabulary"]

    max_length = (
        f"- Maximum sentence length: {sentences['max_length']} words"
        if sentences["max_length"]
        else "- No hard maximum sentence length"
    )

    sections = [
        f"## READING LEVEL: {d['name']}\n{d['description']}",
        "### SENTENCE RULES (MUST FOLLOW):\n"
        f"- Average sentence length: {sentences['average_length']['min']}-{sentences['average_length']['max']} words\n"
        f"{max_length}\n"
        f"- Structure: {sentences['structure']}\n"
        f"- Connectors: {sentences['connectors']}",
    ]

    vocabulary_lines = [
        f"- Scope: {vocabulary['scope']}",
        f"- Exceptions: {vocabulary['exceptions']}",
        f"- Handling difficult concepts: {vocabulary['handling']}",
    ]
    frequency_list = d["language_specific"].get("vocabulary", {}).get("frequency_list")
    if frequency_list:
        vocabulary_lines.append(f"- Frequency list: {frequency_list}")
    if vocabulary["forbidden"]:
        vocabulary_lines.append("- FORBIDDEN:\n" + _bullets(vocabulary["forbidden"], "  * "))
    sections.append("### VOCABULARY RULES (MUST FOLLOW):\n" + "\n".join(vocabulary_lines))

    meaning = d["meaning"]
    sections.append(
        "### MEANING & CLARITY (MUST FOLLOW):\n"
        f"- Explicitness: {meaning['explicitness']}\n"
        f"- Subtext: {meaning['subtext']}\n"
        f"- Emotions: {meaning['emotions']}\n"
        f"- Motivation: {meaning['motivation']}"
    )

    narrative = d["narrative"]
    sections.append(
        "### NARRATIVE TECHNIQUE:\n"
        f"- Cause/Effect: {narrative['cause_effect']}\n"
        f"- Timeline: {narrative['timeflow']}\n"
        f"- POV: {narrative['pov']}\n"
        f"- Show vs Tell: {narrative['showing']}"
    )

    dialogue = d["dialogue"]
    sections.append(
        "### DIALOGUE RULES:\n"
        f"- Style: {dialogue['style']}\n"
        f"- Length: {dialogue['length']}\n"
        f"- Attribution: {dialogue['attribution']}\n"
        f"- Subtext: {dialogue['subtext']}"
    )

    cultural = d["cultural"]
    sections.append(
        "### CULTURAL ELEMENTS:\n"
        f"- References: {cultural['references']}\n"
        f"- Setting details: {cultural['setting']}\n"
        f"- Customs: {cultural['customs']}"
    )

    if d["forbidden"]:
        sections.append("### FORBIDDEN AT THIS LEVEL:\n" + _bullets(d["forbidden"]))

    notes = d["language_specific"].get("notes", [])
    if notes:
        sections.append(
            f"### {language.upper()}-SPECIFIC RULES FOR {d['name'].upper()}:\n" + _bullets(notes)
        )

    return "\n\n".join(sections)

"""CLI for generating a story bible.

This script runs the full bible pipeline for one concept:
0. Expand the concept when it is short
1-5. Story DNA, characters, central plot, subplots, plot architecture
6. Chapter outline, then scenes and events for every chapter
7. Optional audit with regeneration

The resulting bible is written as one JSON file.

Usage:
    python -m storybible.cli.generate_bible \\
        --concept "A lighthouse keeper's daughter and a shipwrecked cartographer" \\
        --level Intermediate --length novella --language Spanish \\
        --output output/bibles/lighthouse.json

Args:
    --concept: Story concept (short concepts are expanded first)
    --level: Reading level (Beginner, Intermediate, Native)
    --length: Length preset (novella = 12 chapters, novel = 35 chapters)
    --language: Target language (default: Spanish)
    --output: Output JSON file
    --model: Model for stages 1-6 (default: LLM_MODEL)
    --expansion-model: Model for concept expansion (default: EXPANSION_MODEL)
    --audit-attempts: Maximum audits, regenerating between them (default: 0 = no audit)
    --library-file: Text file of existing book summaries (one per line) to avoid repeating
    --no-expand: Use the concept exactly as given
    --log-file: Also write logs to this file
    --json-logs: Emit JSON log lines
    --dry-run: Print plan without generating

Examples:
    # Beginner novella from a blank concept, audited twice at most
    python -m storybible.cli.generate_bible \\
        --concept "romance" --level Beginner --length novella \\
        --output output/bibles/classic.json --audit-attempts 2

    # Native novel, concept used verbatim, JSON logs to a file
    python -m storybible.cli.generate_bible \\
        --concept "Two rival luthiers in 1920s Cremona ..." \\
        --level Native --length novel --language Italian --no-expand \\
        --output output/bibles/cremona.json --log-file logs/cremona.log --json-logs
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from storybible import READING_LEVELS, SUPPORTED_LANGUAGES
from storybible.constants import AUDIT_MODEL, EXPANSION_MODEL, LLM_MODEL, LOG_FORMAT, LOG_LEVEL
from storybible.exceptions import BibleGenerationError, ConfigurationError
from storybible.generators.bible_generator import BibleGenerator
from storybible.utils.llm_client import LLMClient
from storybible.utils.logging_config import configure_logging
from storybible.validators.schema import BibleDocument, LengthPreset, ProgressEvent

logger = logging.getLogger(__name__)


def save_bible(document: BibleDocument, output_path: Path) -> None:
    """Save the bible as a JSON file.

    Args:
        document: Generated bible
        output_path: Destination file
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(document.model_dump(mode="json"), f, ensure_ascii=False, indent=2)
    logger.info(f"Saved bible: {output_path}")


def load_library_summaries(path: Optional[Path]) -> List[str]:
    if path is None:
        return []
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def log_progress(event: ProgressEvent) -> None:
    if event.details:
        logger.info(f"  {event.phase_name} [{event.status}]: {event.details}")


def build_expansion_client(model: str, fallback: LLMClient) -> LLMClient:
    """Client for concept expansion, falling back to the main client without credentials."""
    if model == fallback.model:
        return fallback
    try:
        return LLMClient(model=model)
    except ConfigurationError as e:
        logger.warning(f"Expansion model {model} unavailable ({e}), using {fallback.model}")
        return fallback


def main():
    parser = argparse.ArgumentParser(
        description="Generate a story bible from a short concept",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    # Required arguments
    parser.add_argument(
        "--concept",
        required=True,
        help="Story concept (short concepts are expanded first)",
    )
    parser.add_argument(
        "--level",
        required=True,
        choices=READING_LEVELS,
        help="Reading level",
    )
    parser.add_argument(
        "--length",
        required=True,
        choices=[preset.value for preset in LengthPreset],
        help="Length preset (novella = 12 chapters, novel = 35 chapters)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output JSON file for the bible",
    )

    # Optional arguments
    parser.add_argument(
        "--language",
        default="Spanish",
        help=f"Target language (language-specific rules exist for {', '.join(SUPPORTED_LANGUAGES)})",
    )
    parser.add_argument(
        "--model",
        default=LLM_MODEL,
        help=f"Model for stages 1-6 (default: {LLM_MODEL})",
    )
    parser.add_argument(
        "--expansion-model",
        default=EXPANSION_MODEL,
        help=f"Model for concept expansion (default: {EXPANSION_MODEL})",
    )
    parser.add_argument(
        "--audit-attempts",
        type=int,
        default=0,
        help="Maximum audits, regenerating from the failing stage between them (default: 0 = no audit)",
    )
    parser.add_argument(
        "--library-file",
        type=Path,
        help="Text file of existing book summaries, one per line, for concept expansion to avoid",
    )
    parser.add_argument(
        "--no-expand",
        action="store_true",
        help="Use the concept exactly as given",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write logs to this file",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=LOG_FORMAT == "json",
        help="Emit JSON log lines",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print plan without generating",
    )

    args = parser.parse_args()

    configure_logging(level=LOG_LEVEL, log_file=args.log_file, json_format=args.json_logs)

    if args.audit_attempts < 0:
        logger.error("--audit-attempts must be 0 or greater")
        sys.exit(1)
    if args.library_file and not args.library_file.exists():
        logger.error(f"Library file not found: {args.library_file}")
        sys.exit(1)

    logger.info("Starting bible generation:")
    logger.info(f"  Concept: {args.concept}")
    logger.info(f"  Level: {args.level}")
    logger.info(f"  Length: {args.length} ({LengthPreset(args.length).chapter_count} chapters)")
    logger.info(f"  Language: {args.language}")
    logger.info(f"  Model: {args.model}")
    logger.info(f"  Concept expansion: {'off' if args.no_expand else args.expansion_model}")
    logger.info(f"  Audit attempts: {args.audit_attempts}")
    logger.info(f"  Output: {args.output}")

    if args.dry_run:
        logger.info("DRY RUN - no bible will be generated")
        sys.exit(0)

    try:
        llm_client = LLMClient(model=args.model)
        expansion_client = (
            llm_client if args.no_expand else build_expansion_client(args.expansion_model, llm_client)
        )
        audit_client = llm_client
        if args.audit_attempts > 0 and AUDIT_MODEL != args.model:
            audit_client = LLMClient(model=AUDIT_MODEL)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    generator = BibleGenerator(
        llm_client=llm_client,
        expansion_client=expansion_client,
        audit_client=audit_client,
        on_progress=log_progress,
        expand_concept=not args.no_expand,
        audit_attempts=args.audit_attempts,
        library_summaries=load_library_summaries(args.library_file),
    )

    try:
        document = generator.generate(args.concept, args.level, args.length, args.language)
    except BibleGenerationError as e:
        logger.error(f"Bible generation failed at stage {e.stage} ({e.kind}): {e}")
        if e.partial:
            logger.error(f"Completed stages before the failure: {', '.join(e.partial)}")
        sys.exit(1)

    save_bible(document, args.output)

    logger.info("=" * 80)
    logger.info(f"Chapters: {len(document.chapters)} ({len(document.degraded_chapters)} degraded)")
    if document.degraded_chapters:
        logger.info(f"  Degraded: {document.degraded_chapters}")
    for result in document.stages.values():
        for warning in result.warnings:
            logger.info(f"  Stage {result.stage} warning: {warning.message}")
    if document.audit:
        logger.info(f"Audit: {document.audit.validation_status} after {document.audit_attempts} attempt(s)")

    # Token usage
    for label, client in (("Generation", llm_client), ("Expansion", expansion_client), ("Audit", audit_client)):
        if label != "Generation" and client is llm_client:
            continue
        usage = client.get_usage_summary()
        logger.info(f"\n{label} token usage ({usage['model']}):")
        logger.info(f"  Prompt tokens: {usage['prompt_tokens']:,}")
        logger.info(f"  Completion tokens: {usage['completion_tokens']:,}")
        logger.info(f"  Cached tokens: {usage['cached_tokens']:,} ({usage['cache_hit_rate']})")
        logger.info(f"  Estimated cost: ${usage['estimated_cost_usd']:.4f}")
    logger.info("=" * 80)


if __name__ == "__main__":
    main()

"""Presence checks on stage output.

Two checks with different weight:

- ``validate_coherence``: the advisory check of a stage's self-attested
  ``coherence_check`` fields. Blank counts as missing. A failing report is
  attached to the stage result as a warning and the run continues.
- ``find_missing_primary_fields``: the structural check of a stage's top-level
  fields. A non-empty result aborts the stage.
"""

from typing import Any, List, Mapping, Optional, Sequence

from storybible.validators.schema import CoherenceReport


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def validate_coherence(
    record: Optional[Mapping[str, Any]],
    required_fields: Sequence[str],
) -> CoherenceReport:
    """Report which required fields are absent or blank.

    Args:
        record: The stage's coherence block (None if the model omitted it)
        required_fields: Field names in reporting order

    Returns:
        CoherenceReport; ``missing`` follows the order of ``required_fields``

    Example:
        >>> validate_coherence({"a": "x", "b": "  "}, ["a", "b", "c"]).missing
        ['b', 'c']
    """
    if record is None or not isinstance(record, Mapping):
        return CoherenceReport(
            valid=False,
            missing=list(required_fields),
            message="coherence_check missing from output",
        )

    missing = [field for field in required_fields if _is_blank(record.get(field))]

    return CoherenceReport(
        valid=not missing,
        missing=missing,
        message=(
            f"Missing coherence fields: {', '.join(missing)}"
            if missing
            else "All coherence checks passed"
        ),
    )


def find_missing_primary_fields(value: Any, fields: Sequence[str]) -> List[str]:
    """Top-level fields of ``value`` that are absent or empty.

    Args:
        value: Decoded stage output (expected to be a JSON object)
        fields: Primary field names

    Returns:
        Missing field names in the order given; every field when ``value`` is
        not an object
    """
    if not isinstance(value, Mapping):
        return list(fields)

    missing = []
    for field in fields:
        item = value.get(field)
        if item is None or (isinstance(item, (str, list, dict)) and not item):
            missing.append(field)
    return missing

"""
Parser for the snapshot policy mini-language.

Policies are written on a dataset as a zfs user property:

    [hourly](1h:24);[daily](1d:30);[archive](0.5mo)

Each segment is ``[LABEL](<number><unit>[:<keep>])``. Units are ``mo``, ``d``,
``h``, ``m``/``mi`` and ``s``. The number may be fractional.

Invariants:
    - parse_policy is strict and raises PolicyParseError
    - parse_policies is lenient: bad segments are logged and skipped
"""

from __future__ import annotations

import logging
import re

from ..errors import PolicyParseError
from .types import IntervalUnit, PolicyDeclaration

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"^\s*\[(?P<label>.*)\]\s*\((?P<command>[^()]*)\)\s*$")
_INTERVAL_RE = re.compile(r"^(?P<value>[0-9.]+)(?P<unit>[A-Za-z]+)$")


def parse_policy(text: str) -> PolicyDeclaration:
    """Parse a single ``[label](interval:keep)`` segment.

    Args:
        text: One policy segment

    Returns:
        Parsed declaration

    Raises:
        PolicyParseError: If any part of the segment is malformed
    """
    if "[" not in text or "]" not in text:
        raise PolicyParseError(text, "label_not_found")
    match = _SEGMENT_RE.match(text)
    if match is None:
        raise PolicyParseError(text, "command_not_found")

    label = match.group("label")
    if not label:
        raise PolicyParseError(text, "label_not_found")

    parts = match.group("command").strip().split(":")
    if len(parts) > 2:
        raise PolicyParseError(text, "invalid_snapshot_command")

    interval = _INTERVAL_RE.match(parts[0].strip())
    if interval is None:
        raise PolicyParseError(text, "invalid_interval")
    try:
        multiplier = float(interval.group("value"))
        unit = IntervalUnit.from_suffix(interval.group("unit"))
    except ValueError:
        raise PolicyParseError(text, "invalid_interval") from None

    keep_count = None
    if len(parts) == 2:
        keep_text = parts[1].strip()
        if not (keep_text.isascii() and keep_text.isdigit()):
            raise PolicyParseError(text, "invalid_keep")
        keep_count = int(keep_text)

    try:
        return PolicyDeclaration(label, unit, multiplier, keep_count=keep_count)
    except ValueError as e:
        raise PolicyParseError(text, str(e)) from e


def parse_policies(text: str) -> set[PolicyDeclaration]:
    """Parse a semicolon-separated list of policies.

    Segments that fail to parse are logged and dropped.

    Args:
        text: Property value, e.g. ``[hourly](1h:24);[daily](1d)``

    Returns:
        Set of declarations (structural duplicates collapse)
    """
    result: set[PolicyDeclaration] = set()
    for segment in text.split(";"):
        if not segment.strip():
            continue
        try:
            policy = parse_policy(segment)
        except PolicyParseError as e:
            logger.error(
                "Failed to parse snapshot policy",
                extra={"segment": segment, "reason": e.reason, "property_value": text},
            )
            continue
        result.discard(policy)
        result.add(policy)
    return result

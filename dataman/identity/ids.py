"""
UUID allocation for dataset and policy identities.

Ids are random 128-bit UUIDs rendered in canonical lowercase hyphenated form.
Collisions are astronomically unlikely, but correctness does not rely on
that: the caller supplies an ``exists`` check against its own keyspace and the
allocator retries until it finds a free id. The check must run inside the
same write transaction that stores the id.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Draw a fresh random id."""
    return str(uuid.uuid4())


def generate_unique_id(
    exists: Callable[[str], bool],
    factory: Callable[[], str] = new_id,
) -> str:
    """Generate an id absent from a keyspace.

    Args:
        exists: Returns True if a candidate id is already taken
        factory: Candidate generator

    Returns:
        An id for which ``exists`` returned False
    """
    while True:
        candidate = factory()
        if not exists(candidate):
            return candidate
        logger.warning(f"Generated id {candidate} collides with an existing id; retrying")

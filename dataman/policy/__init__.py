"""
Policy module for dataman.

This module provides the snapshot policy value types and their codecs:
- PolicyDeclaration / IntervalUnit: the declared policy value
- fingerprint: content hash used as the policy storage key
- parse_policy / parse_policies: the ``[label](interval:keep)`` mini-language
"""

from .fingerprint import canonical_bytes, fingerprint, fingerprint_hex
from .parser import parse_policies, parse_policy
from .types import IntervalUnit, PolicyDeclaration, StoredPolicy

__all__ = [
    "IntervalUnit",
    "PolicyDeclaration",
    "StoredPolicy",
    "canonical_bytes",
    "fingerprint",
    "fingerprint_hex",
    "parse_policy",
    "parse_policies",
]

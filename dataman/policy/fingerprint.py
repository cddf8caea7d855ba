"""
Policy fingerprint codec.

The fingerprint is the storage key of a policy inside a dataset store. It is
a SHA-256 digest over a canonical JSON encoding of the structural fields
(label, unit, multiplier). keep_count is deliberately absent: changing only
the retention count must not give the policy a new identity.

How to change safely:
    - Any change to the encoding re-keys every stored policy; bump the
      dataset store schema version and migrate
"""

from __future__ import annotations

import hashlib
import json

from .types import PolicyDeclaration


def canonical_bytes(policy: PolicyDeclaration) -> bytes:
    """Canonical encoding of the structural fields of a policy."""
    canonical = json.dumps(
        {
            "label": policy.label,
            "unit": policy.unit.value,
            "multiplier": float(policy.multiplier),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return canonical.encode("utf-8")


def fingerprint(policy: PolicyDeclaration) -> bytes:
    """Raw 32-byte SHA-256 fingerprint of a policy."""
    return hashlib.sha256(canonical_bytes(policy)).digest()


def fingerprint_hex(policy: PolicyDeclaration) -> str:
    """Hex fingerprint, for logs and display."""
    return fingerprint(policy).hex()

"""
dataman - stable identities and snapshot-policy tracking for ZFS datasets.

This package keeps a rename-resilient identity for every filesystem and volume
and durably records the snapshot policies declared on each one, so a scheduler
can later decide when to create or prune snapshots.

Architecture:
    ┌──────────────┐     ┌────────────────────┐     ┌──────────────────┐
    │  Inventory   │────▶│ Registration       │────▶│ Identity         │
    │  (zfs list)  │     │ Reconciler         │     │ Registry         │
    └──────────────┘     └─────────┬──────────┘     └────────┬─────────┘
                                   │                         │
                                   ▼                         ▼
                         ┌────────────────────┐     ┌──────────────────┐
                         │ Dataset Policy     │     │ application.db   │
                         │ Store (per id)     │     │ (SQLite)         │
                         └─────────┬──────────┘     └──────────────────┘
                                   ▼
                         ┌────────────────────┐
                         │ ds_<id>.db         │
                         │ (SQLite)           │
                         └────────────────────┘

Invariants:
    - name_to_id and id_to_name always form a strict bijection
    - Dataset ids are never reused
    - Every mutation runs behind one process-wide write barrier
    - Each exposed write maps to exactly one storage transaction per file

How to change safely:
    - Never change the fingerprint encoding without a schema version bump
    - Add tables, never rename them; old files must keep opening
"""

__version__ = "0.3.0"

__all__ = ["__version__"]

"""
Identity layer for dataman.

This module provides:
- IdentityRegistry: name <-> id bijection, exclusivity lock, store ownership
- DatasetPolicyStore: per-dataset policy convergence
- RegistrationReconciler: inventory batch -> committed state
- WriteBarrier: process-wide serialization of all writes
- UUID allocation helpers
"""

from .barrier import WriteBarrier
from .dataset_store import DatasetPolicyStore, ReconcileResult
from .ids import generate_unique_id, new_id
from .process_lock import current_pid, process_is_alive
from .reconciler import RegistrationReconciler, RegistrationReport
from .registry import IdentityRegistry

__all__ = [
    "IdentityRegistry",
    "DatasetPolicyStore",
    "ReconcileResult",
    "RegistrationReconciler",
    "RegistrationReport",
    "WriteBarrier",
    "generate_unique_id",
    "new_id",
    "current_pid",
    "process_is_alive",
]

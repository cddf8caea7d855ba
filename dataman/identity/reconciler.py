"""
Registration reconciler: the write path from an inventory batch to committed
identity and policy state.

For every descriptor in a batch the reconciler compares the observed
(id, name) pair with the registry bijection:

    id -> name   name -> id   outcome
    ---------    ---------    -------------------------------------------
    name         id           unchanged, reuse the dataset's policy store
    None         None         created, bind both directions, open a store
    other        other        renamed, last observation wins

Stale entries are removed on both sides so the bijection stays strict. An id
that loses its name to another id is "displaced": it keeps its policy store
but has no name until it is observed again or pruned.

Invariants:
    - The batch is validated before anything is written; a snapshot, bookmark
      or untagged descriptor rejects the whole batch
    - All bijection writes of a batch go through one registry transaction,
      under the registry's write barrier
    - New store handles are published to the registry only after that
      transaction commits
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import InvalidDatasetKindError, UntaggedDatasetError
from ..inventory.types import DatasetDescriptor
from .dataset_store import DatasetPolicyStore, ReconcileResult

if TYPE_CHECKING:
    from .registry import IdentityRegistry

logger = logging.getLogger(__name__)


@dataclass
class RegistrationReport:
    """What one register_all call did.

    Attributes:
        created: Ids bound or given a policy store for the first time
        renamed: Ids whose name changed
        unchanged: Ids already registered under the observed name
        displaced: Ids that lost their name to another id
        policies: Reconcile result per dataset id that declared policies
    """

    created: list[str] = field(default_factory=list)
    renamed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    displaced: list[str] = field(default_factory=list)
    policies: dict[str, ReconcileResult] = field(default_factory=dict)

    @property
    def policy_mutations(self) -> int:
        return sum(result.mutations for result in self.policies.values())

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary representation."""
        return {
            "created": list(self.created),
            "renamed": list(self.renamed),
            "unchanged": list(self.unchanged),
            "displaced": list(self.displaced),
            "policies": {
                dataset_id: {
                    "inserted": len(result.inserted),
                    "removed": len(result.removed),
                    "keep_updated": len(result.keep_updated),
                    "unchanged": len(result.unchanged),
                }
                for dataset_id, result in self.policies.items()
            },
        }


class RegistrationReconciler:
    """Applies inventory batches to an IdentityRegistry.

    Example:
        >>> report = RegistrationReconciler(registry).register_all(descriptors)
        >>> report.created
        ['6f1c0b0e-...']
    """

    def __init__(self, registry: IdentityRegistry) -> None:
        self.registry = registry

    def register_all(self, descriptors: Iterable[DatasetDescriptor]) -> RegistrationReport:
        """Register a batch of descriptors.

        Args:
            descriptors: Inventory batch

        Returns:
            RegistrationReport

        Raises:
            InvalidDatasetKindError: If any descriptor is a snapshot or bookmark
            UntaggedDatasetError: If any descriptor has no external id
            StorageUnavailableError: If a store cannot be opened or committed
        """
        batch = list(descriptors)
        self._validate(batch)

        registry = self.registry
        report = RegistrationReport()
        new_stores: dict[str, DatasetPolicyStore] = {}

        with registry.barrier.write():
            with registry.env.transaction(write=True) as txn:
                name_to_id = txn.open_table(registry.NAME_TO_ID, create=False)
                id_to_name = txn.open_table(registry.ID_TO_NAME, create=False)

                for descriptor in batch:
                    dataset_id = descriptor.external_id
                    name = descriptor.hierarchical_name
                    current_name = id_to_name.get_str(dataset_id)
                    current_id = name_to_id.get_str(name)
                    store = registry._store_for(dataset_id) or new_stores.get(dataset_id)

                    if current_name == name and current_id == dataset_id:
                        # Allocated earlier but registered for the first time
                        if store is None:
                            report.created.append(dataset_id)
                        else:
                            report.unchanged.append(dataset_id)
                    elif current_name is None and current_id is None:
                        name_to_id.put_str(name, dataset_id, no_overwrite=True)
                        id_to_name.put_str(dataset_id, name, no_overwrite=True)
                        report.created.append(dataset_id)
                        logger.info(
                            f"Registered dataset {name}",
                            extra={"dataset_id": dataset_id, "dataset_name": name},
                        )
                    else:
                        if current_name is not None:
                            name_to_id.delete(current_name)
                        if current_id is not None and current_id != dataset_id:
                            id_to_name.delete(current_id)
                            report.displaced.append(current_id)
                            logger.warning(
                                f"Dataset id {current_id} lost name {name} to {dataset_id}",
                                extra={
                                    "displaced_id": current_id,
                                    "dataset_id": dataset_id,
                                    "dataset_name": name,
                                },
                            )
                        name_to_id.put_str(name, dataset_id)
                        id_to_name.put_str(dataset_id, name)
                        if current_name is None:
                            report.created.append(dataset_id)
                            logger.info(
                                f"Registered dataset {name}",
                                extra={"dataset_id": dataset_id, "dataset_name": name},
                            )
                        else:
                            report.renamed.append(dataset_id)
                            logger.info(
                                f"Renamed dataset {current_name} to {name}",
                                extra={
                                    "dataset_id": dataset_id,
                                    "old_name": current_name,
                                    "dataset_name": name,
                                },
                            )

                    if store is None:
                        store = registry._open_store(dataset_id)
                        new_stores[dataset_id] = store

                    if descriptor.declared_policies is not None:
                        report.policies[dataset_id] = store.reconcile(
                            descriptor.declared_policies
                        )

            registry._publish_stores(new_stores)

        logger.info(
            f"Registered batch of {len(batch)} dataset(s)",
            extra={
                "datasets_created": len(report.created),
                "datasets_renamed": len(report.renamed),
                "datasets_unchanged": len(report.unchanged),
                "datasets_displaced": len(report.displaced),
                "policy_mutations": report.policy_mutations,
            },
        )
        return report

    @staticmethod
    def _validate(batch: list[DatasetDescriptor]) -> None:
        for descriptor in batch:
            if not descriptor.kind.registrable:
                logger.error(
                    "Rejected registration batch: unregistrable dataset kind",
                    extra={
                        "dataset_name": descriptor.hierarchical_name,
                        "kind": descriptor.kind.value,
                        "batch_size": len(batch),
                    },
                )
                raise InvalidDatasetKindError(
                    descriptor.kind.value, descriptor.hierarchical_name
                )
            if not descriptor.tagged:
                logger.error(
                    "Rejected registration batch: untagged dataset",
                    extra={
                        "dataset_name": descriptor.hierarchical_name,
                        "batch_size": len(batch),
                    },
                )
                raise UntaggedDatasetError(descriptor.hierarchical_name)

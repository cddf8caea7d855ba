"""
Identity registry for dataman.

The IdentityRegistry is the authority mapping human-readable dataset names to
stable opaque ids. It provides:
- Idempotent id allocation (single and batch)
- Name <-> id lookups
- The process exclusivity lock (pid marker in metadata)
- Schema version bootstrap
- Ownership of every DatasetPolicyStore handle

Tables (in ``application.db``):
    name_to_id:  dataset name -> id
    id_to_name:  id -> dataset name
    metadata:    daemon_pid_lock (uint), schema_version (uint)

Invariants:
    - name_to_id[n] == i  <=>  id_to_name[i] == n, after every commit
    - Both directions are always written in the same transaction
    - Ids are only removed by an explicit prune
    - The in-memory store map only grows inside the write barrier, after the
      transaction that bound the ids has committed

How to change safely:
    - Never write one direction of the bijection without the other
    - Keep each public write to exactly one registry transaction
    - Open dataset stores only while holding the write barrier

Example:
    >>> registry = IdentityRegistry.open("/var/lib/dataman")
    >>> dataset_id = registry.allocate_id("tank/home")
    >>> registry.lookup_name(dataset_id)
    'tank/home'
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import StorageConfig
from ..errors import ProcessAlreadyRunningError
from ..storage import Environment, Table, Transaction
from .barrier import WriteBarrier
from .dataset_store import DatasetPolicyStore
from .ids import generate_unique_id
from .process_lock import current_pid, process_is_alive

if TYPE_CHECKING:
    from ..inventory.types import DatasetDescriptor
    from .reconciler import RegistrationReport

logger = logging.getLogger(__name__)


class IdentityRegistry:
    """Bidirectional dataset name <-> id registry.

    Thread-safety:
        - All writes go through one process-wide WriteBarrier, shared with
          every DatasetPolicyStore this registry owns
        - Lookups take the read side and run concurrently with each other

    Attributes:
        data_dir: Directory holding the registry and dataset files
        storage: Storage settings
        env: Registry environment
    """

    NAME_TO_ID = "name_to_id"
    ID_TO_NAME = "id_to_name"
    METADATA = "metadata"
    TABLES = (NAME_TO_ID, ID_TO_NAME, METADATA)

    PID_LOCK_KEY = "daemon_pid_lock"
    SCHEMA_VERSION_KEY = "schema_version"
    INITIAL_SCHEMA_VERSION = 0

    def __init__(
        self,
        data_dir: Path,
        storage: StorageConfig,
        env: Environment,
        barrier: WriteBarrier,
        datasets: dict[str, DatasetPolicyStore],
        lock_pid: int | None,
    ) -> None:
        """Use IdentityRegistry.open() instead."""
        self.data_dir = data_dir
        self.storage = storage
        self.env = env
        self._barrier = barrier
        self._datasets = datasets
        self._lock_pid = lock_pid
        self._closed = False

    @classmethod
    def open(
        cls,
        data_dir: str | Path,
        acquire_lock: bool = True,
        storage: StorageConfig | None = None,
        liveness_probe: Callable[[int], bool] = process_is_alive,
    ) -> IdentityRegistry:
        """Open or create the registry and every dataset store it knows.

        Args:
            data_dir: Directory holding the registry and dataset files
            acquire_lock: Take the process exclusivity lock
            storage: Storage settings (defaults derived from data_dir)
            liveness_probe: Returns whether a recorded pid is still running

        Returns:
            Opened registry

        Raises:
            ProcessAlreadyRunningError: If another live process holds the lock
            StorageUnavailableError: If a store cannot be opened
        """
        data_dir = Path(data_dir)
        storage = storage or StorageConfig(data_dir=str(data_dir))
        barrier = WriteBarrier()
        env = Environment(
            data_dir / storage.registry_db_name,
            max_size_bytes=storage.registry_max_bytes,
            max_tables=storage.max_tables,
            busy_timeout_ms=storage.busy_timeout_ms,
            wal_mode=storage.wal_mode,
        )

        lock_pid = current_pid() if acquire_lock else None
        with barrier.write():
            with env.transaction(write=True) as txn:
                for name in cls.TABLES:
                    txn.open_table(name)
                metadata = txn.open_table(cls.METADATA)

                if lock_pid is not None:
                    cls._acquire_lock(metadata, lock_pid, liveness_probe, env.path)

                if cls.SCHEMA_VERSION_KEY not in metadata:
                    metadata.put_uint(
                        cls.SCHEMA_VERSION_KEY, cls.INITIAL_SCHEMA_VERSION, no_overwrite=True
                    )
                schema_version = metadata.get_uint(cls.SCHEMA_VERSION_KEY)

                # A store that fails to open rolls back the lock marker too.
                id_to_name = txn.open_table(cls.ID_TO_NAME)
                datasets = {
                    raw_id.decode("utf-8"): DatasetPolicyStore.open(
                        data_dir, raw_id.decode("utf-8"), barrier, storage
                    )
                    for raw_id in id_to_name.keys()
                }

        logger.info(
            f"Opened identity registry at {env.path}",
            extra={
                "path": str(env.path),
                "datasets": len(datasets),
                "schema_version": schema_version,
                "locked": lock_pid is not None,
            },
        )
        return cls(data_dir, storage, env, barrier, datasets, lock_pid)

    @staticmethod
    def _acquire_lock(
        metadata: Table,
        pid: int,
        liveness_probe: Callable[[int], bool],
        path: Path,
    ) -> None:
        recorded = metadata.get_uint(IdentityRegistry.PID_LOCK_KEY)
        if recorded is not None:
            if liveness_probe(recorded):
                logger.error(
                    f"Registry is locked by running process {recorded}",
                    extra={"pid": recorded, "path": str(path)},
                )
                raise ProcessAlreadyRunningError(recorded, str(path))
            logger.warning(
                f"Replacing stale registry lock held by dead process {recorded}",
                extra={"stale_pid": recorded, "pid": pid},
            )
        metadata.put_uint(IdentityRegistry.PID_LOCK_KEY, pid)
        logger.info("Acquired registry lock", extra={"pid": pid})

    @contextmanager
    def write_transaction(self) -> Iterator[Transaction]:
        """Hold the write barrier and one registry write transaction."""
        with self._barrier.write():
            with self.env.transaction(write=True) as txn:
                yield txn

    @property
    def barrier(self) -> WriteBarrier:
        return self._barrier

    # Lookups

    def lookup_id(self, name: str) -> str | None:
        """Id currently mapped to a dataset name, or None."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                return txn.open_table(self.NAME_TO_ID, create=False).get_str(name)

    def lookup_name(self, dataset_id: str) -> str | None:
        """Name currently mapped to an id, or None."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                return txn.open_table(self.ID_TO_NAME, create=False).get_str(dataset_id)

    def datasets(self) -> dict[str, str]:
        """Snapshot of the bijection as id -> name."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                id_to_name = txn.open_table(self.ID_TO_NAME, create=False)
                return {k.decode("utf-8"): v.decode("utf-8") for k, v in id_to_name.items()}

    def dataset_ids(self) -> list[str]:
        """Ids with a live DatasetPolicyStore handle."""
        with self._barrier.read():
            return sorted(self._datasets)

    def dataset_store(self, dataset_id: str) -> DatasetPolicyStore | None:
        """Policy store of a dataset, or None if not registered."""
        with self._barrier.read():
            return self._datasets.get(dataset_id)

    def schema_version(self) -> int:
        with self.env.transaction() as txn:
            version = txn.open_table(self.METADATA, create=False).get_uint(
                self.SCHEMA_VERSION_KEY
            )
            return self.INITIAL_SCHEMA_VERSION if version is None else version

    def lock_owner(self) -> int | None:
        """Pid recorded in the exclusivity lock marker, if any."""
        with self.env.transaction() as txn:
            return txn.open_table(self.METADATA, create=False).get_uint(self.PID_LOCK_KEY)

    # Allocation

    def allocate_id(self, name: str) -> str:
        """Return the id for a name, allocating one if needed.

        Idempotent: a name that already has an id gets it back and nothing is
        written.

        Args:
            name: Full dataset name

        Returns:
            The dataset id
        """
        return self.allocate_ids([name])[name]

    def allocate_ids(self, names: Iterable[str]) -> dict[str, str]:
        """Batch form of allocate_id, in one transaction.

        Args:
            names: Dataset names

        Returns:
            Mapping with every input name, newly allocated or pre-existing
        """
        names = list(names)
        for name in names:
            if not name:
                raise ValueError("Dataset name cannot be empty")

        result: dict[str, str] = {}
        allocated: list[str] = []
        with self.write_transaction() as txn:
            name_to_id = txn.open_table(self.NAME_TO_ID, create=False)
            id_to_name = txn.open_table(self.ID_TO_NAME, create=False)
            for name in names:
                if name in result:
                    continue
                existing = name_to_id.get_str(name)
                if existing is not None:
                    result[name] = existing
                    continue
                dataset_id = generate_unique_id(lambda candidate: candidate in id_to_name)
                name_to_id.put_str(name, dataset_id, no_overwrite=True)
                id_to_name.put_str(dataset_id, name, no_overwrite=True)
                result[name] = dataset_id
                allocated.append(name)

        for name in allocated:
            logger.info(
                f"Allocated id for dataset {name}",
                extra={"dataset_name": name, "dataset_id": result[name]},
            )
        return result

    # Registration

    def register_all(self, descriptors: Iterable[DatasetDescriptor]) -> RegistrationReport:
        """Register an inventory batch; see RegistrationReconciler."""
        from .reconciler import RegistrationReconciler

        return RegistrationReconciler(self).register_all(descriptors)

    def _store_for(self, dataset_id: str) -> DatasetPolicyStore | None:
        # Caller holds the write barrier.
        return self._datasets.get(dataset_id)

    def _open_store(self, dataset_id: str) -> DatasetPolicyStore:
        return DatasetPolicyStore.open(self.data_dir, dataset_id, self._barrier, self.storage)

    def _publish_stores(self, stores: dict[str, DatasetPolicyStore]) -> None:
        with self._barrier.write():
            self._datasets.update(stores)

    # Pruning

    def prune(self, dataset_ids: Iterable[str]) -> list[str]:
        """Forget datasets: remove their mappings and delete their store files.

        Never called implicitly; identities of vanished datasets are kept
        until an operator prunes them.

        Args:
            dataset_ids: Ids to remove

        Returns:
            Ids that were known and have been pruned
        """
        targets = list(dict.fromkeys(dataset_ids))
        pruned: list[str] = []
        with self._barrier.write():
            with self.env.transaction(write=True) as txn:
                name_to_id = txn.open_table(self.NAME_TO_ID, create=False)
                id_to_name = txn.open_table(self.ID_TO_NAME, create=False)
                for dataset_id in targets:
                    name = id_to_name.get_str(dataset_id)
                    known = id_to_name.delete(dataset_id)
                    if name is not None and name_to_id.get_str(name) == dataset_id:
                        name_to_id.delete(name)
                    if known or dataset_id in self._datasets:
                        pruned.append(dataset_id)

            for dataset_id in pruned:
                store = self._datasets.pop(dataset_id, None)
                if store is not None:
                    store.env.destroy()
                else:
                    DatasetPolicyStore.path_for(self.data_dir, dataset_id, self.storage).unlink(
                        missing_ok=True
                    )

        if pruned:
            logger.info(f"Pruned {len(pruned)} dataset(s)", extra={"dataset_ids": pruned})
        return pruned

    def prune_missing(self, live_ids: Iterable[str]) -> list[str]:
        """Prune every registered id not present in live_ids."""
        live = set(live_ids)
        with self._barrier.write():
            stale = [dataset_id for dataset_id in self.datasets() if dataset_id not in live]
            return self.prune(stale)

    # Lifecycle

    def close(self) -> None:
        """Release the exclusivity lock if this process still holds it."""
        if self._closed:
            return
        self._closed = True
        if self._lock_pid is None:
            return
        with self.write_transaction() as txn:
            metadata = txn.open_table(self.METADATA, create=False)
            if metadata.get_uint(self.PID_LOCK_KEY) == self._lock_pid:
                metadata.delete(self.PID_LOCK_KEY)
                logger.info("Released registry lock", extra={"pid": self._lock_pid})

    def __enter__(self) -> IdentityRegistry:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

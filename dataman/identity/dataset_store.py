"""
Per-dataset snapshot policy store.

Each registered dataset owns one SQLite file (``ds_<escaped id>.db``) holding the
policies declared on it, keyed by content fingerprint:

    hash_to_policy_id:              fingerprint -> policy id
    policy_id_to_label:             policy id -> label
    policy_id_to_interval_seconds:  policy id -> interval (float seconds)
    policy_id_to_keep_count:        policy id -> keep count (absent = unlimited)
    snapshot_id_to_policy_id:       snapshot id -> policy id (written externally)
    metadata:                       schema_version

Invariants:
    - hash_to_policy_id and the per-id attribute tables move in lock-step:
      no policy id exists in one without the other
    - A policy id is never reassigned while its fingerprint stays declared
    - Attribute rows of a new id are written no-overwrite
    - reconcile never touches snapshot_id_to_policy_id

How to change safely:
    - Add tables, never rename existing ones
    - Keep reconcile to a single write transaction
"""

from __future__ import annotations

import logging
import string
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..config import StorageConfig
from ..policy.fingerprint import fingerprint
from ..policy.types import PolicyDeclaration, StoredPolicy
from ..storage import Environment, Transaction
from .barrier import WriteBarrier
from .ids import generate_unique_id

logger = logging.getLogger(__name__)

# Characters kept as-is in store file names; "_" is the escape character
_FILE_NAME_CHARS = frozenset(string.ascii_letters + string.digits + "-")


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call.

    Attributes:
        dataset_id: Dataset the policies belong to
        inserted: Policy ids created for newly declared policies
        removed: Policy ids deleted because they are no longer declared
        keep_updated: Policy ids whose keep count changed in place
        unchanged: Policy ids left untouched
    """

    dataset_id: str
    inserted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    keep_updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        """Number of policies whose stored rows were written."""
        return len(self.inserted) + len(self.removed) + len(self.keep_updated)

    @property
    def changed(self) -> bool:
        return self.mutations > 0


class DatasetPolicyStore:
    """Converges a dataset's stored policies to its declared set.

    Instances are owned by the IdentityRegistry and share its write barrier.

    Example:
        >>> store = DatasetPolicyStore.open(data_dir, dataset_id, barrier, storage)
        >>> result = store.reconcile({hourly, daily})
        >>> [p.label for p in store.policies()]
        ['daily', 'hourly']
    """

    HASH_TO_POLICY_ID = "hash_to_policy_id"
    POLICY_ID_TO_LABEL = "policy_id_to_label"
    POLICY_ID_TO_INTERVAL_SECONDS = "policy_id_to_interval_seconds"
    POLICY_ID_TO_KEEP_COUNT = "policy_id_to_keep_count"
    SNAPSHOT_ID_TO_POLICY_ID = "snapshot_id_to_policy_id"
    METADATA = "metadata"

    TABLES = (
        HASH_TO_POLICY_ID,
        POLICY_ID_TO_LABEL,
        POLICY_ID_TO_INTERVAL_SECONDS,
        POLICY_ID_TO_KEEP_COUNT,
        SNAPSHOT_ID_TO_POLICY_ID,
        METADATA,
    )

    SCHEMA_VERSION_KEY = "schema_version"
    INITIAL_SCHEMA_VERSION = 0

    def __init__(self, dataset_id: str, env: Environment, barrier: WriteBarrier) -> None:
        """Bind to an opened environment, creating tables if needed.

        Creation is idempotent: reopening an existing file changes nothing.

        Args:
            dataset_id: Identity of the owning dataset
            env: Environment for this dataset's file
            barrier: Process-wide write barrier shared with the registry
        """
        self.dataset_id = dataset_id
        self.env = env
        self._barrier = barrier

        with env.transaction(write=True) as txn:
            for name in self.TABLES:
                txn.open_table(name)
            metadata = txn.open_table(self.METADATA)
            if self.SCHEMA_VERSION_KEY not in metadata:
                metadata.put_uint(
                    self.SCHEMA_VERSION_KEY, self.INITIAL_SCHEMA_VERSION, no_overwrite=True
                )

    @classmethod
    def open(
        cls,
        data_dir: str | Path,
        dataset_id: str,
        barrier: WriteBarrier,
        storage: StorageConfig,
    ) -> DatasetPolicyStore:
        """Open or create the store file for a dataset.

        Args:
            data_dir: Directory holding dataset files
            dataset_id: Dataset identity
            barrier: Shared write barrier
            storage: Storage settings (file pattern, size ceiling)

        Returns:
            Ready-to-use store
        """
        env = Environment(
            cls.path_for(data_dir, dataset_id, storage),
            max_size_bytes=storage.dataset_max_bytes,
            max_tables=storage.max_tables,
            busy_timeout_ms=storage.busy_timeout_ms,
            wal_mode=storage.wal_mode,
        )
        return cls(dataset_id, env, barrier)

    @staticmethod
    def path_for(data_dir: str | Path, dataset_id: str, storage: StorageConfig) -> Path:
        """File path of a dataset's store.

        Every character outside ``[A-Za-z0-9-]`` is written as ``_xx`` per
        UTF-8 byte, so distinct ids never share a file and no id can leave
        data_dir.
        """
        safe_id = "".join(
            c if c in _FILE_NAME_CHARS else "".join(f"_{b:02x}" for b in c.encode("utf-8"))
            for c in dataset_id
        )
        return Path(data_dir) / storage.dataset_db_pattern.format(dataset_id=safe_id)

    def reconcile(self, declared: Iterable[PolicyDeclaration]) -> ReconcileResult:
        """Converge stored policies to exactly the declared set.

        New fingerprints get a fresh policy id and attribute rows; fingerprints
        no longer declared are removed with all their attributes; fingerprints
        in both sets keep their id, and only a differing keep count is
        rewritten. Runs in one write transaction.

        Args:
            declared: Declared policies for this dataset

        Returns:
            ReconcileResult describing what changed
        """
        declared_by_fingerprint: dict[bytes, PolicyDeclaration] = {}
        for policy in declared:
            digest = fingerprint(policy)
            previous = declared_by_fingerprint.get(digest)
            if previous is not None and previous.keep_count != policy.keep_count:
                logger.warning(
                    f"Policy '{policy.label}' declared twice with different keep counts",
                    extra={"dataset_id": self.dataset_id, "label": policy.label},
                )
            declared_by_fingerprint[digest] = policy

        result = ReconcileResult(dataset_id=self.dataset_id)

        with self._barrier.write():
            with self.env.transaction(write=True) as txn:
                hashes = txn.open_table(self.HASH_TO_POLICY_ID, create=False)
                labels = txn.open_table(self.POLICY_ID_TO_LABEL, create=False)
                intervals = txn.open_table(self.POLICY_ID_TO_INTERVAL_SECONDS, create=False)
                keeps = txn.open_table(self.POLICY_ID_TO_KEEP_COUNT, create=False)

                for digest, policy in declared_by_fingerprint.items():
                    existing_id = hashes.get_str(digest)
                    if existing_id is None:
                        policy_id = generate_unique_id(lambda candidate: candidate in labels)
                        hashes.put_str(digest, policy_id, no_overwrite=True)
                        labels.put_str(policy_id, policy.label, no_overwrite=True)
                        intervals.put_float(policy_id, policy.interval_seconds, no_overwrite=True)
                        if policy.keep_count is not None:
                            keeps.put_uint(policy_id, policy.keep_count, no_overwrite=True)
                        result.inserted.append(policy_id)
                        continue

                    if keeps.get_uint(existing_id) == policy.keep_count:
                        result.unchanged.append(existing_id)
                        continue

                    if policy.keep_count is None:
                        keeps.delete(existing_id)
                    else:
                        keeps.put_uint(existing_id, policy.keep_count)
                    result.keep_updated.append(existing_id)

                cursor = hashes.cursor()
                for digest, raw_id in cursor:
                    if digest in declared_by_fingerprint:
                        continue
                    policy_id = raw_id.decode("utf-8")
                    cursor.delete_current()
                    labels.delete(policy_id)
                    intervals.delete(policy_id)
                    keeps.delete(policy_id)
                    result.removed.append(policy_id)

        if result.changed:
            logger.info(
                f"Reconciled policies for dataset {self.dataset_id}",
                extra={
                    "dataset_id": self.dataset_id,
                    "inserted": len(result.inserted),
                    "removed": len(result.removed),
                    "keep_updated": len(result.keep_updated),
                    "unchanged": len(result.unchanged),
                },
            )
        return result

    def policies(self) -> list[StoredPolicy]:
        """List stored policies, ordered by label."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                return sorted(
                    self._read_policies(txn),
                    key=lambda p: (p.label, p.interval_seconds, p.policy_id),
                )

    def _read_policies(self, txn: Transaction) -> list[StoredPolicy]:
        hashes = txn.open_table(self.HASH_TO_POLICY_ID, create=False)
        labels = txn.open_table(self.POLICY_ID_TO_LABEL, create=False)
        intervals = txn.open_table(self.POLICY_ID_TO_INTERVAL_SECONDS, create=False)
        keeps = txn.open_table(self.POLICY_ID_TO_KEEP_COUNT, create=False)

        stored = []
        for digest, raw_id in hashes.items():
            policy_id = raw_id.decode("utf-8")
            stored.append(
                StoredPolicy(
                    policy_id=policy_id,
                    fingerprint=digest.hex(),
                    label=labels.get_str(policy_id) or "",
                    interval_seconds=intervals.get_float(policy_id) or 0.0,
                    keep_count=keeps.get_uint(policy_id),
                )
            )
        return stored

    def policy_id_for(self, policy: PolicyDeclaration) -> str | None:
        """Stored id of a declared policy, or None if not stored."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                hashes = txn.open_table(self.HASH_TO_POLICY_ID, create=False)
                return hashes.get_str(fingerprint(policy))

    def record_snapshot(self, snapshot_id: str, policy_id: str) -> None:
        """Associate a produced snapshot with the policy that produced it.

        The association table is append-only: an existing snapshot id is
        never rebound.

        Raises:
            ValueError: If policy_id is not a stored policy
            KeyExistsError: If snapshot_id is already recorded
        """
        with self._barrier.write():
            with self.env.transaction(write=True) as txn:
                labels = txn.open_table(self.POLICY_ID_TO_LABEL, create=False)
                if policy_id not in labels:
                    raise ValueError(
                        f"Unknown policy id {policy_id} for dataset {self.dataset_id}"
                    )
                snapshots = txn.open_table(self.SNAPSHOT_ID_TO_POLICY_ID, create=False)
                snapshots.put_str(snapshot_id, policy_id, no_overwrite=True)

        logger.debug(
            "Recorded snapshot",
            extra={"dataset_id": self.dataset_id, "snapshot_id": snapshot_id},
        )

    def snapshot_policy(self, snapshot_id: str) -> str | None:
        """Policy id that produced a snapshot, or None."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                snapshots = txn.open_table(self.SNAPSHOT_ID_TO_POLICY_ID, create=False)
                return snapshots.get_str(snapshot_id)

    def orphaned_snapshots(self) -> list[str]:
        """Snapshot ids whose producing policy has since been removed."""
        with self._barrier.read():
            with self.env.transaction() as txn:
                snapshots = txn.open_table(self.SNAPSHOT_ID_TO_POLICY_ID, create=False)
                labels = txn.open_table(self.POLICY_ID_TO_LABEL, create=False)
                return [
                    key.decode("utf-8")
                    for key, policy_id in snapshots.items()
                    if policy_id not in labels
                ]

    def schema_version(self) -> int:
        """Schema version recorded in the store metadata."""
        with self.env.transaction() as txn:
            metadata = txn.open_table(self.METADATA, create=False)
            version = metadata.get_uint(self.SCHEMA_VERSION_KEY)
            return self.INITIAL_SCHEMA_VERSION if version is None else version

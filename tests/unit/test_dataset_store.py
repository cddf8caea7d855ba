"""
Unit tests for the per-dataset policy store.

Tests cover:
- Table bootstrap and schema version
- Reconcile convergence and idempotence
- Keep-count-only updates
- Snapshot associations and orphan reporting
"""

import tempfile
from pathlib import Path

import pytest

from dataman.config import StorageConfig
from dataman.errors import KeyExistsError
from dataman.identity import DatasetPolicyStore, WriteBarrier
from dataman.policy import IntervalUnit, PolicyDeclaration, fingerprint

HOURLY = PolicyDeclaration("hourly", IntervalUnit.HOUR, 1, keep_count=24)
DAILY = PolicyDeclaration("daily", IntervalUnit.DAY, 1, keep_count=30)
WEEKLY = PolicyDeclaration("weekly", IntervalUnit.DAY, 7)


def table_snapshot(store):
    """Every row of every table, for byte-level comparisons."""
    with store.env.transaction() as txn:
        return {name: txn.open_table(name).items() for name in store.TABLES}


class TestDatasetPolicyStore:
    """Tests for DatasetPolicyStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def store(self, data_dir):
        return DatasetPolicyStore.open(data_dir, "ds-1", WriteBarrier(), StorageConfig())

    def test_open_creates_tables(self, store, data_dir):
        assert (data_dir / "ds_ds-1.db").exists()
        assert set(store.env.table_names()) == set(DatasetPolicyStore.TABLES)
        assert store.schema_version() == 0

    def test_reopen_keeps_existing_version(self, store, data_dir):
        """Bootstrap never overwrites a recorded schema version."""
        with store.env.transaction(write=True) as txn:
            txn.open_table(store.METADATA).put_uint(store.SCHEMA_VERSION_KEY, 3)

        reopened = DatasetPolicyStore.open(data_dir, "ds-1", WriteBarrier(), StorageConfig())

        assert reopened.schema_version() == 3

    def test_path_for_escapes(self, data_dir):
        path = DatasetPolicyStore.path_for(data_dir, "../../etc/x", StorageConfig())

        assert path.parent == data_dir
        assert path.name == "ds__2e_2e_2f_2e_2e_2fetc_2fx.db"

    @pytest.mark.parametrize(
        "a,b",
        [("u.1", "u1"), ("u_1", "u1"), ("u_2e1", "u.1"), ("u\u00e91", "u_c3_a91")],
    )
    def test_path_for_distinct_ids_distinct_files(self, data_dir, a, b):
        path_a = DatasetPolicyStore.path_for(data_dir, a, StorageConfig())
        path_b = DatasetPolicyStore.path_for(data_dir, b, StorageConfig())

        assert path_a != path_b

    def test_path_for_keeps_uuid_readable(self, data_dir):
        dataset_id = "6f1c0b0e-2d7a-4c38-9d55-0b8f2f1e6a10"

        path = DatasetPolicyStore.path_for(data_dir, dataset_id, StorageConfig())

        assert path.name == f"ds_{dataset_id}.db"

    def test_reconcile_inserts(self, store):
        result = store.reconcile({HOURLY, DAILY})

        assert len(result.inserted) == 2
        policies = {p.label: p for p in store.policies()}
        assert policies["hourly"].interval_seconds == 3600.0
        assert policies["hourly"].keep_count == 24
        assert policies["daily"].interval_seconds == 86400.0
        assert policies["hourly"].fingerprint == fingerprint(HOURLY).hex()

    def test_missing_keep_count_is_absent(self, store):
        store.reconcile({WEEKLY})

        with store.env.transaction() as txn:
            assert len(txn.open_table(store.POLICY_ID_TO_KEEP_COUNT)) == 0
        assert store.policies()[0].keep_count is None

    def test_reconcile_idempotent(self, store):
        """A second reconcile with the same set writes nothing."""
        store.reconcile({HOURLY, DAILY})
        before = table_snapshot(store)
        ids_before = {p.label: p.policy_id for p in store.policies()}

        result = store.reconcile({HOURLY, DAILY})

        assert result.mutations == 0
        assert len(result.unchanged) == 2
        assert table_snapshot(store) == before
        assert {p.label: p.policy_id for p in store.policies()} == ids_before

    def test_exact_convergence(self, store):
        """Replacing one policy removes it fully and keeps the others' ids."""
        store.reconcile({HOURLY, DAILY})
        hourly_id = store.policy_id_for(HOURLY)
        daily_id = store.policy_id_for(DAILY)

        result = store.reconcile({HOURLY, WEEKLY})

        assert result.removed == [daily_id]
        assert store.policy_id_for(HOURLY) == hourly_id
        assert store.policy_id_for(DAILY) is None
        weekly_id = store.policy_id_for(WEEKLY)
        assert weekly_id not in (hourly_id, daily_id)
        with store.env.transaction() as txn:
            for table in (
                store.POLICY_ID_TO_LABEL,
                store.POLICY_ID_TO_INTERVAL_SECONDS,
                store.POLICY_ID_TO_KEEP_COUNT,
            ):
                assert daily_id not in txn.open_table(table)
            hashes = {v.decode() for _, v in txn.open_table(store.HASH_TO_POLICY_ID).items()}
        assert hashes == {hourly_id, weekly_id}

    def test_keep_count_change_keeps_id(self, store):
        """Only the keep count row changes when keep_count changes."""
        store.reconcile({HOURLY})
        policy_id = store.policy_id_for(HOURLY)
        before = table_snapshot(store)

        result = store.reconcile({PolicyDeclaration("hourly", IntervalUnit.HOUR, 1, keep_count=48)})

        assert result.keep_updated == [policy_id]
        assert result.inserted == []
        after = table_snapshot(store)
        assert store.policies()[0].policy_id == policy_id
        assert store.policies()[0].keep_count == 48
        for table in store.TABLES:
            if table != store.POLICY_ID_TO_KEEP_COUNT:
                assert after[table] == before[table]

    def test_keep_count_cleared(self, store):
        store.reconcile({HOURLY})

        result = store.reconcile({PolicyDeclaration("hourly", IntervalUnit.HOUR, 1)})

        assert len(result.keep_updated) == 1
        assert store.policies()[0].keep_count is None

    def test_reconcile_empty_clears(self, store):
        store.reconcile({HOURLY, DAILY})

        result = store.reconcile(set())

        assert len(result.removed) == 2
        assert store.policies() == []

    def test_record_snapshot_append_only(self, store):
        store.reconcile({HOURLY})
        policy_id = store.policy_id_for(HOURLY)

        store.record_snapshot("snap-1", policy_id)

        assert store.snapshot_policy("snap-1") == policy_id
        with pytest.raises(KeyExistsError):
            store.record_snapshot("snap-1", policy_id)

    def test_record_snapshot_unknown_policy(self, store):
        with pytest.raises(ValueError, match="Unknown policy id"):
            store.record_snapshot("snap-1", "nope")

    def test_reconcile_leaves_snapshot_links(self, store):
        """Removed policies leave their snapshot rows, reported as orphans."""
        store.reconcile({HOURLY, DAILY})
        store.record_snapshot("snap-h", store.policy_id_for(HOURLY))
        store.record_snapshot("snap-d", store.policy_id_for(DAILY))

        store.reconcile({HOURLY})

        assert store.snapshot_policy("snap-d") is not None
        assert store.orphaned_snapshots() == ["snap-d"]

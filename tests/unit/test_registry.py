"""
Unit tests for the identity registry.

Tests cover:
- Bootstrap: tables, schema version, dataset store discovery
- Exclusivity lock acquisition and release
- Idempotent id allocation, single and batch
- Explicit pruning
"""

import os
import tempfile
from pathlib import Path

import pytest

import dataman.identity.registry as registry_module
from dataman.errors import ProcessAlreadyRunningError
from dataman.identity import IdentityRegistry
from dataman.identity.ids import generate_unique_id
from dataman.inventory import DatasetDescriptor, DatasetKind, DatasetName


def assert_bijection(registry):
    with registry.env.transaction() as txn:
        name_to_id = dict(txn.open_table(registry.NAME_TO_ID).items())
        id_to_name = dict(txn.open_table(registry.ID_TO_NAME).items())
    assert {v: k for k, v in name_to_id.items()} == id_to_name


def write_lock_marker(data_dir, pid):
    registry = IdentityRegistry.open(data_dir, acquire_lock=False)
    with registry.write_transaction() as txn:
        txn.open_table(registry.METADATA).put_uint(registry.PID_LOCK_KEY, pid)


class TestRegistryOpen:
    """Tests for IdentityRegistry.open and the exclusivity lock."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_bootstrap(self, data_dir):
        registry = IdentityRegistry.open(data_dir, acquire_lock=False)

        assert (data_dir / "application.db").exists()
        assert set(registry.env.table_names()) == set(IdentityRegistry.TABLES)
        assert registry.schema_version() == 0
        assert registry.datasets() == {}
        assert registry.lock_owner() is None

    def test_schema_version_never_overwritten(self, data_dir):
        registry = IdentityRegistry.open(data_dir, acquire_lock=False)
        with registry.write_transaction() as txn:
            txn.open_table(registry.METADATA).put_uint(registry.SCHEMA_VERSION_KEY, 2)

        assert IdentityRegistry.open(data_dir, acquire_lock=False).schema_version() == 2

    def test_acquires_lock(self, data_dir):
        registry = IdentityRegistry.open(data_dir)

        assert registry.lock_owner() == os.getpid()
        registry.close()
        assert registry.lock_owner() is None

    def test_live_lock_holder_rejects(self, data_dir):
        """A marker naming a live process makes open fail."""
        write_lock_marker(data_dir, 4242)

        with pytest.raises(ProcessAlreadyRunningError) as exc_info:
            IdentityRegistry.open(data_dir, liveness_probe=lambda pid: True)

        assert exc_info.value.pid == 4242
        reader = IdentityRegistry.open(data_dir, acquire_lock=False)
        assert reader.lock_owner() == 4242

    def test_second_open_in_same_process_rejects(self, data_dir):
        with IdentityRegistry.open(data_dir):
            with pytest.raises(ProcessAlreadyRunningError):
                IdentityRegistry.open(data_dir)

    def test_stale_lock_replaced(self, data_dir):
        """A marker naming a dead process is overwritten."""
        write_lock_marker(data_dir, 4242)

        registry = IdentityRegistry.open(data_dir, liveness_probe=lambda pid: False)

        assert registry.lock_owner() == os.getpid()

    def test_close_keeps_foreign_marker(self, data_dir):
        """close() only removes a marker this process wrote."""
        registry = IdentityRegistry.open(data_dir)
        with registry.write_transaction() as txn:
            txn.open_table(registry.METADATA).put_uint(registry.PID_LOCK_KEY, 4242)

        registry.close()

        assert registry.lock_owner() == 4242

    def test_reopen_discovers_dataset_stores(self, data_dir):
        with IdentityRegistry.open(data_dir) as registry:
            registry.register_all(
                [
                    DatasetDescriptor(
                        DatasetKind.FILESYSTEM, "id-1", DatasetName.parse("tank/a")
                    )
                ]
            )

        with IdentityRegistry.open(data_dir) as reopened:
            assert reopened.dataset_ids() == ["id-1"]
            assert reopened.dataset_store("id-1").dataset_id == "id-1"


class TestAllocation:
    """Tests for allocate_id and allocate_ids."""

    @pytest.fixture
    def registry(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with IdentityRegistry.open(tmpdir) as registry:
                yield registry

    def test_allocate_is_idempotent(self, registry):
        """Allocating the same name twice returns one id and writes once."""
        first = registry.allocate_id("tank/data")
        with registry.env.transaction() as txn:
            before = txn.open_table(registry.NAME_TO_ID).items()

        second = registry.allocate_id("tank/data")

        assert first == second
        with registry.env.transaction() as txn:
            assert txn.open_table(registry.NAME_TO_ID).items() == before
        assert registry.lookup_id("tank/data") == first
        assert registry.lookup_name(first) == "tank/data"

    def test_allocate_ids_batch(self, registry):
        existing = registry.allocate_id("tank/a")

        result = registry.allocate_ids(["tank/a", "tank/b", "tank/c", "tank/b"])

        assert set(result) == {"tank/a", "tank/b", "tank/c"}
        assert result["tank/a"] == existing
        assert len(set(result.values())) == 3
        assert_bijection(registry)

    def test_allocate_ids_all_or_nothing(self, registry, monkeypatch):
        """A failure partway through a batch rolls back every id in it."""
        existing = registry.allocate_id("tank/a")
        calls = []

        def failing_generate(exists):
            calls.append(exists)
            if len(calls) == 2:
                raise RuntimeError("allocation failed")
            return generate_unique_id(exists)

        monkeypatch.setattr(registry_module, "generate_unique_id", failing_generate)

        with pytest.raises(RuntimeError):
            registry.allocate_ids(["tank/b", "tank/a", "tank/c"])

        assert len(calls) == 2
        assert registry.datasets() == {existing: "tank/a"}
        assert registry.lookup_id("tank/b") is None
        assert_bijection(registry)

    def test_allocate_rejects_empty_name(self, registry):
        with pytest.raises(ValueError):
            registry.allocate_id("")

    def test_allocation_does_not_create_store(self, registry):
        """Stores appear on registration, not on allocation."""
        dataset_id = registry.allocate_id("tank/a")

        assert registry.dataset_store(dataset_id) is None
        assert registry.datasets() == {dataset_id: "tank/a"}

    def test_lookups_return_none_when_missing(self, registry):
        assert registry.lookup_id("tank/none") is None
        assert registry.lookup_name("no-such-id") is None
        assert registry.dataset_store("no-such-id") is None


class TestPrune:
    """Tests for prune and prune_missing."""

    @pytest.fixture
    def registry(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with IdentityRegistry.open(tmpdir) as registry:
                registry.register_all(
                    [
                        DatasetDescriptor(DatasetKind.FILESYSTEM, "id-a", DatasetName.parse("tank/a")),
                        DatasetDescriptor(DatasetKind.VOLUME, "id-b", DatasetName.parse("tank/b")),
                    ]
                )
                yield registry

    def test_prune_removes_everything(self, registry):
        store_path = registry.dataset_store("id-a").env.path

        pruned = registry.prune(["id-a", "unknown"])

        assert pruned == ["id-a"]
        assert registry.lookup_id("tank/a") is None
        assert registry.lookup_name("id-a") is None
        assert registry.dataset_store("id-a") is None
        assert not store_path.exists()
        assert registry.datasets() == {"id-b": "tank/b"}
        assert_bijection(registry)

    def test_prune_missing(self, registry):
        pruned = registry.prune_missing(["id-b"])

        assert pruned == ["id-a"]
        assert registry.dataset_ids() == ["id-b"]

    def test_prune_nothing(self, registry):
        assert registry.prune_missing(["id-a", "id-b"]) == []
        assert registry.dataset_ids() == ["id-a", "id-b"]

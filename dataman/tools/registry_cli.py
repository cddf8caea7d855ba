"""
Registry CLI tool for dataman.

This tool inspects and maintains the identity registry:
- register: Read the inventory, tag untracked datasets, register everything
- datasets: Print the id <-> name mapping
- policies: Print the stored policies of one dataset
- allocate: Print the id of a name, allocating it if needed
- prune: Forget datasets explicitly

Usage:
    python -m dataman.main register
    python -m dataman.main register --inventory-file inventory.yaml
    python -m dataman.main datasets --format json
    python -m dataman.main policies tank/home
    python -m dataman.main prune --missing

Invariants:
    - Commands that write take the exclusivity lock, read-only ones do not
    - Exit code 0 on success, 1 on dataman errors, 2 on usage errors
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts parsing it
"""

from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any

from ..config import DatamanConfig
from ..errors import DatamanError
from ..identity import IdentityRegistry, RegistrationReport
from ..inventory import DatasetDescriptor, ZfsInventory, load_inventory_file
from ..inventory.zfs import Runner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


class RegistryCLI:
    """CLI operations on the identity registry.

    Each method opens the registry, does one thing and closes it again.

    Example:
        >>> cli = RegistryCLI(DatamanConfig())
        >>> cli.allocate("tank/home")
        '6f1c0b0e-...'
    """

    def __init__(self, config: DatamanConfig, runner: Runner = subprocess.run) -> None:
        self.config = config
        self.inventory = ZfsInventory(config.inventory, runner=runner)

    @property
    def data_dir(self) -> Path:
        return Path(self.config.storage.data_dir)

    def _open(self, acquire_lock: bool) -> IdentityRegistry:
        return IdentityRegistry.open(
            self.data_dir, acquire_lock=acquire_lock, storage=self.config.storage
        )

    def _read_inventory(self, inventory_file: str | None) -> list[DatasetDescriptor]:
        if inventory_file:
            return load_inventory_file(inventory_file)
        return self.inventory.list_datasets()

    def register(self, inventory_file: str | None = None, tag: bool = True) -> RegistrationReport:
        """Register the current inventory.

        Args:
            inventory_file: Read this file instead of running zfs list
            tag: Tag untracked datasets through zfs (ignored for files)

        Returns:
            RegistrationReport
        """
        descriptors = self._read_inventory(inventory_file)
        with self._open(acquire_lock=True) as registry:
            if tag and not inventory_file:
                descriptors = self.inventory.tag_untracked(descriptors, registry)
            registrable = [d for d in descriptors if d.kind.registrable]
            skipped = len(descriptors) - len(registrable)
            if skipped:
                logger.info(f"Skipping {skipped} snapshot(s) and bookmark(s)")
            return registry.register_all(registrable)

    def datasets(self) -> dict[str, str]:
        """Current id -> name mapping."""
        with self._open(acquire_lock=False) as registry:
            return registry.datasets()

    def policies(self, name_or_id: str) -> list[dict[str, Any]]:
        """Stored policies of a dataset given by name or id.

        Raises:
            DatamanError: If no such dataset is registered
        """
        with self._open(acquire_lock=False) as registry:
            dataset_id = registry.lookup_id(name_or_id) or name_or_id
            store = registry.dataset_store(dataset_id)
            if store is None:
                raise DatamanError(
                    f"Dataset '{name_or_id}' is not registered",
                    code="DATASET_NOT_FOUND",
                    details={"dataset": name_or_id},
                )
            return [policy.to_dict() for policy in store.policies()]

    def allocate(self, name: str) -> str:
        """Id for a name, allocated if needed."""
        with self._open(acquire_lock=True) as registry:
            return registry.allocate_id(name)

    def prune(
        self,
        dataset_ids: list[str],
        missing: bool = False,
        inventory_file: str | None = None,
    ) -> list[str]:
        """Prune the given ids, or every id absent from the inventory.

        Returns:
            Pruned ids
        """
        if missing:
            live_ids = [
                d.external_id for d in self._read_inventory(inventory_file) if d.tagged
            ]
            with self._open(acquire_lock=True) as registry:
                return registry.prune_missing(live_ids)
        with self._open(acquire_lock=True) as registry:
            return registry.prune(dataset_ids)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="dataman", description="dataman dataset identity and policy registry"
    )
    parser.add_argument("--data-dir", help="Data directory (overrides DATAMAN_DATA_DIR)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # register command
    register_parser = subparsers.add_parser("register", help="Register the dataset inventory")
    register_parser.add_argument(
        "--inventory-file", help="YAML or JSON inventory file (default: zfs list)"
    )
    register_parser.add_argument(
        "--no-tag", action="store_true", help="Do not tag untracked datasets"
    )
    register_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    # datasets command
    datasets_parser = subparsers.add_parser("datasets", help="List registered datasets")
    datasets_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    # policies command
    policies_parser = subparsers.add_parser("policies", help="Show a dataset's policies")
    policies_parser.add_argument("dataset", help="Dataset name or id")
    policies_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    # allocate command
    allocate_parser = subparsers.add_parser("allocate", help="Print the id of a dataset name")
    allocate_parser.add_argument("name", help="Full dataset name")

    # prune command
    prune_parser = subparsers.add_parser("prune", help="Forget datasets")
    prune_parser.add_argument("ids", nargs="*", help="Dataset ids to prune")
    prune_parser.add_argument(
        "--missing", action="store_true", help="Prune every id absent from the inventory"
    )
    prune_parser.add_argument(
        "--inventory-file", help="Inventory used by --missing (default: zfs list)"
    )

    return parser


def run(args: argparse.Namespace, cli: RegistryCLI) -> int:
    """Execute a parsed command.

    Returns:
        Process exit code
    """
    if args.command == "register":
        report = cli.register(args.inventory_file, tag=not args.no_tag)
        if args.format == "json":
            print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        else:
            print(
                f"Registered: {len(report.created)} created, {len(report.renamed)} renamed, "
                f"{len(report.unchanged)} unchanged, {len(report.displaced)} displaced"
            )
            print(f"Policy changes: {report.policy_mutations}")

    elif args.command == "datasets":
        datasets = cli.datasets()
        if args.format == "json":
            print(json.dumps(datasets, indent=2, sort_keys=True))
        elif not datasets:
            print("No datasets registered")
        else:
            for dataset_id, name in sorted(datasets.items(), key=lambda item: item[1]):
                print(f"{dataset_id}\t{name}")

    elif args.command == "policies":
        policies = cli.policies(args.dataset)
        if args.format == "json":
            print(json.dumps(policies, indent=2, sort_keys=True))
        elif not policies:
            print("No policies declared")
        else:
            for policy in policies:
                keep = "unlimited" if policy["keep_count"] is None else policy["keep_count"]
                print(
                    f"{policy['policy_id']}\t{policy['label']}\t"
                    f"every {policy['interval_seconds']:g}s\tkeep {keep}"
                )

    elif args.command == "allocate":
        print(cli.allocate(args.name))

    elif args.command == "prune":
        if not args.missing and not args.ids:
            print("prune: give dataset ids or --missing", file=sys.stderr)
            return EXIT_USAGE
        if args.missing and args.ids:
            print("prune: dataset ids and --missing are exclusive", file=sys.stderr)
            return EXIT_USAGE
        pruned = cli.prune(args.ids, missing=args.missing, inventory_file=args.inventory_file)
        print(f"Pruned {len(pruned)} dataset(s)")
        for dataset_id in pruned:
            print(f"  - {dataset_id}")

    return EXIT_OK


def execute(args: argparse.Namespace, cli: RegistryCLI) -> int:
    """Run a command, mapping dataman errors to exit code 1."""
    try:
        return run(args, cli)
    except DatamanError as e:
        logger.error(e.message, extra={"code": e.code})
        print(f"error: {e.message}", file=sys.stderr)
        return EXIT_ERROR

"""
zfs command line inventory.

Reads datasets with ``zfs list`` and writes identities back with ``zfs set``.
Rows are requested in scripted mode (``-H -p``), one tab-separated line per
dataset, in this column order:

    guid  type  name  creation  <policy property>  <id property>

A ``-`` in a property column means the property is not set.

Identity assignment is two steps: the registry allocates the id, then the id
is written onto the dataset. Until the write succeeds the dataset still reads
as untagged; rerunning the protocol returns the same id because allocation is
idempotent.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..config import InventoryConfig
from ..errors import InventoryError
from ..policy.parser import parse_policies
from .types import DatasetDescriptor, DatasetKind, DatasetName

if TYPE_CHECKING:
    from ..identity.registry import IdentityRegistry

logger = logging.getLogger(__name__)

UNSET = "-"
LIST_COLUMNS = 6

Runner = Callable[..., subprocess.CompletedProcess]


def parse_list_line(line: str) -> DatasetDescriptor:
    """Parse one row of ``zfs list -H -p`` output.

    Args:
        line: Tab-separated row

    Returns:
        Descriptor for the row

    Raises:
        InventoryError: If the row is malformed
    """
    fields = line.rstrip("\n").split("\t")
    if len(fields) != LIST_COLUMNS:
        raise InventoryError(
            f"Expected {LIST_COLUMNS} columns in zfs list output, got {len(fields)}: {line!r}"
        )
    guid, kind_text, name_text, creation_text, policy_text, id_text = fields

    try:
        kind = DatasetKind.from_str(kind_text)
        name = DatasetName.parse(name_text)
    except ValueError as e:
        raise InventoryError(f"Malformed zfs list row {line!r}: {e}") from e

    creation = None
    if creation_text != UNSET:
        try:
            creation = datetime.fromtimestamp(int(creation_text), tz=timezone.utc)
        except ValueError as e:
            raise InventoryError(f"Malformed creation time in row {line!r}") from e

    declared = None
    if policy_text != UNSET:
        declared = frozenset(parse_policies(policy_text))

    return DatasetDescriptor(
        kind=kind,
        external_id=None if id_text == UNSET else id_text,
        name=name,
        declared_policies=declared,
        guid=None if guid == UNSET else guid,
        creation=creation,
    )


class ZfsInventory:
    """Dataset inventory backed by the zfs binary.

    The process runner is injectable so tests never need a real pool.

    Example:
        >>> inventory = ZfsInventory(InventoryConfig())
        >>> descriptors = inventory.list_datasets()
        >>> inventory.tag_untracked(descriptors, registry)
    """

    def __init__(self, config: InventoryConfig, runner: Runner = subprocess.run) -> None:
        self.config = config
        self._runner = runner

    def _run(self, args: list[str]) -> str:
        command = [self.config.zfs_binary, *args]
        try:
            completed = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.config.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise InventoryError(
                f"zfs binary not found: {self.config.zfs_binary}", command=command
            ) from e
        except subprocess.TimeoutExpired as e:
            raise InventoryError(
                f"zfs timed out after {self.config.timeout_seconds}s", command=command
            ) from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            logger.error(
                "zfs command failed",
                extra={"command": command, "returncode": completed.returncode, "stderr": stderr},
            )
            raise InventoryError(
                f"zfs exited with status {completed.returncode}: {stderr}", command=command
            )
        return completed.stdout or ""

    def list_command(self, kinds: Iterable[DatasetKind]) -> list[str]:
        """Arguments of the zfs list invocation."""
        columns = ",".join(
            [
                "guid",
                "type",
                "name",
                "creation",
                self.config.policy_property,
                self.config.id_property,
            ]
        )
        types = ",".join(kind.value for kind in kinds)
        return ["list", "-H", "-p", "-o", columns, "-t", types]

    def list_datasets(
        self,
        kinds: Iterable[DatasetKind] = (DatasetKind.FILESYSTEM, DatasetKind.VOLUME),
    ) -> list[DatasetDescriptor]:
        """List datasets of the given kinds.

        Returns:
            One descriptor per dataset, in zfs order

        Raises:
            InventoryError: If zfs fails or prints a malformed row
        """
        output = self._run(self.list_command(kinds))
        descriptors = [parse_list_line(line) for line in output.splitlines() if line.strip()]
        logger.debug(f"Listed {len(descriptors)} dataset(s)")
        return descriptors

    def assign_identity(
        self, descriptor: DatasetDescriptor, registry: IdentityRegistry
    ) -> DatasetDescriptor:
        """Allocate an id for a dataset and write it onto the dataset.

        Returns:
            The descriptor carrying its new external id
        """
        name = descriptor.hierarchical_name
        dataset_id = registry.allocate_id(name)
        self._run(["set", f"{self.config.id_property}={dataset_id}", name])
        logger.info(
            f"Tagged dataset {name}",
            extra={"dataset_id": dataset_id, "dataset_name": name},
        )
        return replace(descriptor, external_id=dataset_id)

    def tag_untracked(
        self, descriptors: Iterable[DatasetDescriptor], registry: IdentityRegistry
    ) -> list[DatasetDescriptor]:
        """Tag every untagged filesystem or volume.

        Returns:
            The input descriptors, untagged ones replaced by tagged copies
        """
        result = []
        for descriptor in descriptors:
            if descriptor.kind.registrable and not descriptor.tagged:
                descriptor = self.assign_identity(descriptor, registry)
            result.append(descriptor)
        return result

"""
File-based inventory feed.

Lets operators and tests register datasets without a zfs pool. The file is
YAML (JSON is a subset and loads the same way):

    datasets:
      - kind: filesystem
        id: 6f1c0b0e-0d8e-4c9b-9d4e-0a7f3f6f9a10
        name: tank/home
        policies: "[hourly](1h:24);[daily](1d:30)"
      - kind: volume
        id: 0e1d2c3b-4a59-4867-8765-43210fedcba9
        name: tank/vm0
        policies:
          - {label: weekly, unit: d, multiplier: 7, keep: 4}

``policies`` omitted means "not declared"; an empty string or list declares
no policies and clears the store on registration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ..errors import InventoryError
from ..policy.parser import parse_policies
from ..policy.types import IntervalUnit, PolicyDeclaration
from .types import DatasetDescriptor, DatasetKind, DatasetName

logger = logging.getLogger(__name__)


def _parse_policy_mapping(entry: dict[str, Any]) -> PolicyDeclaration:
    try:
        return PolicyDeclaration(
            label=str(entry["label"]),
            unit=IntervalUnit.from_suffix(str(entry["unit"])),
            multiplier=float(entry["multiplier"]),
            keep_count=entry.get("keep"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InventoryError(f"Invalid policy entry {entry!r}: {e}") from e


def _parse_policies(value: Any) -> frozenset[PolicyDeclaration] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return frozenset(parse_policies(value))
    if isinstance(value, list):
        declared: set[PolicyDeclaration] = set()
        for entry in value:
            if not isinstance(entry, dict):
                raise InventoryError(f"Policy entry must be a mapping, got {entry!r}")
            policy = _parse_policy_mapping(entry)
            declared.discard(policy)
            declared.add(policy)
        return frozenset(declared)
    raise InventoryError(f"Policies must be a string or a list, got {type(value).__name__}")


def parse_inventory(data: Any) -> list[DatasetDescriptor]:
    """Build descriptors from a loaded inventory document.

    Raises:
        InventoryError: If the document is malformed
    """
    if not isinstance(data, dict) or not isinstance(data.get("datasets"), list):
        raise InventoryError("Inventory document must contain a 'datasets' list")

    descriptors = []
    for index, entry in enumerate(data["datasets"]):
        if not isinstance(entry, dict):
            raise InventoryError(f"Dataset entry {index} must be a mapping")
        try:
            kind = DatasetKind.from_str(str(entry.get("kind", "filesystem")))
            name = DatasetName.parse(str(entry["name"]))
        except (KeyError, ValueError) as e:
            raise InventoryError(f"Invalid dataset entry {index}: {e}") from e
        external_id = entry.get("id")
        descriptors.append(
            DatasetDescriptor(
                kind=kind,
                external_id=None if external_id is None else str(external_id),
                name=name,
                declared_policies=_parse_policies(entry.get("policies")),
                guid=None if entry.get("guid") is None else str(entry["guid"]),
            )
        )
    return descriptors


def load_inventory_file(path: str | Path) -> list[DatasetDescriptor]:
    """Load descriptors from a YAML or JSON inventory file.

    Raises:
        InventoryError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InventoryError(f"Cannot read inventory file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid inventory file {path}: {e}") from e

    descriptors = parse_inventory(data or {})
    logger.info(
        f"Loaded {len(descriptors)} dataset(s) from {path}",
        extra={"path": str(path), "datasets": len(descriptors)},
    )
    return descriptors

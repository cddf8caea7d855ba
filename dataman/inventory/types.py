"""
Dataset inventory value types.

A DatasetDescriptor is one row of the inventory feed: what kind of dataset it
is, the identity recorded on it (if any), its full name and the policies
declared on it.

ZFS names look like ``pool/path/to/fs``, with an optional ``@snapshot`` or
``#bookmark`` suffix:

    >>> DatasetName.parse("tank/home@daily-1").full_name
    'tank/home@daily-1'
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ..policy.types import PolicyDeclaration


class DatasetKind(Enum):
    """The four kinds of ZFS dataset."""

    FILESYSTEM = "filesystem"
    VOLUME = "volume"
    SNAPSHOT = "snapshot"
    BOOKMARK = "bookmark"

    @property
    def registrable(self) -> bool:
        """Only filesystems and volumes receive identities."""
        return self in (DatasetKind.FILESYSTEM, DatasetKind.VOLUME)

    @classmethod
    def from_str(cls, value: str) -> DatasetKind:
        """Convert a zfs type column to a DatasetKind.

        Raises:
            ValueError: If value is not a dataset kind
        """
        lowered = value.lower()
        for kind in cls:
            if kind.value == lowered:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid dataset kind '{value}'. Valid kinds: {valid}")


@dataclass(frozen=True)
class DatasetName:
    """Parsed hierarchical dataset name.

    Attributes:
        path: Name components, pool first
        snapshot: Snapshot suffix after '@', if any
        bookmark: Bookmark suffix after '#', if any
    """

    path: tuple[str, ...]
    snapshot: str | None = None
    bookmark: str | None = None

    @property
    def pool(self) -> str:
        return self.path[0]

    @property
    def base_name(self) -> str:
        """Name without snapshot or bookmark suffix."""
        return "/".join(self.path)

    @property
    def full_name(self) -> str:
        """Consolidated name including any suffix."""
        name = self.base_name
        if self.snapshot is not None:
            name += "@" + self.snapshot
        if self.bookmark is not None:
            name += "#" + self.bookmark
        return name

    @classmethod
    def parse(cls, value: str) -> DatasetName:
        """Parse a zfs dataset name.

        Raises:
            ValueError: If the name is empty or malformed
        """
        base = value.strip()
        if not base:
            raise ValueError("Dataset name cannot be empty")

        snapshot = None
        if "@" in base:
            parts = base.split("@")
            if len(parts) != 2 or not parts[1]:
                raise ValueError(f"Invalid snapshot name: {value!r}")
            base, snapshot = parts

        bookmark = None
        if "#" in base:
            parts = base.split("#")
            if len(parts) != 2 or not parts[1]:
                raise ValueError(f"Invalid bookmark name: {value!r}")
            base, bookmark = parts

        if snapshot is not None and bookmark is not None:
            raise ValueError(f"Name has both snapshot and bookmark suffix: {value!r}")

        path = tuple(base.split("/"))
        if any(not component for component in path):
            raise ValueError(f"Invalid dataset path: {value!r}")
        return cls(path=path, snapshot=snapshot, bookmark=bookmark)

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class DatasetDescriptor:
    """One dataset as observed in the inventory.

    Attributes:
        kind: Dataset kind
        external_id: Identity stored on the dataset (None = untagged)
        name: Parsed dataset name
        declared_policies: Declared policies (None = property not set)
        guid: ZFS guid, informational
        creation: Creation time, informational
    """

    kind: DatasetKind
    external_id: str | None
    name: DatasetName
    declared_policies: frozenset[PolicyDeclaration] | None = None
    guid: str | None = None
    creation: datetime | None = None

    @property
    def hierarchical_name(self) -> str:
        return self.name.full_name

    @property
    def tagged(self) -> bool:
        return self.external_id is not None

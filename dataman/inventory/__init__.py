"""
Dataset inventory for dataman.

This module provides:
- DatasetKind, DatasetName, DatasetDescriptor: inventory value types
- ZfsInventory: reads datasets from zfs and tags untracked ones
- load_inventory_file: file-based inventory for operators and tests
"""

from .feed import load_inventory_file, parse_inventory
from .types import DatasetDescriptor, DatasetKind, DatasetName
from .zfs import ZfsInventory, parse_list_line

__all__ = [
    "DatasetDescriptor",
    "DatasetKind",
    "DatasetName",
    "ZfsInventory",
    "parse_list_line",
    "load_inventory_file",
    "parse_inventory",
]

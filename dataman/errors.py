"""
Error types for dataman.

This module defines every exception raised by the identity and policy layers:
- DatamanError: Base exception
- ProcessAlreadyRunningError: Another live process owns the registry
- InvalidDatasetKindError: Snapshot or bookmark offered for registration
- UntaggedDatasetError: Dataset offered for registration without an id
- StorageUnavailableError: A store could not be opened or a transaction failed
- KeyExistsError: No-overwrite write hit an existing key
- PolicyParseError: Policy text could not be parsed
- InventoryError: The zfs command line failed or returned garbage
- ConfigError: Invalid environment configuration

Invariants:
    - All runtime errors inherit from DatamanError
    - Missing keys are never errors; lookups return None
    - Error messages name the resource involved
"""

from __future__ import annotations

from typing import Any


class DatamanError(Exception):
    """Base exception for all dataman errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DATAMAN_ERROR"
        self.details = details or {}


class ProcessAlreadyRunningError(DatamanError):
    """Another live process holds the exclusivity lock.

    Fatal to startup; not retried.
    """

    def __init__(self, pid: int, path: str | None = None) -> None:
        super().__init__(
            f"Registry at {path or '<unknown>'} is locked by running process {pid}",
            code="PROCESS_ALREADY_RUNNING",
            details={"pid": pid, "path": path},
        )
        self.pid = pid
        self.path = path


class InvalidDatasetKindError(DatamanError):
    """A snapshot or bookmark was offered for registration.

    The whole batch is rejected; callers may retry after filtering.
    """

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(
            f"Dataset '{name}' has kind '{kind}'; only filesystems and volumes can be registered",
            code="INVALID_DATASET_KIND",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class UntaggedDatasetError(DatamanError):
    """A dataset without an external id was offered for registration."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Dataset '{name}' has no identity property; tag it before registering",
            code="UNTAGGED_DATASET",
            details={"name": name},
        )
        self.name = name


class StorageUnavailableError(DatamanError):
    """The transactional store failed to open or commit.

    Safe to retry: no partial state of the failed transaction survives.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="STORAGE_UNAVAILABLE", details={"path": path})
        self.path = path


class KeyExistsError(DatamanError):
    """A no-overwrite write found the key already present."""

    def __init__(self, table: str, key: bytes) -> None:
        super().__init__(
            f"Key {key!r} already exists in table '{table}'",
            code="KEY_EXISTS",
            details={"table": table, "key": key},
        )
        self.table = table
        self.key = key


class PolicyParseError(DatamanError):
    """Policy mini-language text could not be parsed.

    Attributes:
        text: The offending text
        reason: Short machine-readable reason
    """

    def __init__(self, text: str, reason: str) -> None:
        super().__init__(
            f"Cannot parse snapshot policy '{text}': {reason}",
            code="POLICY_PARSE_ERROR",
            details={"text": text, "reason": reason},
        )
        self.text = text
        self.reason = reason


class InventoryError(DatamanError):
    """The dataset inventory could not be read or updated."""

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        super().__init__(message, code="INVENTORY_ERROR", details={"command": command})
        self.command = command


class ConfigError(ValueError):
    """Invalid configuration value in the environment."""

    def __init__(self, variable: str, value: str, expected: str) -> None:
        super().__init__(f"Invalid {variable} '{value}': expected {expected}")
        self.variable = variable
        self.value = value

"""Secret version ledger.

The gateway never returns registry passwords or secret environment values,
so rotation cannot be detected by comparing values. Instead the operator
bumps an integer version in the configuration, and this ledger remembers
the last version that was successfully applied per application.

Document layout (version 1):

    {
      "version": 1,
      "applications": {
        "<app name>": {
          "registryPasswordVersion": 2,
          "secretEnvVersions": {"DB_PASSWORD": 3}
        }
      }
    }

An absent version is treated exactly like "never set"; equality is never
inferred from missing data.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .config import LEDGER_FILE_SUFFIX, LEDGER_FORMAT_VERSION, MAX_LEDGER_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when the ledger cannot be read or written."""

    pass


@dataclass
class LedgerEntry:
    """Applied secret versions for one application."""

    registry_password_version: int | None = None
    secret_env_versions: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return self.registry_password_version is None and not self.secret_env_versions

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {}
        if self.registry_password_version is not None:
            data["registryPasswordVersion"] = self.registry_password_version
        if self.secret_env_versions:
            data["secretEnvVersions"] = dict(sorted(self.secret_env_versions.items()))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        """Create from dictionary."""
        password_version = data.get("registryPasswordVersion")
        env_versions = data.get("secretEnvVersions") or {}
        if password_version is not None and not isinstance(password_version, int):
            raise LedgerError(f"registryPasswordVersion must be an integer: {password_version!r}")
        if not isinstance(env_versions, dict) or not all(
            isinstance(v, int) for v in env_versions.values()
        ):
            raise LedgerError("secretEnvVersions must map keys to integers")
        return cls(
            registry_password_version=password_version,
            secret_env_versions=dict(env_versions),
        )


class LedgerStore(Protocol):
    """Storage for the ledger document."""

    def load(self) -> dict[str, Any] | None:
        """Return the last saved document, or None if nothing was saved yet."""
        ...

    def save(self, document: dict[str, Any]) -> None: ...


class InMemoryLedgerStore:
    """Ledger store that keeps the document in memory.

    Used by read-only commands and tests.
    """

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document = document
        self.save_count = 0

    def load(self) -> dict[str, Any] | None:
        return json.loads(json.dumps(self.document)) if self.document is not None else None

    def save(self, document: dict[str, Any]) -> None:
        self.document = json.loads(json.dumps(document))
        self.save_count += 1


def ledger_path_for(config_path: Path) -> Path:
    """Derive the ledger path from the configuration path.

    ``cluster.yaml`` becomes ``cluster.apprun-state.json`` in the same directory.
    """
    return config_path.with_name(config_path.stem + LEDGER_FILE_SUFFIX)


class JsonFileLedgerStore:
    """Ledger store backed by a JSON file next to the configuration."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_config(cls, config_path: Path) -> JsonFileLedgerStore:
        return cls(ledger_path_for(config_path))

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None

        # SECURITY: Check file size before reading to prevent DoS
        try:
            if self.path.stat().st_size > MAX_LEDGER_FILE_SIZE_BYTES:
                raise LedgerError(
                    f"Ledger file exceeds maximum size of {MAX_LEDGER_FILE_SIZE_BYTES} bytes: "
                    f"{self.path}"
                )
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise LedgerError(f"Failed to read ledger file {self.path}: {e}") from e

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise LedgerError(f"Invalid JSON in {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise LedgerError(f"Ledger file must contain a JSON object: {self.path}")
        return document

    def save(self, document: dict[str, Any]) -> None:
        # Atomic replace via sibling temp file
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise LedgerError(f"Failed to write ledger file {self.path}: {e}") from e
        logger.info("Ledger saved", extra={"path": str(self.path)})


class SecretVersionLedger:
    """Versioned key -> integer store scoped by application name.

    Read-only during planning. The executor mutates it only after a
    confirmed-successful gateway write, then calls persist() once.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._entries: dict[str, LedgerEntry] = {}
        self._modified = False
        self._load()

    @classmethod
    def in_memory(cls, document: dict[str, Any] | None = None) -> SecretVersionLedger:
        return cls(InMemoryLedgerStore(document))

    def _load(self) -> None:
        document = self._store.load()
        if document is None:
            return

        version = document.get("version", LEDGER_FORMAT_VERSION)
        if version != LEDGER_FORMAT_VERSION:
            raise LedgerError(
                f"Unsupported ledger version {version} (expected {LEDGER_FORMAT_VERSION})"
            )

        applications = document.get("applications") or {}
        if not isinstance(applications, dict):
            raise LedgerError("Ledger 'applications' must be an object")

        for name, data in applications.items():
            entry = LedgerEntry.from_dict(data or {})
            if not entry.is_empty():
                self._entries[name] = entry

    @property
    def modified(self) -> bool:
        """True if any entry changed since load or the last persist()."""
        return self._modified

    def application_names(self) -> list[str]:
        return sorted(self._entries)

    def get_password_version(self, app_name: str) -> int | None:
        entry = self._entries.get(app_name)
        return entry.registry_password_version if entry else None

    def set_password_version(self, app_name: str, version: int | None) -> None:
        """Record the applied registry password version; None clears it."""
        entry = self._entries.get(app_name)
        current = entry.registry_password_version if entry else None
        if current == version:
            return
        if entry is None:
            entry = self._entries.setdefault(app_name, LedgerEntry())
        entry.registry_password_version = version
        self._prune(app_name)
        self._modified = True

    def get_secret_env_version(self, app_name: str, key: str) -> int | None:
        entry = self._entries.get(app_name)
        return entry.secret_env_versions.get(key) if entry else None

    def set_secret_env_version(self, app_name: str, key: str, version: int | None) -> None:
        """Record the applied version of a secret env value; None clears it."""
        entry = self._entries.get(app_name)
        current = entry.secret_env_versions.get(key) if entry else None
        if current == version:
            return
        if entry is None:
            entry = self._entries.setdefault(app_name, LedgerEntry())
        if version is None:
            entry.secret_env_versions.pop(key, None)
        else:
            entry.secret_env_versions[key] = version
        self._prune(app_name)
        self._modified = True

    def secret_env_keys(self, app_name: str) -> list[str]:
        entry = self._entries.get(app_name)
        return sorted(entry.secret_env_versions) if entry else []

    def _prune(self, app_name: str) -> None:
        entry = self._entries.get(app_name)
        if entry is not None and entry.is_empty():
            del self._entries[app_name]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the versioned document layout."""
        return {
            "version": LEDGER_FORMAT_VERSION,
            "applications": {
                name: self._entries[name].to_dict() for name in self.application_names()
            },
        }

    def persist(self) -> bool:
        """Write the ledger if, and only if, something changed.

        Returns:
            True if the store was written.
        """
        if not self._modified:
            return False
        self._store.save(self.to_dict())
        self._modified = False
        return True

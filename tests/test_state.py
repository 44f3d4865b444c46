"""Tests for the secret version ledger."""

import json
from pathlib import Path

import pytest

from provisioner.state import (
    InMemoryLedgerStore,
    JsonFileLedgerStore,
    LedgerError,
    SecretVersionLedger,
    ledger_path_for,
)


class TestLedgerPath:
    def test_derived_from_config_path(self, tmp_path: Path) -> None:
        assert ledger_path_for(tmp_path / "cluster.yaml") == (
            tmp_path / "cluster.apprun-state.json"
        )


class TestSecretVersionLedger:
    """Tests for SecretVersionLedger."""

    def test_empty(self) -> None:
        ledger = SecretVersionLedger.in_memory()

        assert ledger.get_password_version("web") is None
        assert ledger.get_secret_env_version("web", "TOKEN") is None
        assert ledger.application_names() == []

    def test_set_and_get(self) -> None:
        ledger = SecretVersionLedger.in_memory()

        ledger.set_password_version("web", 2)
        ledger.set_secret_env_version("web", "TOKEN", 3)

        assert ledger.get_password_version("web") == 2
        assert ledger.get_secret_env_version("web", "TOKEN") == 3
        assert ledger.modified is True

    def test_setting_same_value_is_not_a_modification(self) -> None:
        ledger = SecretVersionLedger.in_memory(
            {"version": 1, "applications": {"web": {"registryPasswordVersion": 2}}}
        )

        ledger.set_password_version("web", 2)

        assert ledger.modified is False

    def test_clearing_prunes_empty_entries(self) -> None:
        """Test that an application with no versions left disappears."""
        ledger = SecretVersionLedger.in_memory()
        ledger.set_secret_env_version("web", "TOKEN", 1)

        ledger.set_secret_env_version("web", "TOKEN", None)

        assert ledger.application_names() == []
        assert ledger.to_dict() == {"version": 1, "applications": {}}

    def test_persist_only_when_modified(self) -> None:
        store = InMemoryLedgerStore()
        ledger = SecretVersionLedger(store)

        assert ledger.persist() is False
        assert store.save_count == 0

        ledger.set_password_version("web", 1)
        assert ledger.persist() is True
        assert ledger.persist() is False
        assert store.save_count == 1
        assert store.document == {
            "version": 1,
            "applications": {"web": {"registryPasswordVersion": 1}},
        }

    def test_unsupported_version(self) -> None:
        with pytest.raises(LedgerError) as exc_info:
            SecretVersionLedger.in_memory({"version": 2, "applications": {}})

        assert "Unsupported ledger version 2" in str(exc_info.value)

    def test_non_integer_version_rejected(self) -> None:
        document = {
            "version": 1,
            "applications": {"web": {"secretEnvVersions": {"TOKEN": "3"}}},
        }

        with pytest.raises(LedgerError):
            SecretVersionLedger.in_memory(document)


class TestJsonFileLedgerStore:
    """Tests for the file-backed store."""

    def test_missing_file_loads_empty(self, tmp_path: Path) -> None:
        ledger = SecretVersionLedger(JsonFileLedgerStore(tmp_path / "state.json"))

        assert ledger.application_names() == []

    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        ledger = SecretVersionLedger(JsonFileLedgerStore(path))
        ledger.set_password_version("web", 1)
        ledger.set_secret_env_version("web", "TOKEN", 4)
        ledger.persist()

        reloaded = SecretVersionLedger(JsonFileLedgerStore(path))

        assert reloaded.get_password_version("web") == 1
        assert reloaded.get_secret_env_version("web", "TOKEN") == 4
        assert not (tmp_path / "state.json.tmp").exists()

    def test_file_layout(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        ledger = SecretVersionLedger(JsonFileLedgerStore(path))
        ledger.set_secret_env_version("web", "B", 1)
        ledger.set_secret_env_version("web", "A", 2)
        ledger.persist()

        assert json.loads(path.read_text()) == {
            "version": 1,
            "applications": {"web": {"secretEnvVersions": {"A": 2, "B": 1}}},
        }

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(LedgerError) as exc_info:
            SecretVersionLedger(JsonFileLedgerStore(path))

        assert "Invalid JSON" in str(exc_info.value)

    def test_not_an_object(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("[]")

        with pytest.raises(LedgerError):
            SecretVersionLedger(JsonFileLedgerStore(path))

"""Tests for credential stores."""

import json
import os
import stat

from common.credentials import FileCredentialStore, MemoryCredentialStore, host_key


class TestHostKey:
    def test_normalizes(self):
        assert host_key("https://Registry.Example.com/api/") == "registry.example.com"
        assert host_key("http://localhost:8080") == "localhost:8080"
        assert host_key("registry.example.com") == "registry.example.com"


class TestMemoryStore:
    def test_get_set_delete(self):
        store = MemoryCredentialStore()
        assert store.get("registry.example.com") is None

        store.set("https://registry.example.com", "tok")
        assert store.get("registry.example.com") == "tok"

        store.delete("registry.example.com")
        assert store.get("registry.example.com") is None


class TestFileStore:
    def test_round_trip_with_private_permissions(self, tmp_path):
        path = tmp_path / "nested" / "credentials.json"
        store = FileCredentialStore(str(path), env={})

        store.set("https://registry.example.com", "tok")

        assert FileCredentialStore(str(path), env={}).get("registry.example.com") == "tok"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert json.loads(path.read_text()) == {"registry.example.com": "tok"}

    def test_delete(self, tmp_path):
        store = FileCredentialStore(str(tmp_path / "credentials.json"), env={})
        store.set("registry.example.com", "tok")

        store.delete("registry.example.com")

        assert store.get("registry.example.com") is None

    def test_environment_token_wins(self, tmp_path):
        store = FileCredentialStore(str(tmp_path / "credentials.json"), env={"PROTOPACK_TOKEN": "from-env"})
        store.set("registry.example.com", "from-file")

        assert store.get("registry.example.com") == "from-env"

    def test_missing_or_corrupt_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        store = FileCredentialStore(str(path), env={})
        assert store.get("registry.example.com") is None

        path.write_text("{not json")
        assert store.get("registry.example.com") is None

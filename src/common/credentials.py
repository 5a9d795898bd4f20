"""Credential stores keyed by registry host.

The registry client only ever calls ``get``; ``set``/``delete`` back the
login and logout commands. Secrets are never written to logs.
"""
from __future__ import annotations

import json
import logging
import os
import urllib.parse
from typing import Dict, Optional, Protocol

from constants import Constants

logger = logging.getLogger(__name__)


def host_key(url: str) -> str:
    """Normalize a registry URL (or bare host) to the key credentials are stored under."""
    parsed = urllib.parse.urlsplit(url if "://" in url else f"//{url}")
    host = (parsed.hostname or "").lower()
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return host


class CredentialStore(Protocol):
    """Get/set/delete interface for registry secrets."""

    def get(self, host: str) -> Optional[str]:
        ...

    def set(self, host: str, secret: str) -> None:
        ...

    def delete(self, host: str) -> None:
        ...


class MemoryCredentialStore:
    """In-process store, used by tests and for one-shot tokens."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = {host_key(k): v for k, v in (secrets or {}).items()}

    def get(self, host: str) -> Optional[str]:
        return self._secrets.get(host_key(host))

    def set(self, host: str, secret: str) -> None:
        self._secrets[host_key(host)] = secret

    def delete(self, host: str) -> None:
        self._secrets.pop(host_key(host), None)


class FileCredentialStore:
    """JSON file store with owner-only permissions.

    The PROTOPACK_TOKEN environment variable, when set, takes precedence for
    ``get`` so CI jobs can authenticate without a file.
    """

    def __init__(self, path: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.path = os.path.expanduser(path or Constants.DEFAULT_CREDENTIALS_PATH)
        self._env = os.environ if env is None else env

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable credentials file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, host: str) -> Optional[str]:
        env_token = self._env.get(Constants.TOKEN_ENV)
        if env_token and env_token.strip():
            return env_token.strip()
        secret = self._load().get(host_key(host))
        return secret or None

    def set(self, host: str, secret: str) -> None:
        data = self._load()
        data[host_key(host)] = secret
        self._save(data)

    def delete(self, host: str) -> None:
        data = self._load()
        if data.pop(host_key(host), None) is not None:
            self._save(data)

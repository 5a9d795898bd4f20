"""Async registry client: list versions, fetch archives and publish.

Every request carries a bearer token read from the credential store for the
registry host; the token is looked up per request and never kept on the
client. Transport failures, throttling and 5xx responses are retried in an
explicit bounded loop with exponential backoff. Publishing is not idempotent
at the registry, so before re-sending after an ambiguous failure the client
checks whether the version already landed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from archive import PackageArchive, unpack
from common.credentials import CredentialStore, host_key
from common.errors import (
    Conflict,
    NotFound,
    RegistryError,
    RegistryUnavailable,
    Unauthenticated,
    Unauthorized,
)
from common.logging_utils import Timer, extra_context, is_debug_enabled, redact, safe_url
from config import Config
from constants import Constants
from manifest import Manifest
from versioning import sort_versions

logger = logging.getLogger(__name__)

_Response = Tuple[int, Dict[str, str], bytes]


class RegistryClient:
    """Stateless transport to one registry."""

    def __init__(
        self,
        config: Config,
        credentials: CredentialStore,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            config: Registry url, timeouts, retry budget and path templates.
            credentials: Store consulted for the bearer token on every request.
            session: Optional pre-built session (tests inject a stub here).
            sleep: Backoff sleep, replaceable in tests.
        """
        self._config = config
        self._credentials = credentials
        self._host = host_key(config.registry_url or "")
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._limit: Optional[asyncio.Semaphore] = None

    @property
    def registry_url(self) -> Optional[str]:
        return self._config.registry_url

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
                headers={"User-Agent": Constants.USER_AGENT},
            )
            self._owns_session = True

    async def stop(self) -> None:
        """Stop the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "RegistryClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _url(self, template: str, **params: str) -> str:
        if not self._config.registry_url:
            raise RegistryError("No registry configured, pass --registry or set PROTOPACK_REGISTRY")
        quoted = {k: urllib.parse.quote(v, safe="") for k, v in params.items()}
        return f"{self._config.registry_url}/{template.format(**quoted).lstrip('/')}"

    def versions_url(self, repository: str, name: str) -> str:
        return self._url(self._config.versions_path, repository=repository, name=name)

    def archive_url(self, repository: str, name: str, version: str) -> str:
        return self._url(self._config.archive_path, repository=repository, name=name, version=version)

    def _auth_headers(self) -> Dict[str, str]:
        secret = self._credentials.get(self._host)
        if not secret:
            raise Unauthenticated(self._host)
        return {"Authorization": f"Bearer {secret}"}

    def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> float:
        delay = self._config.retry_base_delay * (2 ** attempt)
        if retry_after:
            try:
                delay = max(delay, float(retry_after))
            except ValueError:
                pass
        return min(delay, self._config.retry_max_delay)

    def _semaphore(self) -> asyncio.Semaphore:
        if self._limit is None:
            self._limit = asyncio.Semaphore(self._config.max_concurrency)
        return self._limit

    async def _once(
        self, method: str, url: str, headers: Dict[str, str], data: Optional[bytes]
    ) -> _Response:
        if self._session is None:
            await self.start()
        assert self._session is not None
        response = await self._session.request(method, url, headers=headers, data=data)
        try:
            body = await response.read()
            return response.status, dict(response.headers), body
        finally:
            response.release()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        context: str,
        data: Optional[bytes] = None,
        confirm: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Optional[_Response]:
        """Send a request, retrying transport failures, 429 and 5xx.

        ``confirm`` is consulted before re-sending after an ambiguous outcome
        (timeout, connection error or 5xx); when it returns True the request is
        considered done and None is returned.

        Raises:
            Unauthenticated: no credential stored (before any network call).
            RegistryUnavailable: the retry budget was exhausted.
        """
        target = safe_url(url)
        last_error = "no attempt made"
        delay = 0.0
        for attempt in range(self._config.retry_max):
            if attempt:
                await self._sleep(delay)
            headers = self._auth_headers()
            with Timer() as timer:
                try:
                    async with self._semaphore():
                        if is_debug_enabled(logger):
                            logger.debug(
                                "HTTP request",
                                extra=extra_context(
                                    event="http_request",
                                    component="registry_client",
                                    action=method,
                                    target=target,
                                    context=context,
                                    attempt=attempt + 1,
                                ),
                            )
                        status, resp_headers, body = await self._once(method, url, headers, data)
                except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                    last_error = redact(f"{type(exc).__name__}: {exc}") if str(exc) else type(exc).__name__
                    logger.debug(
                        "HTTP transport failure",
                        extra=extra_context(
                            event="http_exception",
                            component="registry_client",
                            action=method,
                            outcome="transport_error",
                            target=target,
                            attempt=attempt + 1,
                        ),
                    )
                    delay = self._backoff(attempt)
                    if confirm is not None and await confirm():
                        return None
                    continue

            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="registry_client",
                        action=method,
                        status_code=status,
                        duration_ms=timer.duration_ms(),
                        target=target,
                    ),
                )
            if status == 429:
                last_error = "HTTP 429 (throttled)"
                delay = self._backoff(attempt, resp_headers.get("Retry-After"))
                continue
            if status >= 500:
                last_error = f"HTTP {status}"
                delay = self._backoff(attempt)
                if confirm is not None and await confirm():
                    return None
                continue
            return status, resp_headers, body

        logger.warning(
            "%s %s failed after %d attempts: %s",
            method, target, self._config.retry_max, last_error,
        )
        raise RegistryUnavailable(
            f"{context}: registry unavailable after {self._config.retry_max} attempts ({last_error})"
        )

    @staticmethod
    def _raise_for_status(status: int, what: str) -> None:
        if status == 404:
            raise NotFound(f"{what} not found", status=status)
        if status in (401, 403):
            raise Unauthorized(f"Registry rejected the credential for {what} (HTTP {status})")
        if not 200 <= status < 300:
            raise RegistryError(f"Unexpected HTTP {status} for {what}", status=status)

    async def list_versions(self, repository: str, name: str) -> List[str]:
        """Return the published versions of a package, ascending by semver precedence."""
        what = f"{repository}/{name}"
        result = await self._send("GET", self.versions_url(repository, name), context=f"list {what}")
        assert result is not None
        status, _, body = result
        self._raise_for_status(status, what)
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RegistryError(f"Invalid version listing for {what}: {e}") from e
        if isinstance(payload, dict):
            payload = payload.get("versions")
        if not isinstance(payload, list):
            raise RegistryError(f"Invalid version listing for {what}: expected a list")
        versions = [str(v) for v in sort_versions(str(p) for p in payload)]
        skipped = len(set(map(str, payload))) - len(versions)
        if skipped:
            logger.debug("Skipped %d non-semver version(s) of %s", skipped, what)
        return versions

    async def fetch_archive(self, repository: str, name: str, version: str) -> PackageArchive:
        """Download and decode one archive, checking it matches the requested identity."""
        what = f"{repository}/{name}@{version}"
        result = await self._send(
            "GET", self.archive_url(repository, name, version), context=f"fetch {what}"
        )
        assert result is not None
        status, _, body = result
        self._raise_for_status(status, what)
        archive = unpack(body, expected_name=name, expected_version=version)
        logger.debug("Downloaded %s (%s)", what, archive.digest)
        return archive

    async def fetch_manifest(self, repository: str, name: str, version: str) -> Manifest:
        """Return the manifest embedded in a published archive."""
        archive = await self.fetch_archive(repository, name, version)
        return archive.manifest

    async def publish(self, archive: PackageArchive, repository: str) -> None:
        """Upload an archive.

        Raises:
            Conflict: the version is already published.
            Unauthorized: the registry rejected the credential.
            RegistryUnavailable: retries exhausted without a confirmed outcome.
        """
        what = f"{repository}/{archive.package_version}"

        async def _already_published() -> bool:
            try:
                versions = await self.list_versions(repository, archive.name)
            except NotFound:
                return False
            except RegistryUnavailable:
                return False
            if archive.version in versions:
                logger.info("Publish of %s was accepted by the registry before the failure", what)
                return True
            return False

        result = await self._send(
            "PUT",
            self.archive_url(repository, archive.name, archive.version),
            context=f"publish {what}",
            data=archive.data,
            confirm=_already_published,
        )
        if result is None:
            return
        status, _, _ = result
        if status == 409:
            raise Conflict(f"{what} is already published", status=status)
        self._raise_for_status(status, what)
        logger.info("+ published %s", what)

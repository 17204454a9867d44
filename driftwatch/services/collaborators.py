"""
External Collaborators
----------------------
Contracts for the configuration source, the resource provider and the
optional scorer, plus their HTTP clients.

The HTTP clients retry rate limiting and server errors with exponential
backoff and jitter; once retries are exhausted they raise the transient
error of their collaborator (``SourceUnavailable``, ``ProviderUnavailable``,
``ScorerError``). Malformed manifests raise ``DataIntegrityError``.
"""

import asyncio
import logging
from typing import (
    Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Type
)

import httpx
import yaml

from driftwatch.core.drift.types import ResourceIdentity
from driftwatch.core.errors import (
    DataIntegrityError, ProviderUnavailable, ScorerError, ScorerTimeout,
    SourceUnavailable, TransientError
)
from driftwatch.core.retry import backoff_delay

logger = logging.getLogger(__name__)

RawState = Dict[str, Any]


class ConfigSource(Protocol):
    """Version-controlled source of declared manifests."""

    async def resolve(self, path: str) -> Tuple[Optional[RawState], str]:
        """Return ``(manifest, revision)``; the manifest is None when not declared."""
        ...

    def changes(self) -> AsyncIterator[Tuple[ResourceIdentity, str]]:
        ...

    async def list_resources(self) -> List[ResourceIdentity]:
        ...

    async def propose_commit(self, path: str, manifest: RawState, message: str) -> str:
        """Open a change for review; returns the proposal reference."""
        ...


class ResourceProvider(Protocol):
    """Control-plane API of the managed environment."""

    async def get_state(self, identity: ResourceIdentity) -> Optional[RawState]:
        ...

    def watch(self) -> AsyncIterator[Tuple[ResourceIdentity, Optional[RawState]]]:
        """Change feed; a None state means the resource was deleted."""
        ...

    async def list_states(self, environment: str) -> List[Tuple[ResourceIdentity, RawState]]:
        ...

    async def apply_state(self, identity: ResourceIdentity, desired: RawState) -> Dict[str, Any]:
        ...


def parse_manifest(document: Any, path: str = "") -> Optional[RawState]:
    """
    Parse a manifest given as YAML/JSON text or an already-decoded mapping.

    Raises:
        DataIntegrityError: The document is not a single mapping
    """
    if document is None:
        return None
    if isinstance(document, (str, bytes)):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as e:
            raise DataIntegrityError(f"Malformed manifest {path}: {e}") from e
        if document is None:
            return None
    if not isinstance(document, dict):
        raise DataIntegrityError(
            f"Manifest {path} must be a mapping, got {type(document).__name__}"
        )
    return document


def _identity(data: Any) -> ResourceIdentity:
    if not isinstance(data, dict):
        raise DataIntegrityError(f"Resource identity must be an object, got {type(data).__name__}")
    try:
        return ResourceIdentity(**data)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"Malformed resource identity {data!r}: {e}") from e


class HttpCollaborator:
    """Shared httpx plumbing with retry on 429 and 5xx responses."""

    unavailable: Type[TransientError] = TransientError
    name = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"{self.name} request {method} {url} failed: {last_error}")
            else:
                if response.status_code != 429 and response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Rate limited or server error from {self.name} ({url}): {last_error}")
                if attempt < self.max_retries and "Retry-After" in response.headers:
                    try:
                        await asyncio.sleep(float(response.headers["Retry-After"]))
                        continue
                    except ValueError:
                        pass
            if attempt < self.max_retries:
                await asyncio.sleep(backoff_delay(attempt, self.base_delay, self.max_delay))
        raise self.unavailable(f"{self.name} unavailable after {self.max_retries} attempts: {last_error}")

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DataIntegrityError(f"Invalid JSON from {self.name}: {e}") from e

    def _object(self, response: httpx.Response) -> Dict[str, Any]:
        body = self._json(response)
        if not isinstance(body, dict):
            raise DataIntegrityError(
                f"{self.name} response from {response.request.url} must be an object, "
                f"got {type(body).__name__}"
            )
        return body

    def _field(self, item: Any, name: str) -> Any:
        if not isinstance(item, dict) or name not in item:
            raise DataIntegrityError(f"{self.name} sent an entry without '{name}': {item!r:.200}")
        return item[name]

    def _check(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise DataIntegrityError(
                f"{self.name} rejected request {response.request.url}: "
                f"HTTP {response.status_code} {response.text[:200]}"
            )


class HttpConfigSource(HttpCollaborator):
    """Configuration source reader over HTTP."""

    unavailable = SourceUnavailable
    name = "config source"

    def __init__(self, *args, poll_interval: float = 5.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval

    async def resolve(self, path: str) -> Tuple[Optional[RawState], str]:
        response = await self._request("GET", "/manifests", params={"path": path})
        if response.status_code == 404:
            return None, response.headers.get("X-Revision", "")
        self._check(response)
        body = self._object(response)
        return parse_manifest(body.get("manifest"), path), str(body.get("revision", ""))

    async def changes(self) -> AsyncIterator[Tuple[ResourceIdentity, str]]:
        cursor = ""
        while True:
            response = await self._request("GET", "/changes", params={"cursor": cursor})
            self._check(response)
            body = self._object(response)
            for change in body.get("changes") or []:
                yield _identity(self._field(change, "identity")), str(self._field(change, "revision"))
            cursor = body.get("cursor", cursor)
            if not body.get("changes"):
                await asyncio.sleep(self.poll_interval)

    async def list_resources(self) -> List[ResourceIdentity]:
        response = await self._request("GET", "/resources")
        self._check(response)
        return [_identity(item) for item in self._object(response).get("resources") or []]

    async def propose_commit(self, path: str, manifest: RawState, message: str) -> str:
        response = await self._request(
            "POST", "/proposals", json={"path": path, "manifest": manifest, "message": message}
        )
        self._check(response)
        return str(self._object(response).get("id", ""))


class HttpResourceProvider(HttpCollaborator):
    """Resource provider (control-plane API) over HTTP."""

    unavailable = ProviderUnavailable
    name = "resource provider"

    def __init__(self, *args, poll_interval: float = 2.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval

    @staticmethod
    def _path(identity: ResourceIdentity) -> str:
        namespace = identity.namespace or "_"
        return f"/resources/{identity.environment}/{namespace}/{identity.kind}/{identity.name}"

    async def get_state(self, identity: ResourceIdentity) -> Optional[RawState]:
        response = await self._request("GET", self._path(identity))
        if response.status_code == 404:
            return None
        self._check(response)
        return parse_manifest(self._json(response), identity.key)

    async def watch(self) -> AsyncIterator[Tuple[ResourceIdentity, Optional[RawState]]]:
        cursor = ""
        while True:
            response = await self._request("GET", "/watch", params={"cursor": cursor})
            self._check(response)
            body = self._object(response)
            for event in body.get("events") or []:
                identity = _identity(self._field(event, "identity"))
                yield identity, parse_manifest(event.get("state"), identity.key)
            cursor = body.get("cursor", cursor)
            if not body.get("events"):
                await asyncio.sleep(self.poll_interval)

    async def list_states(self, environment: str) -> List[Tuple[ResourceIdentity, RawState]]:
        response = await self._request("GET", f"/environments/{environment}/resources")
        self._check(response)
        items = []
        for item in self._object(response).get("items") or []:
            identity = _identity(self._field(item, "identity"))
            items.append((identity, parse_manifest(item.get("state"), identity.key)))
        return items

    async def apply_state(self, identity: ResourceIdentity, desired: RawState) -> Dict[str, Any]:
        response = await self._request("PUT", self._path(identity), json=desired)
        self._check(response)
        return self._json(response) if response.content else {"status": "applied"}


class HttpScorer(HttpCollaborator):
    """Optional model-based scorer: diff summary in, severity and confidence out."""

    unavailable = ScorerError
    name = "scorer"

    async def score(self, request: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post("/score", json=request)
        except httpx.TimeoutException as e:
            raise ScorerTimeout(f"Scorer timed out: {e}") from e
        except httpx.TransportError as e:
            raise ScorerError(f"Scorer unreachable: {e}") from e
        if response.status_code >= 400:
            raise ScorerError(f"Scorer rejected request: HTTP {response.status_code}")
        body = self._json(response)
        if not isinstance(body, dict):
            raise ScorerError("Scorer response must be an object")
        return body

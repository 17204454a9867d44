"""
Test Doubles
------------
In-memory fakes for the configuration source, the resource provider and
the scorer, plus sample manifests.
"""

import asyncio
from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple

from driftwatch.core.drift.types import ResourceIdentity
from driftwatch.core.errors import ProviderUnavailable, SourceUnavailable
from driftwatch.services.resolver import DesiredStateResolver
from driftwatch.services.watcher import LiveStateWatcher

FAST_RETRY = {"max_retries": 2, "base_delay": 0.001, "max_delay": 0.01}

WEB = ResourceIdentity(environment="production", namespace="default", kind="Deployment", name="web")


def deployment(name: str = "web", replicas: int = 3, image: str = "nginx:1.25", **extra) -> Dict[str, Any]:
    """A minimal declared Deployment manifest"""
    manifest = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": "default", "labels": {"app": name}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }
    manifest.update(extra)
    return manifest


def live_deployment(name: str = "web", replicas: int = 3, image: str = "nginx:1.25") -> Dict[str, Any]:
    """The same Deployment as the provider reports it, with injected fields"""
    state = deployment(name, replicas, image)
    state["metadata"].update({
        "uid": "5f0c3f0e-8a54-4f8e-9d8e-2b0d5f9f8c11",
        "resourceVersion": "48213",
        "generation": 7,
        "creationTimestamp": "2025-01-01T00:00:00Z",
    })
    state["spec"]["template"]["spec"]["containers"][0].update({
        "imagePullPolicy": "IfNotPresent",
        "terminationMessagePath": "/dev/termination-log",
    })
    state["status"] = {"replicas": replicas, "readyReplicas": replicas}
    return state


class FakeConfigSource:
    """Configuration source backed by a dict of path -> (manifest, revision)"""

    def __init__(self):
        self.manifests: Dict[str, Tuple[Dict[str, Any], str]] = {}
        self.identities: Dict[str, ResourceIdentity] = {}
        self.scripted: Dict[str, List[Tuple[float, Optional[Dict[str, Any]], str]]] = {}
        self.proposals: List[Dict[str, Any]] = []
        self.unavailable = False
        self.resolve_calls = 0
        self._changes: "asyncio.Queue[Tuple[ResourceIdentity, str]]" = asyncio.Queue()

    def declare(self, identity: ResourceIdentity, manifest: Dict[str, Any], revision: str = "r1") -> None:
        self.identities[identity.path] = identity
        self.manifests[identity.path] = (deepcopy(manifest), revision)

    def remove(self, identity: ResourceIdentity) -> None:
        self.manifests.pop(identity.path, None)

    def notify(self, identity: ResourceIdentity, revision: str) -> None:
        self._changes.put_nowait((identity, revision))

    async def resolve(self, path: str):
        self.resolve_calls += 1
        if self.unavailable:
            raise SourceUnavailable("config source down")
        if self.scripted.get(path):
            delay, manifest, revision = self.scripted[path].pop(0)
            await asyncio.sleep(delay)
            return deepcopy(manifest), revision
        if path not in self.manifests:
            return None, ""
        manifest, revision = self.manifests[path]
        return deepcopy(manifest), revision

    async def changes(self):
        while True:
            yield await self._changes.get()

    async def list_resources(self) -> List[ResourceIdentity]:
        if self.unavailable:
            raise SourceUnavailable("config source down")
        return [self.identities[path] for path in self.manifests]

    async def propose_commit(self, path: str, manifest: Dict[str, Any], message: str) -> str:
        self.proposals.append({"path": path, "manifest": manifest, "message": message})
        return f"proposal-{len(self.proposals)}"


class FakeResourceProvider:
    """Resource provider backed by a dict of key -> (identity, state)"""

    def __init__(self):
        self.states: Dict[str, Tuple[ResourceIdentity, Dict[str, Any]]] = {}
        self.applied: List[Tuple[str, Dict[str, Any]]] = []
        self.unavailable = False
        # When False, apply_state is accepted but live state does not change
        self.converge = True
        self.apply_gate: Optional[asyncio.Event] = None
        self._feed: "asyncio.Queue[Tuple[ResourceIdentity, Optional[Dict[str, Any]]]]" = asyncio.Queue()

    def put(self, identity: ResourceIdentity, state: Dict[str, Any]) -> None:
        self.states[identity.key] = (identity, deepcopy(state))

    def delete(self, identity: ResourceIdentity) -> None:
        self.states.pop(identity.key, None)

    def emit(self, identity: ResourceIdentity, state: Optional[Dict[str, Any]]) -> None:
        """Change a resource and announce it on the change feed"""
        if state is None:
            self.delete(identity)
        else:
            self.put(identity, state)
        self._feed.put_nowait((identity, deepcopy(state)))

    async def get_state(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        entry = self.states.get(identity.key)
        return deepcopy(entry[1]) if entry else None

    async def watch(self):
        while True:
            yield await self._feed.get()

    async def list_states(self, environment: str):
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        return [
            (identity, deepcopy(state))
            for identity, state in self.states.values()
            if identity.environment == environment
        ]

    async def apply_state(self, identity: ResourceIdentity, desired: Dict[str, Any]) -> Dict[str, Any]:
        if self.apply_gate is not None:
            await self.apply_gate.wait()
        if self.unavailable:
            raise ProviderUnavailable("provider down")
        self.applied.append((identity.key, deepcopy(desired)))
        if self.converge:
            self.put(identity, desired)
        return {"status": "applied"}


class FakeScorer:
    """Scorer returning a fixed response after an optional delay"""

    def __init__(self, response: Optional[Dict[str, Any]] = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.response = response or {"severity": "high", "confidence": 0.9}
        self.delay = delay
        self.error = error
        self.requests: List[Dict[str, Any]] = []

    async def score(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


async def sync_sources(resolver: DesiredStateResolver, watcher: LiveStateWatcher) -> None:
    """Run the initial desired-state sync and a live resync"""
    await resolver.initial_sync()
    await watcher.resync()

"""
State Normalizer
----------------
Canonicalizes raw resource representations (desired manifests and live
objects) into a flat, comparable ``NormalizedState``.

Per-kind rules strip provider-injected fields, fill declared defaults so
that omission and explicit-default compare equal, and order unordered
collections by a stable key. Normalization is pure and deterministic.
"""

import json
import logging
import re
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from driftwatch.core.drift.types import NormalizedState
from driftwatch.core.errors import DataIntegrityError, UnsupportedKind

logger = logging.getLogger(__name__)

# Candidate fields used to key lists of objects, in preference order
LIST_KEY_CANDIDATES = ("name", "id", "key", "containerPort", "port")

COMMON_IGNORED_PATHS = [
    "status",
    "metadata.uid",
    "metadata.namespace",
    "metadata.resourceVersion",
    "metadata.generation",
    "metadata.creationTimestamp",
    "metadata.deletionTimestamp",
    "metadata.deletionGracePeriodSeconds",
    "metadata.managedFields",
    "metadata.selfLink",
    "metadata.ownerReferences",
    "metadata.finalizers",
    "metadata.annotations.kubectl.kubernetes.io/last-applied-configuration",
]


@lru_cache(maxsize=1024)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    # Only '*' is special; brackets in paths are literal
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def path_matches(path: str, pattern: str) -> bool:
    """Match a leaf path against a glob where only ``*`` is a wildcard."""
    return _glob_regex(pattern).match(path) is not None


def _ancestors(path: str) -> List[str]:
    """The path itself plus every prefix ending before a '.' or '[' boundary."""
    prefixes = [path[:i] for i, ch in enumerate(path) if ch in ".[" and i > 0]
    prefixes.append(path)
    return prefixes


def matches_any(path: str, patterns: Iterable[str], include_ancestors: bool = False) -> bool:
    candidates = _ancestors(path) if include_ancestors else [path]
    return any(path_matches(c, p) for p in patterns for c in candidates)


class KindRule(BaseModel):
    """Normalization rule for a single resource kind."""

    kind: str
    ignored_paths: List[str] = Field(default_factory=list)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    unordered_paths: List[str] = Field(default_factory=list)
    list_keys: Dict[str, str] = Field(default_factory=dict)

    @property
    def all_ignored_paths(self) -> List[str]:
        return COMMON_IGNORED_PATHS + self.ignored_paths


def _pod_defaults(prefix: str) -> Dict[str, Any]:
    defaults = {
        f"{prefix}.restartPolicy": "Always",
        f"{prefix}.dnsPolicy": "ClusterFirst",
        f"{prefix}.schedulerName": "default-scheduler",
        f"{prefix}.terminationGracePeriodSeconds": 30,
    }
    for containers in ("containers", "initContainers"):
        defaults.update({
            f"{prefix}.{containers}[*].imagePullPolicy": "IfNotPresent",
            f"{prefix}.{containers}[*].terminationMessagePath": "/dev/termination-log",
            f"{prefix}.{containers}[*].terminationMessagePolicy": "File",
            f"{prefix}.{containers}[*].ports[*].protocol": "TCP",
        })
    return defaults


def _workload_rule(kind: str, defaults: Dict[str, Any], pod_prefix: str) -> KindRule:
    merged = dict(defaults)
    merged.update(_pod_defaults(pod_prefix))
    return KindRule(
        kind=kind,
        ignored_paths=[
            "metadata.annotations.deployment.kubernetes.io/revision",
            f"{pod_prefix.rsplit('.spec', 1)[0]}.metadata.annotations.kubectl.kubernetes.io/restartedAt",
            f"{pod_prefix.rsplit('.spec', 1)[0]}.metadata.creationTimestamp",
        ],
        defaults=merged,
    )


DEFAULT_RULES: List[KindRule] = [
    _workload_rule(
        "Deployment",
        {
            "spec.replicas": 1,
            "spec.revisionHistoryLimit": 10,
            "spec.progressDeadlineSeconds": 600,
            "spec.strategy.type": "RollingUpdate",
        },
        "spec.template.spec",
    ),
    _workload_rule(
        "StatefulSet",
        {
            "spec.replicas": 1,
            "spec.revisionHistoryLimit": 10,
            "spec.podManagementPolicy": "OrderedReady",
            "spec.updateStrategy.type": "RollingUpdate",
        },
        "spec.template.spec",
    ),
    _workload_rule(
        "DaemonSet",
        {
            "spec.revisionHistoryLimit": 10,
            "spec.updateStrategy.type": "RollingUpdate",
        },
        "spec.template.spec",
    ),
    _workload_rule(
        "CronJob",
        {
            "spec.concurrencyPolicy": "Allow",
            "spec.suspend": False,
            "spec.successfulJobsHistoryLimit": 3,
            "spec.failedJobsHistoryLimit": 1,
        },
        "spec.jobTemplate.spec.template.spec",
    ),
    KindRule(
        kind="Service",
        ignored_paths=[
            "spec.clusterIP",
            "spec.clusterIPs",
            "spec.ipFamilies",
            "spec.ipFamilyPolicy",
            "spec.internalTrafficPolicy",
        ],
        defaults={
            "spec.type": "ClusterIP",
            "spec.sessionAffinity": "None",
            "spec.ports[*].protocol": "TCP",
        },
    ),
    KindRule(kind="ConfigMap"),
    KindRule(kind="Secret", defaults={"type": "Opaque"}),
    KindRule(
        kind="Namespace",
        ignored_paths=["spec.finalizers", "metadata.labels.kubernetes.io/metadata.name"],
    ),
    KindRule(kind="ServiceAccount", ignored_paths=["secrets"]),
    KindRule(
        kind="Role",
        unordered_paths=["rules[*].verbs", "rules[*].resources", "rules[*].apiGroups"],
    ),
    KindRule(
        kind="ClusterRole",
        ignored_paths=["aggregationRule"],
        unordered_paths=["rules[*].verbs", "rules[*].resources", "rules[*].apiGroups"],
    ),
    KindRule(kind="RoleBinding"),
    KindRule(kind="ClusterRoleBinding"),
    KindRule(kind="Ingress"),
    KindRule(kind="NetworkPolicy"),
    KindRule(kind="HorizontalPodAutoscaler"),
    KindRule(
        kind="PersistentVolumeClaim",
        ignored_paths=["spec.volumeName", "metadata.annotations.pv.kubernetes.io/*"],
        defaults={"spec.volumeMode": "Filesystem"},
    ),
]


class NormalizationRegistry:
    """Lookup table of per-kind normalization rules."""

    def __init__(self, rules: Optional[Iterable[KindRule]] = None):
        self._rules: Dict[str, KindRule] = {}
        for rule in rules if rules is not None else DEFAULT_RULES:
            self.register(rule)

    def register(self, rule: KindRule) -> None:
        self._rules[rule.kind] = rule

    def get(self, kind: str) -> KindRule:
        try:
            return self._rules[kind]
        except KeyError:
            raise UnsupportedKind(kind) from None

    def supports(self, kind: str) -> bool:
        return kind in self._rules

    @property
    def kinds(self) -> List[str]:
        return sorted(self._rules)

    def load_file(self, path: str) -> int:
        """
        Register additional rules from a JSON file holding a list of rules.

        Args:
            path: Filesystem path of the JSON rules file

        Returns:
            Number of rules registered
        """
        with open(path, "r", encoding="utf-8") as handle:
            entries = json.load(handle)
        for entry in entries:
            self.register(KindRule.model_validate(entry))
        logger.info(f"Loaded {len(entries)} normalization rules from {path}")
        return len(entries)


default_registry = NormalizationRegistry()


def _canonical_scalar(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _list_key(path: str, items: List[Dict[str, Any]], rule: KindRule) -> Optional[str]:
    for pattern, field in rule.list_keys.items():
        if path_matches(path, pattern):
            return field
    for field in LIST_KEY_CANDIDATES:
        values = [item.get(field) for item in items]
        if all(isinstance(v, (str, int)) and not isinstance(v, bool) for v in values) \
                and len({str(v) for v in values}) == len(values):
            return field
    return None


def _flatten(value: Any, path: str, rule: KindRule, out: Dict[str, Any]) -> None:
    if isinstance(value, dict):
        for key in sorted(value, key=str):
            _flatten(value[key], f"{path}.{key}" if path else str(key), rule, out)
        return

    if isinstance(value, (list, tuple)):
        items = list(value)
        if not items:
            # Empty collections compare equal to omitted ones
            return
        if all(isinstance(item, dict) for item in items):
            key_field = _list_key(path, items, rule)
            if key_field:
                for item in sorted(items, key=lambda i: str(i[key_field])):
                    _flatten(item, f"{path}[{item[key_field]}]", rule, out)
            else:
                for index, item in enumerate(items):
                    _flatten(item, f"{path}[{index}]", rule, out)
            return
        if any(isinstance(item, (dict, list, tuple)) for item in items):
            for index, item in enumerate(items):
                _flatten(item, f"{path}[{index}]", rule, out)
            return
        scalars = [_canonical_scalar(item) for item in items]
        if matches_any(path, rule.unordered_paths):
            scalars = sorted(scalars, key=lambda v: json.dumps(v, sort_keys=True, default=str))
        out[path] = scalars
        return

    out[path] = _canonical_scalar(value)


def _expand_default_path(pattern: str, leaves: Dict[str, Any]) -> List[str]:
    """Resolve ``[*]`` wildcards in a default path against existing list elements."""
    if "[*]" not in pattern:
        return [pattern]
    head, tail = pattern.split("[*]", 1)
    elements = set()
    for leaf in leaves:
        if leaf.startswith(head + "["):
            close = leaf.find("]", len(head))
            if close != -1:
                elements.add(leaf[:close + 1])
    expanded: List[str] = []
    for element in sorted(elements):
        expanded.extend(_expand_default_path(element + tail, leaves))
    return expanded


def _has_subtree(path: str, leaves: Dict[str, Any]) -> bool:
    if path in leaves:
        return True
    return any(leaf.startswith(path + ".") or leaf.startswith(path + "[") for leaf in leaves)


def normalize(
    raw_state: Dict[str, Any],
    resource_kind: str,
    registry: Optional[NormalizationRegistry] = None,
    revision: Optional[str] = None,
) -> NormalizedState:
    """
    Canonicalize a raw resource representation.

    Args:
        raw_state: Manifest or live object as a nested mapping
        resource_kind: Kind used to select the normalization rule
        registry: Rule registry (defaults to the built-in rules)
        revision: Optional configuration revision carried along

    Returns:
        NormalizedState with masked paths split into ``ignored``

    Raises:
        UnsupportedKind: No rule exists for the kind ("cannot compare")
        DataIntegrityError: The raw state is not a mapping
    """
    rule = (registry or default_registry).get(resource_kind)

    if not isinstance(raw_state, dict):
        raise DataIntegrityError(
            f"Expected a mapping for {resource_kind}, got {type(raw_state).__name__}"
        )

    flat: Dict[str, Any] = {}
    _flatten(raw_state, "", rule, flat)

    for pattern, default in rule.defaults.items():
        for path in _expand_default_path(pattern, flat):
            if not _has_subtree(path, flat):
                flat[path] = _canonical_scalar(default)

    ignored_patterns = rule.all_ignored_paths
    leaves: Dict[str, Any] = {}
    ignored: Dict[str, Any] = {}
    for path in sorted(flat):
        if matches_any(path, ignored_patterns, include_ancestors=True):
            ignored[path] = flat[path]
        else:
            leaves[path] = flat[path]

    return NormalizedState(kind=resource_kind, leaves=leaves, ignored=ignored, revision=revision)

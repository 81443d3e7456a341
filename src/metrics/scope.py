"""
Analysis scope and its translation into PromQL label matchers.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from src.core.errors import InvalidScope

# RFC 1123 label (namespace, deployment) and subdomain (pod) names
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class ScopeLevel(Enum):
    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    DEPLOYMENT = "deployment"
    POD = "pod"
    LABEL_SELECTOR = "label_selector"


def escape_label_value(value: str) -> str:
    """Escape a value for use inside a double-quoted PromQL string"""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


@dataclass(frozen=True)
class Scope:
    """Where an analysis request looks: the whole cluster, a namespace, a
    deployment, a pod, or an arbitrary label selector."""

    level: ScopeLevel = ScopeLevel.CLUSTER
    namespace: str | None = None
    deployment: str | None = None
    pod: str | None = None
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidScope if the scope is malformed"""
        level = self.level
        if level is ScopeLevel.CLUSTER:
            return
        if level is ScopeLevel.LABEL_SELECTOR:
            if not self.labels:
                raise InvalidScope("Label selector scope needs at least one label")
            for name in self.labels:
                if not _LABEL_NAME.match(name):
                    raise InvalidScope(f"Invalid label name: {name!r}", label=name)
            if self.namespace is not None:
                self._check_name("namespace", self.namespace, _DNS_LABEL)
            return

        if not self.namespace:
            raise InvalidScope(f"{level.value} scope needs a namespace", level=level.value)
        self._check_name("namespace", self.namespace, _DNS_LABEL)

        if level is ScopeLevel.DEPLOYMENT:
            if not self.deployment:
                raise InvalidScope("Deployment scope needs a deployment name")
            self._check_name("deployment", self.deployment, _DNS_LABEL)
        elif level is ScopeLevel.POD:
            if not self.pod:
                raise InvalidScope("Pod scope needs a pod name")
            self._check_name("pod", self.pod, _DNS_SUBDOMAIN)

    @staticmethod
    def _check_name(kind: str, value: str, pattern: re.Pattern) -> None:
        if len(value) > 253 or not pattern.match(value):
            raise InvalidScope(f"Invalid {kind} name: {value!r}", **{kind: value})

    def matchers(self) -> list[str]:
        """PromQL label matchers for this scope, in a stable order"""
        result = []
        if self.namespace:
            result.append(f'namespace="{escape_label_value(self.namespace)}"')
        if self.level is ScopeLevel.DEPLOYMENT:
            # ReplicaSet pods are named <deployment>-<hash>-<suffix>
            result.append(f'pod=~"{escape_label_value(self.deployment)}-[a-z0-9]+-[a-z0-9]+"')
        elif self.level is ScopeLevel.POD:
            result.append(f'pod="{escape_label_value(self.pod)}"')
        elif self.level is ScopeLevel.LABEL_SELECTOR:
            for name in sorted(self.labels):
                result.append(f'{name}="{escape_label_value(self.labels[name])}"')
        return result

    def selector(self, *extra: str) -> str:
        """Comma-joined matchers, to be placed inside `{...}` of a selector"""
        return ",".join(self.matchers() + list(extra))

    def describe(self) -> str:
        if self.level is ScopeLevel.CLUSTER:
            return "cluster"
        if self.level is ScopeLevel.NAMESPACE:
            return f"namespace/{self.namespace}"
        if self.level is ScopeLevel.DEPLOYMENT:
            return f"deployment/{self.namespace}/{self.deployment}"
        if self.level is ScopeLevel.POD:
            return f"pod/{self.namespace}/{self.pod}"
        return "labels/" + ",".join(f"{k}={v}" for k, v in sorted(self.labels.items()))

    @classmethod
    def from_dict(cls, data: dict) -> "Scope":
        """Create from a request payload, e.g. {"level": "pod", "namespace": ..., "pod": ...}"""
        try:
            level = ScopeLevel(data.get("level", "cluster"))
        except ValueError as e:
            raise InvalidScope(f"Unknown scope level: {data.get('level')!r}") from e
        labels = data.get("labels") or {}
        if not isinstance(labels, dict):
            raise InvalidScope("Scope labels must be a mapping")
        return cls(
            level=level,
            namespace=data.get("namespace"),
            deployment=data.get("deployment"),
            pod=data.get("pod"),
            labels={str(k): str(v) for k, v in labels.items()},
        )

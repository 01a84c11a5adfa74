"""Unstructured Kubernetes resources: keys, install ordering, grouping and merge patches.

Resources are plain dictionaries in Kubernetes JSON form.
"""

from __future__ import annotations

import copy
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

Resource = Dict[str, Any]

# Order in which manifests should be installed, by kind.
INSTALL_ORDER: tuple = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ServiceAccount",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "Ingress",
    "APIService",
)

CUSTOM_INSTALL_ORDER: tuple = INSTALL_ORDER[:1] + ("MutatingWebhookConfiguration",) + INSTALL_ORDER[1:]

_INSTALL_RANK: Dict[str, int] = {kind: rank + 1 for rank, kind in enumerate(CUSTOM_INSTALL_ORDER)}


class ConversionError(Exception):
    """A resource could not be converted or decoded."""


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


@dataclass(frozen=True)
class ResourceKey:
    gvk: GroupVersionKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.gvk}.{self.namespace}.{self.name}"


@dataclass
class VersionedResources:
    gvk: GroupVersionKind
    resources: List[Resource] = field(default_factory=list)


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _string_field(mapping: Mapping[str, Any], name: str) -> str:
    value = mapping.get(name)
    return value if isinstance(value, str) else ""


def namespace_of(obj: Mapping[str, Any]) -> str:
    return _string_field(_metadata(obj), "namespace")


def name_of(obj: Mapping[str, Any]) -> str:
    return _string_field(_metadata(obj), "name")


def labels_of(obj: Mapping[str, Any]) -> Dict[str, str]:
    labels = _metadata(obj).get("labels")
    return dict(labels) if isinstance(labels, dict) else {}


def gvk_of(obj: Mapping[str, Any]) -> GroupVersionKind:
    """The group, version and kind of a resource; empty if apiVersion is malformed."""
    api_version = _string_field(obj, "apiVersion")
    kind = _string_field(obj, "kind")
    if api_version in ("", "/"):
        return GroupVersionKind("", "", kind)
    parts = api_version.split("/")
    if len(parts) == 1:
        return GroupVersionKind("", parts[0], kind)
    if len(parts) == 2:
        return GroupVersionKind(parts[0], parts[1], kind)
    return GroupVersionKind()


def key(obj: Mapping[str, Any]) -> ResourceKey:
    return ResourceKey(gvk_of(obj), namespace_of(obj), name_of(obj))


def filter_resources(
    resources: Iterable[Resource], predicate: Callable[[Resource], bool]
) -> List[Resource]:
    """Drop every resource for which the predicate returns True."""
    return [res for res in resources if not predicate(res)]


def with_labels(resources: Iterable[Resource], labels: Optional[Mapping[str, str]]) -> List[Resource]:
    """Keep the resources carrying every given label with the given value."""
    wanted = dict(labels or {})

    def mismatched(res: Resource) -> bool:
        have = labels_of(res)
        return any(k not in have or have[k] != v for k, v in wanted.items())

    return filter_resources(resources, mismatched)


def _cmp_from_less(less: Callable[[Any, Any], bool], a: Any, b: Any) -> int:
    a_first = less(a, b)
    b_first = less(b, a)
    if a_first and not b_first:
        return -1
    if b_first and not a_first:
        return 1
    return 0


def _name_less(a: Resource, b: Resource) -> bool:
    return namespace_of(a) + name_of(a) < namespace_of(b) + name_of(b)


def _resource_less(a: Resource, b: Resource) -> bool:
    kind1, kind2 = gvk_of(a).kind, gvk_of(b).kind
    order1, order2 = _INSTALL_RANK.get(kind1), _INSTALL_RANK.get(kind2)
    if order1 is None and order2 is None:
        if kind1 != kind2:
            return kind1 < kind2
        return _name_less(a, b)
    if order1 is None:
        return False
    if order2 is None:
        return True
    if order1 != order2:
        return order1 < order2
    if kind1 != kind2:
        return kind1 < kind2
    return _name_less(a, b)


def sort_resources(resources: Iterable[Resource]) -> List[Resource]:
    """A new list in install order; unknown kinds last, alphabetically."""
    return sorted(resources, key=functools.cmp_to_key(functools.partial(_cmp_from_less, _resource_less)))


def install_order_less(kind1: str, kind2: str) -> bool:
    order1, order2 = _INSTALL_RANK.get(kind1), _INSTALL_RANK.get(kind2)
    if order1 is None and order2 is None:
        return True
    if order1 is None:
        return False
    if order2 is None:
        return True
    return order1 < order2


def by_key(resources: Iterable[Resource]) -> Dict[ResourceKey, Resource]:
    return {key(res): res for res in resources}


def list_by_key(mapping: Mapping[ResourceKey, Resource]) -> List[Resource]:
    return sort_resources(mapping.values())


def group_by_gvk(resources: Iterable[Resource]) -> List[VersionedResources]:
    """Group resources by kind, groups in install order, members in input order."""
    groups: Dict[GroupVersionKind, List[Resource]] = {}
    for res in resources:
        groups.setdefault(gvk_of(res), []).append(res)
    versioned = [VersionedResources(gvk, members) for gvk, members in groups.items()]
    return sorted(
        versioned,
        key=functools.cmp_to_key(
            lambda a, b: _cmp_from_less(install_order_less, a.gvk.kind, b.gvk.kind)
        ),
    )


# Typed API packages and the kinds each one provides.
_STRUCTURED_GROUPS = (
    ("core/v1", ("Namespace", "ServiceAccount", "ConfigMap", "Service", "Secret", "Pod")),
    ("rbac/v1", ("ClusterRole", "ClusterRoleBinding", "Role", "RoleBinding")),
    ("batch/v1", ("Job", "CronJob")),
    ("apiextensions/v1beta1", ("CustomResourceDefinition",)),
    ("admissionregistration/v1beta1", ("MutatingWebhookConfiguration",)),
    ("autoscaling/v1", ("HorizontalPodAutoscaler",)),
    ("admissionregistration/v1", ("ValidatingWebhookConfiguration",)),
)

_STRUCTURED_TYPES: Dict[str, str] = {
    kind: f"{package}.{kind}" for package, kinds in _STRUCTURED_GROUPS for kind in kinds
}

_WORKLOAD_VERSIONS = ("extensions/v1beta1", "apps/v1", "apps/v1beta2")


def structured_type(obj: Mapping[str, Any]) -> Optional[str]:
    """The typed API object a resource converts to, or None for List objects.

    Raises ConversionError for kinds and workload versions that are not handled.
    """
    kind = obj.get("kind", "")
    api_version = obj.get("apiVersion", "")
    if not isinstance(kind, str) or not isinstance(api_version, str):
        raise ConversionError("parsing raw object type meta")
    if kind == "List":
        return None
    if kind == "Deployment":
        if api_version not in _WORKLOAD_VERSIONS:
            raise ConversionError(f"unknown api version for deployment: {api_version}")
        return f"{api_version}.Deployment"
    if kind == "DaemonSet":
        if api_version not in _WORKLOAD_VERSIONS:
            raise ConversionError(f"unknown api version for daemon set: {api_version}")
        return f"{api_version}.DaemonSet"
    try:
        return _STRUCTURED_TYPES[kind]
    except KeyError:
        raise ConversionError(f"cannot convert kind {kind}") from None


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    raise TypeError(f"not a JSON value: {value!r}")


def _json_equal(a: Any, b: Any) -> bool:
    kind = _json_type(a)
    if kind != _json_type(b):
        return False
    if kind == "object":
        return a.keys() == b.keys() and all(_json_equal(a[k], b[k]) for k in a)
    if kind == "array":
        return len(a) == len(b) and all(_json_equal(x, y) for x, y in zip(a, b))
    return a == b


def _diff(original: Mapping[str, Any], modified: Mapping[str, Any]) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    for k, new in modified.items():
        if k not in original:
            patch[k] = copy.deepcopy(new)
            continue
        old = original[k]
        if _json_type(old) != _json_type(new):
            patch[k] = copy.deepcopy(new)
        elif isinstance(old, dict):
            sub = _diff(old, new)
            if sub:
                patch[k] = sub
        elif not _json_equal(old, new):
            patch[k] = copy.deepcopy(new)
    for k in original:
        if k not in modified:
            patch[k] = None
    return patch


def create_merge_patch(original: Mapping[str, Any], modified: Mapping[str, Any]) -> Dict[str, Any]:
    """The JSON merge patch (RFC 7386) that turns original into modified."""
    if not isinstance(original, dict) or not isinstance(modified, dict):
        raise ValueError("merge patches can only be created between JSON objects")
    return _diff(original, modified)


def merge_patch(document: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386); the inputs are left unchanged."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(document) if isinstance(document, dict) else {}
    for k, value in patch.items():
        if value is None:
            result.pop(k, None)
        else:
            result[k] = merge_patch(result.get(k), value)
    return result


_GENERATED_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "selfLink",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "finalizers",
    "ownerReferences",
    "clusterName",
)


def _zero_generated_values(obj: Resource) -> None:
    meta = obj.get("metadata")
    if isinstance(meta, dict):
        for name in _GENERATED_METADATA:
            meta.pop(name, None)
    obj.pop("status", None)


def get_patch(obj1: Resource, obj2: Resource) -> Dict[str, Any]:
    """Strip server-generated fields from both objects, then diff them."""
    _zero_generated_values(obj1)
    _zero_generated_values(obj2)
    return create_merge_patch(obj1, obj2)


def apply_patch(obj: Resource, patch: Mapping[str, Any]) -> None:
    """Apply a merge patch to a resource in place."""
    merged = merge_patch(obj, patch)
    kind = merged.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ConversionError("Object 'Kind' is missing in patched object")
    if isinstance(merged.get("items"), list):
        raise ConversionError("patched object expected to be a single resource, got a list")
    obj.clear()
    obj.update(merged)


def match(obj1: Resource, obj2: Resource) -> bool:
    """True if the objects are equal once server-generated fields are removed."""
    try:
        patch = get_patch(obj1, obj2)
    except (ValueError, TypeError):
        return False
    if not patch:
        return True
    logger.info("objects differ: diff=%s original=%s desired=%s", patch, key(obj1), key(obj2))
    return False
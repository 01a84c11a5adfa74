"""Parsing of multi-document Kubernetes manifests into typed objects, and CRD helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Union

import yaml

from kinstallutils.errors import KubeApiError, StatusReason, is_not_found
from kinstallutils.resources import name_of, namespace_of

_KIND_TYPES: Dict[str, str] = {
    "Namespace": "core/v1.Namespace",
    "ServiceAccount": "core/v1.ServiceAccount",
    "ClusterRole": "rbac/v1.ClusterRole",
    "ClusterRoleBinding": "rbac/v1.ClusterRoleBinding",
    "Job": "batch/v1.Job",
    "ConfigMap": "core/v1.ConfigMap",
    "Service": "core/v1.Service",
    "Pod": "core/v1.Pod",
    "CustomResourceDefinition": "apiextensions/v1beta1.CustomResourceDefinition",
    "MutatingWebhookConfiguration": "admissionregistration/v1beta1.MutatingWebhookConfiguration",
    "HorizontalPodAutoscaler": "autoscaling/v1.HorizontalPodAutoscaler",
}

_WORKLOAD_VERSIONS = ("extensions/v1beta1", "apps/v1", "apps/v1beta2")


class _JsonLoader(yaml.SafeLoader):
    """Safe loader that keeps timestamps as plain strings, as JSON does."""


_JsonLoader.yaml_implicit_resolvers = {
    first: [(tag, regex) for tag, regex in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class ManifestParseError(Exception):
    """A manifest document could not be parsed into a supported object."""


@dataclass
class KubeObject:
    """A parsed API object: the type it was recognised as and its body."""

    api_type: str
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return str(self.body.get("kind", ""))

    @property
    def api_version(self) -> str:
        return str(self.body.get("apiVersion", ""))

    @property
    def name(self) -> str:
        return name_of(self.body)

    @property
    def namespace(self) -> str:
        return namespace_of(self.body)


def parse_kube_manifest(manifest: str) -> List[KubeObject]:
    """Parse every '---' separated document; empty documents are skipped."""
    objects: List[KubeObject] = []
    for snippet in manifest.split("---"):
        try:
            objects.extend(_convert_yaml(snippet))
        except ManifestParseError as exc:
            raise ManifestParseError(f"unsupported object type: {snippet}") from exc
    return objects


def _convert_yaml(text: str) -> List[KubeObject]:
    try:
        data = yaml.load(text, Loader=_JsonLoader)
    except yaml.YAMLError as exc:
        raise ManifestParseError(f"unmarshalling {text}") from exc
    return _convert(data)


def _type_meta(data: Dict[str, Any]) -> tuple:
    kind = data.get("kind", "")
    api_version = data.get("apiVersion", "")
    if kind is None:
        kind = ""
    if api_version is None:
        api_version = ""
    if not isinstance(kind, str) or not isinstance(api_version, str):
        raise ManifestParseError("parsing raw yaml as type meta")
    return kind, api_version


def _convert(data: Any) -> List[KubeObject]:
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ManifestParseError("unmarshalling: document is not an object")
    kind, api_version = _type_meta(data)

    if kind == "List":
        return _convert_list(data)
    if kind == "Deployment":
        if api_version not in _WORKLOAD_VERSIONS:
            raise ManifestParseError(f"unknown api version for deployment: {api_version}")
        return [KubeObject(f"{api_version}.Deployment", data)]
    if kind == "DaemonSet":
        if api_version not in _WORKLOAD_VERSIONS:
            raise ManifestParseError(f"unknown api version for daemon set: {api_version}")
        return [KubeObject(f"{api_version}.DaemonSet", data)]
    try:
        api_type = _KIND_TYPES[kind]
    except KeyError:
        raise ManifestParseError(f"unsupported kind {kind}") from None
    return [KubeObject(api_type, data)]


def _convert_list(data: Dict[str, Any]) -> List[KubeObject]:
    if "items" not in data:
        raise ManifestParseError("list object missing items")
    items = data["items"]
    if not isinstance(items, list):
        raise ManifestParseError("items must be an array")
    converted: List[KubeObject] = []
    for item in items:
        try:
            converted.extend(_convert(item))
        except ManifestParseError as exc:
            raise ManifestParseError("converting resource in list") from exc
    return converted


def crds_from_manifest(manifest: str) -> List[KubeObject]:
    """The custom resource definitions in a manifest, which must hold nothing else."""
    crds = []
    for obj in parse_kube_manifest(manifest):
        if obj.kind != "CustomResourceDefinition":
            raise ManifestParseError(
                "internal error: crd manifest must only contain CustomResourceDefinitions"
            )
        crds.append(obj)
    return crds


def _body(crd: Union[KubeObject, Dict[str, Any]]) -> Dict[str, Any]:
    return crd.body if isinstance(crd, KubeObject) else crd


def create_crds(client: Any, *crds: Union[KubeObject, Dict[str, Any]]) -> None:
    """Create each CRD with ``client.create(body)``; existing ones are left alone."""
    for crd in crds:
        body = _body(crd)
        try:
            client.create(body)
        except KubeApiError as exc:
            if exc.reason is StatusReason.ALREADY_EXISTS:
                continue
            raise RuntimeError(f"failed to create crd: {name_of(body)}") from exc
        except Exception as exc:
            raise RuntimeError(f"failed to create crd: {name_of(body)}") from exc


def delete_crds(client: Any, *crd_names: str) -> None:
    """Delete each named CRD with ``client.delete(name)``; missing ones are ignored."""
    names: Iterable[str] = crd_names
    for name in names:
        try:
            client.delete(name)
        except Exception as exc:
            if is_not_found(exc):
                continue
            raise RuntimeError(f"failed to delete crd: {name}") from exc
"""Reconciles a desired set of resources against what the installer put on a cluster.

The installer works through a client object with:

- ``create(res)``, ``get(res)``, ``update(res)`` and ``delete(res)``, as used by
  :mod:`kinstallutils.creation`;
- ``list_resources(gvr)``, used to check that a new CRD is served;
- ``is_namespaced(group, version, kind)``, which answers whether the kind is
  namespaced, or returns None when the server knows no such kind.

Failures are raised as API errors (:class:`kinstallutils.errors.KubeApiError`).
"""

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from kinstallutils.cache import Cache
from kinstallutils.callbacks import (
    CallbackOption,
    get_installed_resources,
    init_callbacks,
    set_installation_annotation,
)
from kinstallutils.creation import (
    DEFAULT_RETRY_OPTIONS,
    INSTALLER_RETRY_OPTIONS,
    CreationPolicy,
    RetryOptions,
    creation_function,
    retry,
    wait_for_crd,
    wait_for_deployment_replica,
    wait_for_job_complete,
)
from kinstallutils.errors import is_already_exists, is_not_found
from kinstallutils.resources import (
    Resource,
    apply_patch,
    by_key,
    get_patch,
    group_by_gvk,
    key,
    match,
    name_of,
    namespace_of,
    with_labels,
)

logger = logging.getLogger(__name__)

_WORKLOAD_VERSIONS = ("extensions/v1beta1", "apps/v1", "apps/v1beta2")


class InstallerClient(Protocol):
    def create(self, res: Resource) -> Any: ...

    def get(self, res: Resource) -> Resource: ...

    def update(self, res: Resource) -> Any: ...

    def delete(self, res: Resource) -> Any: ...

    def list_resources(self, gvr: Any) -> Any: ...

    def is_namespaced(self, group: str, version: str, kind: str) -> Optional[bool]: ...


@dataclass
class ReconcileParams:
    """What to reconcile: the desired resources and the labels that mark them as ours."""

    install_namespace: str = ""
    resources: List[Resource] = field(default_factory=list)
    owner_labels: Dict[str, str] = field(default_factory=dict)
    # keep namespaces written inside the manifests
    respect_manifest_namespaces: bool = False


@dataclass
class KubeInstallerOptions:
    """Extra callbacks, retry behaviour and the policy for creation conflicts."""

    callbacks: List[CallbackOption] = field(default_factory=list)
    # used while waiting for resources to become ready or to disappear
    retry_options: Optional[RetryOptions] = None
    # used for each create, update and delete request
    operation_retry_options: RetryOptions = DEFAULT_RETRY_OPTIONS
    creation_policy: CreationPolicy = CreationPolicy.RETURN_ERRORS
    max_workers: int = 16


def _split_api_version(api_version: str) -> Tuple[str, str]:
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _metadata(res: Resource) -> Dict[str, Any]:
    meta = res.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        res["metadata"] = meta
    return meta


def _labels(res: Resource) -> Dict[str, str]:
    labels = _as_dict(res.get("metadata")).get("labels")
    return labels if isinstance(labels, dict) else {}


def _set_namespace(res: Resource, namespace: str) -> None:
    meta = _metadata(res)
    if namespace:
        meta["namespace"] = namespace
    else:
        meta.pop("namespace", None)


def _res_key(res: Resource) -> str:
    return f"{res.get('kind', '')} {namespace_of(res)}.{name_of(res)}"


class KubeInstaller:
    """Creates, updates and deletes resources so the cluster matches the desired set.

    The cache must already be initialised; one installer should be shared globally.
    """

    def __init__(self, client: InstallerClient, cache: Cache, options: Optional[KubeInstallerOptions] = None) -> None:
        opts = options or KubeInstallerOptions()
        self._client = client
        self._cache = cache
        self._callbacks: List[CallbackOption] = init_callbacks() + list(opts.callbacks)
        self._retry_options = opts.retry_options or INSTALLER_RETRY_OPTIONS
        self._operation_retry = opts.operation_retry_options
        self._creation_policy = CreationPolicy(opts.creation_policy)
        self._max_workers = max(1, opts.max_workers)

    # hooks

    def _run_hooks(self, stage: str, call: Callable[[CallbackOption], None]) -> None:
        for cb in self._callbacks:
            try:
                call(cb)
            except Exception as exc:
                raise RuntimeError(f"error in {stage} hook: {exc}") from exc

    def _pre_update(self, res: Resource) -> None:
        set_installation_annotation(res)
        self._run_hooks("pre-update", lambda cb: cb.pre_update(res))

    # public API

    def reconcile_resources(self, params: ReconcileParams) -> None:
        """Bring the labelled resources on the cluster in line with the desired ones."""
        self._run_hooks("pre-install", lambda cb: cb.pre_install())
        self._reconcile(
            params.install_namespace,
            list(params.resources),
            dict(params.owner_labels),
            params.respect_manifest_namespaces,
        )
        self._run_hooks("post-install", lambda cb: cb.post_install())

    def purge_resources(self, with_labels: Dict[str, str]) -> None:
        """Delete every cached resource carrying the labels."""
        self._reconcile("", [], dict(with_labels), False)

    def list_all_resources(self) -> List[Resource]:
        return self._cache.list()

    # reconciliation

    def _reconcile(
        self,
        install_namespace: str,
        desired: List[Resource],
        owner_labels: Dict[str, str],
        respect_manifest_namespaces: bool,
    ) -> None:
        cached = by_key(get_installed_resources(with_labels(self._cache.list(), owner_labels)))
        logger.info(
            "reconciling desired resources against cached resources desired=%d cached_with_label=%d labels=%s cache_total=%d",
            len(desired),
            len(cached),
            owner_labels,
            len(self._cache),
        )

        for res in desired:
            labels = dict(_labels(res))
            labels.update(owner_labels)
            _metadata(res)["labels"] = labels
            namespaced = self._is_namespaced(desired, res)
            if not respect_manifest_namespaces:
                _set_namespace(res, install_namespace if namespaced else "")

        desired_by_key = by_key(desired)
        to_create = [res for k, res in desired_by_key.items() if k not in cached]
        to_update = [res for k, res in desired_by_key.items() if k in cached]
        to_delete = [res for k, res in cached.items() if k not in desired_by_key]

        logger.info(
            "preparing to create %d, update %d, and delete %d resources",
            len(to_create),
            len(to_update),
            len(to_delete),
        )

        for group in reversed(group_by_gvk(to_delete) or []):
            self._run_concurrently(self._delete_one, group.resources)

        if to_create:
            namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": install_namespace}}
            try:
                self._client.create(namespace)
            except Exception as exc:
                if not is_already_exists(exc):
                    raise RuntimeError(f"creating installation namespace: {exc}") from exc

        for group in group_by_gvk(to_create) or []:
            self._run_concurrently(self._create_one, group.resources)

        for group in group_by_gvk(to_update) or []:
            self._run_concurrently(lambda res: self._update_one(res, cached), group.resources)

        logger.info(
            "created %d, updated %d, and deleted %d resources",
            len(to_create),
            len(to_update),
            len(to_delete),
        )

    def _run_concurrently(self, fn: Callable[[Resource], None], resources: Iterable[Resource]) -> None:
        batch = list(resources)
        if not batch:
            return
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(batch))) as pool:
            futures = [pool.submit(fn, res) for res in batch]
        for future in futures:
            exc = future.exception()
            if exc is not None:
                raise exc

    def _delete_one(self, res: Resource) -> None:
        self._run_hooks("pre-delete", lambda cb: cb.pre_delete(res))
        res_key = _res_key(res)
        logger.info("deleting resource %s", res_key)
        try:
            retry(lambda: self._client.delete(copy.deepcopy(res)), self._operation_retry)
        except Exception as exc:
            if not is_not_found(exc):
                raise RuntimeError(f"deleting {res_key}: {exc}") from exc
        self._cache.delete(res)
        self._run_hooks("post-delete", lambda cb: cb.post_delete(res))

    def _create_one(self, res: Resource) -> None:
        self._run_hooks("pre-create", lambda cb: cb.pre_create(res))
        res_key = _res_key(res)
        logger.info("creating resource %s", res_key)
        create = creation_function(self._client, res, self._creation_policy, self._retry_options)
        try:
            retry(create, self._operation_retry)
        except Exception as exc:
            raise RuntimeError(f"creating {res_key}: {exc}") from exc
        self._cache.set(res)
        self._run_hooks("post-create", lambda cb: cb.post_create(res))
        try:
            self._wait_for_resource_ready(res)
        except Exception as exc:
            raise RuntimeError(f"waiting for resource to become ready {res_key}: {exc}") from exc

    def _update_one(self, desired: Resource, cached: Dict[Any, Resource]) -> None:
        self._pre_update(desired)
        res_key_obj = key(desired)
        original = cached.get(res_key_obj)
        if original is None:
            raise RuntimeError(f"internal error: could not find original resource for desired key {res_key_obj}")
        if match(original, desired):
            return
        patched = self._patch_server_resource(original, desired)
        res_key = _res_key(desired)
        logger.info("updating resource %s", res_key)
        try:
            retry(lambda: self._client.update(patched), self._operation_retry)
        except Exception as exc:
            raise RuntimeError(f"updating {res_key}: {exc}") from exc
        self._cache.set(desired)
        try:
            self._wait_for_resource_ready(desired)
        except Exception as exc:
            raise RuntimeError(f"waiting for resource to become ready {res_key}: {exc}") from exc

    def _patch_server_resource(self, original: Resource, desired: Resource) -> Resource:
        """Apply the difference between cached and desired to the server's current copy."""
        current = self._client.get(copy.deepcopy(original))
        patch = get_patch(original, desired)
        patched = apply_patch(current, patch)
        return patched if patched is not None else current

    def _is_namespaced(self, desired: List[Resource], res: Resource) -> bool:
        group, version = _split_api_version(str(res.get("apiVersion", "")))
        kind = str(res.get("kind", ""))
        namespaced = self._client.is_namespaced(group, version, kind)
        if namespaced is not None:
            return bool(namespaced)

        # possibly an unregistered custom resource: look for its CRD among the desired ones
        scopes = []
        for candidate in desired:
            if candidate.get("kind") != "CustomResourceDefinition":
                continue
            spec = _as_dict(candidate.get("spec"))
            if (
                spec.get("group") == group
                and spec.get("version") == version
                and _as_dict(spec.get("names")).get("kind") == kind
            ):
                scopes.append(spec.get("scope") == "Namespaced")
        if len(scopes) != 1:
            raise RuntimeError(f"could not get rest mapping and could not find crd for {key(res)}")
        return scopes[0]

    def _wait_for_resource_ready(self, res: Resource) -> None:
        kind = res.get("kind")
        api_version = res.get("apiVersion")
        name, namespace = name_of(res), namespace_of(res)
        if kind == "CustomResourceDefinition":
            wait_for_crd(self._client, name, self._retry_options)
        elif kind == "Deployment" and api_version in _WORKLOAD_VERSIONS:
            wait_for_deployment_replica(self._client, name, namespace, self._retry_options)
        elif kind == "Job":
            wait_for_job_complete(self._client, name, namespace, self._retry_options)


def list_all_cached_values(label_key: str, installer: Any) -> List[str]:
    """The distinct non-empty values of a label across the installer's resources."""
    values: List[str] = []
    for res in installer.list_all_resources():
        value = _labels(res).get(label_key, "")
        if value and value not in values:
            values.append(value)
    return values
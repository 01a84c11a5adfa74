"""A snapshot cache of installed cluster resources, and cluster-wide resource listing."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from kinstallutils.callbacks import get_installed_resource
from kinstallutils.resources import (
    ConversionError,
    Resource,
    ResourceKey,
    by_key,
    key as resource_key,
    list_by_key,
    sort_resources,
)

logger = logging.getLogger(__name__)

# Verbs a resource type must support to be listed by get_cluster_resources.
REQUIRED_VERBS = ("create", "list", "watch", "delete")


@dataclass(frozen=True)
class GroupVersionResource:
    """A resource type as served by the API server."""

    group: str = ""
    version: str = ""
    resource: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


FilterResource = Callable[[GroupVersionResource], bool]


class ClusterClient(Protocol):
    """What get_cluster_resources needs from a cluster connection."""

    def server_resources(self) -> Iterable[Tuple[GroupVersionResource, Iterable[str]]]:
        """Every served resource type with the verbs it supports."""

    def list_resources(self, gvr: GroupVersionResource) -> Iterable[Resource]:
        """Every resource of the given type."""


# Types the installer ignores and the cache skips.
IGNORE_TYPES_FOR_INSTALL: Tuple[GroupVersionResource, ...] = (
    GroupVersionResource("", "v1", "events"),
    GroupVersionResource("", "v1", "endpoints"),
    GroupVersionResource("", "v1", "nodes"),
    GroupVersionResource("apiregistration.k8s.io", "v1beta1", "apiservices"),
    GroupVersionResource("apiregistration.k8s.io", "v1", "apiservices"),
    GroupVersionResource("events.k8s.io", "v1beta1", "events"),
)


def ignored_for_install(resource: GroupVersionResource) -> bool:
    """True for resource types the installer ignores; speeds up cache initialisation."""
    text = str(resource)
    return any(text == str(ignored) for ignored in IGNORE_TYPES_FOR_INSTALL)


DEFAULT_FILTERS: Tuple[FilterResource, ...] = (ignored_for_install,)


def filter_group_versions(
    resource_types: Iterable[GroupVersionResource], *filters: FilterResource
) -> List[GroupVersionResource]:
    """Drop every resource type for which any filter returns True."""
    return [rt for rt in resource_types if not any(f(rt) for f in filters)]


def get_cluster_resources(client: ClusterClient, *filters: FilterResource) -> List[Resource]:
    """Every resource of every creatable, listable, watchable and deletable type.

    Each type is listed in its own request, concurrently; filters that drop
    types reduce the time this takes. The result is in install order.
    """
    required = set(REQUIRED_VERBS)
    crudable: List[GroupVersionResource] = []
    for gvr, verbs in client.server_resources():
        if required <= set(verbs) and gvr not in crudable:
            crudable.append(gvr)
    selected = filter_group_versions(crudable, *filters)
    if not selected:
        return []

    def fetch(gvr: GroupVersionResource) -> List[Resource]:
        logger.debug("listing all resourceType=%s", gvr)
        try:
            return list(client.list_resources(gvr))
        except Exception as exc:
            raise RuntimeError(f"listing {gvr}: {exc}") from exc

    with ThreadPoolExecutor(max_workers=min(32, len(selected))) as pool:
        batches = list(pool.map(fetch, selected))
    return sort_resources(res for batch in batches for res in batch)


class Cache:
    """A snapshot of every resource the installer has put on the cluster.

    A cache made without resources is not ready: reads and writes wait until
    init() or refresh() has run once.
    """

    def __init__(self, resources: Optional[Iterable[Resource]] = None) -> None:
        self._lock = threading.RLock()
        self._ready = threading.Event()
        self._resources: Dict[ResourceKey, Resource] = {}
        if resources is not None:
            self._resources = by_key(resources)
            self._ready.set()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def __len__(self) -> int:
        self._ready.wait()
        with self._lock:
            return len(self._resources)

    @staticmethod
    def _cluster_resources(client: ClusterClient, filters: Tuple[FilterResource, ...]) -> List[Resource]:
        installed = []
        for res in get_cluster_resources(client, *filters):
            try:
                installed.append(get_installed_resource(res))
            except ConversionError:
                continue
        return installed

    def init(self, client: ClusterClient, *filters: FilterResource) -> None:
        """Fill the cache from the cluster; the cache is ready afterwards, even on error."""
        try:
            current = self._cluster_resources(client, filters)
            with self._lock:
                self._resources = by_key(current)
        finally:
            self._ready.set()

    def refresh(self, client: ClusterClient, *filters: FilterResource) -> None:
        """Replace the snapshot with the current state of the cluster."""
        current = self._cluster_resources(client, filters)
        with self._lock:
            self._resources = by_key(current)
        self._ready.set()

    def list(self) -> List[Resource]:
        self._ready.wait()
        with self._lock:
            return list_by_key(self._resources)

    def get(self, key: ResourceKey) -> Optional[Resource]:
        self._ready.wait()
        with self._lock:
            return self._resources.get(key)

    def set(self, obj: Resource) -> None:
        self._ready.wait()
        with self._lock:
            self._resources[resource_key(obj)] = obj

    def delete(self, obj: Resource) -> None:
        self._ready.wait()
        with self._lock:
            self._resources.pop(resource_key(obj), None)
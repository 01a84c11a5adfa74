import copy

import pytest

from kinstallutils.cache import (
    Cache,
    GroupVersionResource,
    filter_group_versions,
    get_cluster_resources,
    ignored_for_install,
)
from kinstallutils.callbacks import set_installation_annotation
from kinstallutils.errors import KubeApiError, StatusReason, is_not_found
from kinstallutils.resources import key

ALL_VERBS = ["create", "delete", "get", "list", "watch"]
CONFIGMAPS = GroupVersionResource("", "v1", "configmaps")
NAMESPACES = GroupVersionResource("", "v1", "namespaces")
EVENTS = GroupVersionResource("", "v1", "events")


class FakeCluster:
    def __init__(self, contents, verbs=None, failing=None):
        self.contents = contents
        self.verbs = verbs or {}
        self.failing = failing
        self.listed = []

    def server_resources(self):
        return [(gvr, self.verbs.get(gvr, ALL_VERBS)) for gvr in self.contents]

    def list_resources(self, gvr):
        self.listed.append(gvr)
        if gvr == self.failing:
            raise KubeApiError(StatusReason.NOT_FOUND, "gone")
        return copy.deepcopy(self.contents[gvr])


def configmap(name, ns="ns"):
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name, "namespace": ns}}


def namespace(name):
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def annotated(res):
    set_installation_annotation(res)
    return res


def test_gvr_string_format():
    assert str(GroupVersionResource("", "v1", "events")) == "/v1, Resource=events"


def test_ignored_for_install():
    assert ignored_for_install(EVENTS)
    assert ignored_for_install(GroupVersionResource("apiregistration.k8s.io", "v1", "apiservices"))
    assert not ignored_for_install(CONFIGMAPS)


def test_filter_group_versions():
    types = [CONFIGMAPS, EVENTS, NAMESPACES]
    assert filter_group_versions(types, ignored_for_install) == [CONFIGMAPS, NAMESPACES]
    assert filter_group_versions(types) == types
    only_cms = lambda gvr: gvr.resource != "configmaps"
    assert filter_group_versions(types, ignored_for_install, only_cms) == [CONFIGMAPS]


def test_get_cluster_resources_sorted_and_filtered():
    cluster = FakeCluster(
        {
            CONFIGMAPS: [configmap("b"), configmap("a")],
            NAMESPACES: [namespace("ns")],
            EVENTS: [{"apiVersion": "v1", "kind": "Event", "metadata": {"name": "e"}}],
        }
    )
    result = get_cluster_resources(cluster, ignored_for_install)
    assert [r["kind"] for r in result] == ["Namespace", "ConfigMap", "ConfigMap"]
    assert [r["metadata"]["name"] for r in result[1:]] == ["a", "b"]
    assert EVENTS not in cluster.listed


def test_get_cluster_resources_skips_types_missing_verbs():
    cluster = FakeCluster(
        {CONFIGMAPS: [configmap("a")], NAMESPACES: [namespace("ns")]},
        verbs={NAMESPACES: ["get", "list"]},
    )
    result = get_cluster_resources(cluster)
    assert [r["kind"] for r in result] == ["ConfigMap"]
    assert cluster.listed == [CONFIGMAPS]


def test_get_cluster_resources_propagates_errors():
    cluster = FakeCluster({CONFIGMAPS: [configmap("a")]}, failing=CONFIGMAPS)
    with pytest.raises(RuntimeError) as info:
        get_cluster_resources(cluster)
    assert is_not_found(info.value)


def test_cache_init_keeps_only_installed_resources():
    installed = annotated(configmap("ours"))
    on_server = copy.deepcopy(installed)
    on_server["metadata"]["resourceVersion"] = "12"
    cluster = FakeCluster({CONFIGMAPS: [on_server, configmap("foreign")]})
    cache = Cache()
    assert not cache.ready
    cache.init(cluster)
    assert cache.ready
    assert cache.list() == [installed]
    assert len(cache) == 1


def test_cache_init_ready_after_error():
    cache = Cache()
    with pytest.raises(RuntimeError):
        cache.init(FakeCluster({CONFIGMAPS: []}, failing=CONFIGMAPS))
    assert cache.ready
    assert cache.list() == []


def test_cache_set_get_delete():
    cache = Cache(resources=[])
    res = configmap("a")
    cache.set(res)
    assert cache.get(key(res)) is res
    assert cache.list() == [res]
    cache.delete(res)
    assert cache.get(key(res)) is None
    assert cache.list() == []


def test_cache_refresh_replaces_snapshot():
    old = configmap("old")
    cache = Cache(resources=[old])
    fresh = annotated(configmap("new"))
    cache.refresh(FakeCluster({CONFIGMAPS: [copy.deepcopy(fresh)]}))
    assert cache.get(key(old)) is None
    assert cache.list() == [fresh]
import pytest

from kinstallutils.resources import (
    ConversionError,
    GroupVersionKind,
    ResourceKey,
    VersionedResources,
    apply_patch,
    by_key,
    create_merge_patch,
    filter_resources,
    get_patch,
    group_by_gvk,
    gvk_of,
    install_order_less,
    key,
    list_by_key,
    match,
    merge_patch,
    sort_resources,
    structured_type,
    with_labels,
)


def make(api_version, kind, name, namespace=None, labels=None, **extra):
    meta = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    if labels is not None:
        meta["labels"] = dict(labels)
    obj = {"apiVersion": api_version, "kind": kind, "metadata": meta}
    obj.update(extra)
    return obj


def kinds(resources):
    return [r["kind"] for r in resources]


def test_gvk_parsing():
    assert gvk_of(make("apps/v1", "Deployment", "d")) == GroupVersionKind("apps", "v1", "Deployment")
    assert gvk_of(make("v1", "ConfigMap", "c")) == GroupVersionKind("", "v1", "ConfigMap")
    assert gvk_of(make("a/b/c", "Thing", "t")) == GroupVersionKind()


def test_key_and_string_form():
    obj = make("apps/v1", "Deployment", "web", namespace="prod")
    k = key(obj)
    assert k == ResourceKey(GroupVersionKind("apps", "v1", "Deployment"), "prod", "web")
    assert str(k) == "apps/v1, Kind=Deployment.prod.web"


def test_sort_follows_install_order_unknown_last():
    resources = [
        make("example.com/v1", "Widget", "w"),
        make("apps/v1", "Deployment", "d"),
        make("example.com/v1", "Gadget", "g"),
        make("v1", "ConfigMap", "c"),
        make("v1", "Namespace", "n"),
    ]
    result = sort_resources(resources)
    assert kinds(result) == ["Namespace", "ConfigMap", "Deployment", "Gadget", "Widget"]
    assert kinds(resources)[0] == "Widget"  # input untouched


def test_mutating_webhook_sorted_after_namespace():
    resources = [
        make("networking.k8s.io/v1", "NetworkPolicy", "p"),
        make("admissionregistration.k8s.io/v1beta1", "MutatingWebhookConfiguration", "m"),
        make("v1", "Namespace", "n"),
    ]
    assert kinds(sort_resources(resources)) == [
        "Namespace",
        "MutatingWebhookConfiguration",
        "NetworkPolicy",
    ]


def test_same_kind_sorted_by_namespace_and_name():
    resources = [
        make("v1", "ConfigMap", "b", namespace="x"),
        make("v1", "ConfigMap", "a", namespace="y"),
        make("v1", "ConfigMap", "a", namespace="x"),
    ]
    result = sort_resources(resources)
    assert [(r["metadata"]["namespace"], r["metadata"]["name"]) for r in result] == [
        ("x", "a"),
        ("x", "b"),
        ("y", "a"),
    ]


def test_install_order_less():
    assert install_order_less("Namespace", "Deployment") is True
    assert install_order_less("Deployment", "Namespace") is False
    assert install_order_less("Unknown", "Namespace") is False
    assert install_order_less("Namespace", "Unknown") is True
    assert install_order_less("Foo", "Bar") is True


def test_filter_and_with_labels():
    a = make("v1", "ConfigMap", "a", labels={"app": "x", "tier": "web"})
    b = make("v1", "ConfigMap", "b", labels={"app": "y"})
    c = make("v1", "ConfigMap", "c")
    resources = [a, b, c]
    assert with_labels(resources, {"app": "x"}) == [a]
    assert with_labels(resources, {}) == resources
    assert with_labels(resources, None) == resources
    assert filter_resources(resources, lambda r: r is b) == [a, c]


def test_with_labels_requires_key_present_for_empty_value():
    a = make("v1", "ConfigMap", "a", labels={"flag": ""})
    b = make("v1", "ConfigMap", "b")
    assert with_labels([a, b], {"flag": ""}) == [a]


def test_by_key_round_trip():
    resources = [make("apps/v1", "Deployment", "d"), make("v1", "Namespace", "n")]
    mapping = by_key(resources)
    assert set(mapping) == {key(r) for r in resources}
    assert list_by_key(mapping) == sort_resources(resources)


def test_group_by_gvk():
    d1 = make("apps/v1", "Deployment", "a")
    cm = make("v1", "ConfigMap", "b")
    d2 = make("apps/v1", "Deployment", "c")
    groups = group_by_gvk([d1, cm, d2])
    assert [g.gvk.kind for g in groups] == ["ConfigMap", "Deployment"]
    assert isinstance(groups[0], VersionedResources)
    assert groups[0].resources == [cm]
    assert sorted(r["metadata"]["name"] for r in groups[1].resources) == ["a", "c"]
    assert group_by_gvk([]) == []


def test_group_by_gvk_separates_versions():
    groups = group_by_gvk([make("apps/v1", "Deployment", "a"), make("apps/v1beta2", "Deployment", "b")])
    assert {g.gvk.version for g in groups} == {"v1", "v1beta2"}


def test_merge_patch_rfc_example():
    document = {
        "title": "Goodbye!",
        "author": {"givenName": "John", "familyName": "Doe"},
        "tags": ["example", "sample"],
        "content": "This will be unchanged",
    }
    patch = {"title": "Hello!", "author": {"familyName": None}, "tags": ["example"]}
    expected = {
        "title": "Hello!",
        "author": {"givenName": "John"},
        "tags": ["example"],
        "content": "This will be unchanged",
    }
    assert merge_patch(document, patch) == expected
    assert create_merge_patch(document, expected) == patch
    assert document["title"] == "Goodbye!"


def test_merge_patch_round_trip():
    original = {"a": {"b": 1, "c": [1, 2]}, "d": "x", "e": None}
    modified = {"a": {"b": 2, "c": [1, 2]}, "f": {"g": True}}
    assert merge_patch(original, create_merge_patch(original, modified)) == modified


def test_create_merge_patch_distinguishes_bool_and_number():
    assert create_merge_patch({"a": 1}, {"a": True}) == {"a": True}
    assert create_merge_patch({"a": 1}, {"a": 1.0}) == {}


def test_create_merge_patch_rejects_non_objects():
    with pytest.raises(ValueError):
        create_merge_patch([1], {"a": 1})


def test_match_ignores_generated_fields():
    cached = make("v1", "ConfigMap", "c", namespace="ns", data={"k": "v"})
    cached["metadata"]["resourceVersion"] = "12"
    cached["metadata"]["uid"] = "uid-value"
    cached["status"] = {"phase": "Active"}
    desired = make("v1", "ConfigMap", "c", namespace="ns", data={"k": "v"})
    assert match(cached, desired) is True
    assert "status" not in cached


def test_match_detects_difference():
    a = make("v1", "ConfigMap", "c", data={"k": "v"})
    b = make("v1", "ConfigMap", "c", data={"k": "w"})
    assert match(a, b) is False


def test_get_patch_and_apply_patch_round_trip():
    original = make("v1", "ConfigMap", "c", labels={"a": "1"}, data={"k": "v"})
    desired = make("v1", "ConfigMap", "c", labels={"b": "2"}, data={"k": "v"})
    patch = get_patch(original, desired)
    server = make("v1", "ConfigMap", "c", labels={"a": "1"}, data={"k": "v"})
    server["metadata"]["resourceVersion"] = "7"
    apply_patch(server, patch)
    assert server["metadata"]["labels"] == {"b": "2"}
    assert server["metadata"]["resourceVersion"] == "7"


def test_apply_patch_requires_kind():
    obj = make("v1", "ConfigMap", "c")
    with pytest.raises(ConversionError):
        apply_patch(obj, {"kind": None})
    assert obj["kind"] == "ConfigMap"


def test_apply_patch_rejects_lists():
    obj = make("v1", "ConfigMap", "c")
    with pytest.raises(ConversionError):
        apply_patch(obj, {"kind": "List", "items": []})


def test_structured_type():
    assert structured_type(make("apps/v1", "Deployment", "d")) == "apps/v1.Deployment"
    assert structured_type(make("extensions/v1beta1", "DaemonSet", "d")) == "extensions/v1beta1.DaemonSet"
    assert structured_type(make("v1", "List", "l")) is None
    assert structured_type(make("apiextensions.k8s.io/v1beta1", "CustomResourceDefinition", "x")).endswith(
        "CustomResourceDefinition"
    )


def test_structured_type_errors():
    with pytest.raises(ConversionError):
        structured_type(make("apps/v9", "Deployment", "d"))
    with pytest.raises(ConversionError):
        structured_type(make("apps/v9", "DaemonSet", "d"))
    with pytest.raises(ConversionError):
        structured_type(make("example.com/v1", "Widget", "w"))
    with pytest.raises(ConversionError):
        structured_type({"metadata": {"name": "x"}})
# kinstallutils

Helpers for working with Kubernetes resources, rendered manifests and Helm
chart releases from Python.

## Installation

```
pip install kinstallutils
```

To run the test suite, install the `test` extra and run `pytest`:

```
pip install "kinstallutils[test]"
pytest
```

## What it covers

| Area | Module | Main names |
|------|--------|------------|
| API errors | `kinstallutils.errors` | `KubeApiError`, `StatusReason`, `is_not_found`, `is_already_exists`, `is_immutable_error` |
| Working with resources | `kinstallutils.resources` | `key`, `sort_resources`, `group_by_gvk`, `with_labels`, `get_patch`, `apply_patch`, `match` |
| Manifests | `kinstallutils.manifests` | `Manifests`, `split_manifests`, `manifests_from_resources`, `is_empty_manifest`, `sort_by_kind` |
| Parsing typed manifests | `kinstallutils.kubeparse` | `parse_kube_manifest`, `crds_from_manifest`, `create_crds`, `delete_crds` |
| `.helmignore` rules | `kinstallutils.helmignore` | `parse`, `parse_file`, `empty`, `Rules` |
| Installer callbacks | `kinstallutils.callbacks` | `CallbackOption`, `set_installation_annotation`, `get_installed_resource` |
| Cluster snapshot cache | `kinstallutils.cache` | `Cache`, `get_cluster_resources`, `GroupVersionResource` |
| Creating resources and waiting for them | `kinstallutils.creation` | `CreationPolicy`, `RetryOptions`, `retry`, `creation_function` |
| Reconciling resources | `kinstallutils.kube_installer` | `KubeInstaller`, `ReconcileParams`, `KubeInstallerOptions`, `list_all_cached_values` |
| Fetching chart archives | `kinstallutils.fetch` | `ResourceFetcher`, `ResourceFetchError` |
| Installing Helm releases | `kinstallutils.helminstall` | `Installer`, `InstallerConfig`, `HelmClient`, `coalesce_tables` |

### Working with resources

A resource is a plain `dict` in the shape of a Kubernetes object, with
`apiVersion`, `kind` and `metadata`.

`key(obj)` gives a hashable `ResourceKey`. `sort_resources` returns a new list
in install order: namespaces first, then the other known kinds in a fixed
order, and kinds that are not known last, sorted by kind name, then by
namespace and name.

`get_patch` builds a JSON merge patch between two resources after removing
server-generated fields (uid, resource version, status and so on);
`match` is true when that patch is empty. `apply_patch` applies a merge patch
to a resource in place.

### Manifests

`split_manifests` takes a mapping of template names to rendered text and
returns a `Manifests` list with the kind each template declares
(`"Unknown"` when it declares none). A `Manifests` list can:

- be ordered with `sort_by_kind`, or give its names in that order with `names()`;
- be joined into one YAML stream with `combined_string()`, leaving out
  `NOTES.txt` and files whose name starts with `_`;
- be decoded into resources with `resource_list()`, which expands List objects.

`manifests_from_resources` turns resources back into a single manifest.

### Parsing typed manifests

`parse_kube_manifest` splits a manifest on `---` and returns a `KubeObject` for
each supported kind, raising `ManifestParseError` for anything else.
`crds_from_manifest` accepts only custom resource definitions.

### `.helmignore`

```python
from kinstallutils import helmignore

rules = helmignore.parse("*.tmp\n!keep.tmp\n")
rules.add_defaults()
rules.ignore("templates/.hidden", is_dir=False)  # True
```

Patterns containing `**` are rejected with `ValueError`.

### Reconciling against a cluster

`KubeInstaller` and `Cache` work through a client object that you supply.

- `Cache.init(client, *filters)` and `Cache.refresh(...)` fill the cache from
  the cluster; the client needs `server_resources()` and `list_resources(gvr)`.
  A `Cache` built without resources waits for `init` or `refresh` before reads.
- `KubeInstaller(client, cache, options)` needs `create`, `get`, `update`,
  `delete`, `list_resources` and `is_namespaced` on its client.
  `reconcile_resources(ReconcileParams(...))` creates, updates and deletes
  resources so the labelled resources match the desired list, waiting for
  CRDs, deployments and jobs to become ready. `purge_resources(labels)`
  removes everything that carries the labels.
- `CreationPolicy` decides what happens when a resource already exists:
  return the error, ignore it, update, or delete and recreate when an update
  hits an immutable field.

Errors from the API are expected as `KubeApiError`; classify them with
`is_not_found`, `is_already_exists` and `is_immutable_error`.

### Installing Helm releases

`Installer(helm_client, namespace_client, out).install(InstallerConfig(...))`
refuses to install a release that already exists
(`ReleaseAlreadyInstalledError`), optionally creates the namespace, merges
value files with `extra_values` (the latter winning) and runs the install
action. `HelmClient` prepares those actions from factories you pass in
(`HelmFactories`), and downloads charts through a `ResourceFetcher`, which opens
a local path or an http(s) address.

## What it does not do

- It contains no Kubernetes API client and no Helm engine: it does not render
  chart templates, load chart archives or talk to a cluster by itself. Those
  parts are objects you pass in.
- It has no command-line program.
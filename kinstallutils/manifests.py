"""Rendered chart manifests: splitting, ordering, combining and decoding."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from kinstallutils.resources import INSTALL_ORDER, ConversionError, Resource

_KIND_REGEX = re.compile(r"kind:(.*)\n")
_COMMENT_REGEX = re.compile(r"#.*")
YAML_SEPARATOR = re.compile(r"\n---\n")

_INSTALL_INDEX: Dict[str, int] = {kind: index for index, kind in enumerate(INSTALL_ORDER)}


class _JsonLoader(yaml.SafeLoader):
    """Safe loader that keeps timestamps as plain strings, as JSON does."""


_JsonLoader.yaml_implicit_resolvers = {
    first: [(tag, regex) for tag, regex in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


@dataclass
class Manifest:
    """One rendered template: its file name, its text and the kind it declares."""

    name: str = ""
    content: str = ""
    kind: str = ""


def _base(path: str) -> str:
    if path == "":
        return "."
    stripped = path.rstrip("/")
    if stripped == "":
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _sort_key(manifest: Manifest) -> tuple:
    index = _INSTALL_INDEX.get(manifest.kind)
    if index is None:
        return (1, 0, manifest.kind, manifest.name)
    return (0, index, "", manifest.name)


def sort_by_kind(manifests: Iterable[Manifest]) -> "Manifests":
    """Manifests in install order; unknown kinds last, by kind then name."""
    return Manifests(sorted(manifests, key=_sort_key))


def _load_document(text: str) -> Any:
    try:
        return next(iter(yaml.load_all(text, Loader=_JsonLoader)), None)
    except yaml.YAMLError as exc:
        raise ConversionError(f"converting yaml to json: {exc}") from exc


def _decode_unstructured(obj: Any) -> List[Resource]:
    if not isinstance(obj, dict):
        raise ConversionError("resource is not a JSON object")
    kind = obj.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ConversionError("Object 'Kind' is missing")
    items = obj.get("items")
    if items is None:
        return [obj]
    if not isinstance(items, list):
        raise ConversionError("items must be an array")
    item_kind = kind[: -len("List")] if kind.endswith("List") else kind
    list_api_version = obj.get("apiVersion", "")
    decoded: List[Resource] = []
    for item in items:
        if not isinstance(item, dict):
            raise ConversionError("items member is not an object")
        if not item.get("kind") and not item.get("apiVersion"):
            item["kind"] = item_kind
            item["apiVersion"] = list_api_version
        decoded.append(item)
    return decoded


class Manifests(List[Manifest]):
    """A list of rendered manifests."""

    def find(self, name: str) -> Optional[Manifest]:
        """The manifest with the given name, or None."""
        return next((m for m in self if m.name == name), None)

    def names(self) -> List[str]:
        """Manifest names in install order."""
        return [m.name for m in sort_by_kind(self)]

    def combined_string(self) -> str:
        """All manifests in install order, each under a source header.

        NOTES.txt and partials whose file name starts with '_' are left out.
        """
        parts = []
        for manifest in sort_by_kind(self):
            base = _base(manifest.name)
            if base == "NOTES.txt" or base.startswith("_"):
                continue
            parts.append(f"---\n# Source: {manifest.name}\n{manifest.content}\n")
        return "".join(parts)

    def resource_list(self) -> List[Resource]:
        """Decode every document into a resource; List objects are expanded."""
        resources: List[Resource] = []
        for snippet in YAML_SEPARATOR.split(self.combined_string()):
            if is_empty_manifest(snippet):
                continue
            resources.extend(_decode_unstructured(_load_document(snippet)))
        return resources


def split_manifests(templates: Mapping[str, str]) -> Manifests:
    """One manifest per rendered template, with the kind it declares."""
    manifests = Manifests()
    for name, content in templates.items():
        found = _KIND_REGEX.search(content)
        kind = found.group(1).strip() if found else "Unknown"
        manifests.append(Manifest(name=name, content=content, kind=kind))
    return manifests


def manifests_from_resources(resources: Iterable[Resource]) -> Manifests:
    """A single unnamed manifest holding every resource as a YAML document."""
    documents = [yaml.safe_dump(res, default_flow_style=False, sort_keys=True) for res in resources]
    return Manifests([Manifest(name="", content="\n---\n".join(documents), kind="")])


def is_empty_manifest(manifest: str) -> bool:
    """True if nothing but comments, separators, newlines and spaces remain."""
    stripped = _COMMENT_REGEX.sub("", manifest)
    stripped = stripped.replace("\n", "").replace("---", "").replace(" ", "")
    return stripped == ""
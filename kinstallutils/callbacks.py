"""Installer lifecycle callbacks and the last-applied-configuration annotation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from kinstallutils.resources import ConversionError, Resource, key

INSTALLER_ANNOTATION_KEY = "installer.solo.io/last-applied-configuration"

Hook = Callable[[], None]
ResourceHook = Callable[[Resource], None]


@dataclass
class CallbackOption:
    """Optional hooks run around an installation; a hook signals failure by raising."""

    on_pre_install: Optional[Hook] = None
    on_post_install: Optional[Hook] = None
    on_pre_create: Optional[ResourceHook] = None
    on_post_create: Optional[ResourceHook] = None
    on_pre_update: Optional[ResourceHook] = None
    on_post_update: Optional[ResourceHook] = None
    on_pre_delete: Optional[ResourceHook] = None
    on_post_delete: Optional[ResourceHook] = None

    def pre_install(self) -> None:
        if self.on_pre_install is not None:
            self.on_pre_install()

    def post_install(self) -> None:
        if self.on_post_install is not None:
            self.on_post_install()

    def pre_create(self, res: Resource) -> None:
        if self.on_pre_create is not None:
            self.on_pre_create(res)

    def post_create(self, res: Resource) -> None:
        if self.on_post_create is not None:
            self.on_post_create(res)

    def pre_update(self, res: Resource) -> None:
        if self.on_pre_update is not None:
            self.on_pre_update(res)

    def post_update(self, res: Resource) -> None:
        if self.on_post_update is not None:
            self.on_post_update(res)

    def pre_delete(self, res: Resource) -> None:
        if self.on_pre_delete is not None:
            self.on_pre_delete(res)

    def post_delete(self, res: Resource) -> None:
        if self.on_post_delete is not None:
            self.on_post_delete(res)


def _annotations(res: Resource) -> dict:
    meta = res.get("metadata")
    annotations = meta.get("annotations") if isinstance(meta, dict) else None
    return dict(annotations) if isinstance(annotations, dict) else {}


def _set_annotations(res: Resource, annotations: dict) -> None:
    meta = res.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        res["metadata"] = meta
    meta["annotations"] = annotations


def set_installation_annotation(res: Resource) -> None:
    """Record the resource's own JSON in its installer annotation."""
    encoded = json.dumps(res, sort_keys=True, separators=(",", ":"))
    annotations = _annotations(res)
    annotations[INSTALLER_ANNOTATION_KEY] = encoded
    _set_annotations(res, annotations)


def get_installed_resource(res: Resource) -> Resource:
    """Replace the resource, in place, with the configuration recorded in its annotation."""
    recorded = _annotations(res).get(INSTALLER_ANNOTATION_KEY)
    if recorded is None:
        raise ConversionError(
            f"resource {key(res)} missing installer annotation {INSTALLER_ANNOTATION_KEY}"
        )
    try:
        installed = json.loads(recorded)
    except (TypeError, ValueError) as exc:
        raise ConversionError(f"decoding installer annotation of {key(res)}") from exc
    if installed is None:
        installed = {}
    if not isinstance(installed, dict):
        raise ConversionError(f"installer annotation of {key(res)} is not an object")
    res.clear()
    res.update(installed)
    annotations = _annotations(res)
    annotations[INSTALLER_ANNOTATION_KEY] = recorded
    _set_annotations(res, annotations)
    return res


def get_installed_resources(resources: Iterable[Resource]) -> List[Resource]:
    """The installed configuration of every resource; fails if one lacks it."""
    return [get_installed_resource(res) for res in resources]


def init_callbacks() -> List[CallbackOption]:
    """The callbacks every installer starts with."""
    return [CallbackOption(on_pre_create=set_installation_annotation)]
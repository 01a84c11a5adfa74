"""Resource creation policies, retries and readiness waits for the installer.

The client used here is any object with ``create(res)``, ``get(res)`` (the
server's copy of the resource identified by kind, namespace and name),
``update(res)``, ``delete(res)`` and ``list_resources(gvr)``; failures are
raised as API errors.
"""

from __future__ import annotations

import copy
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from kinstallutils.cache import GroupVersionResource
from kinstallutils.errors import is_already_exists, is_immutable_error, is_not_found
from kinstallutils.resources import Resource, name_of

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreationPolicy(enum.IntEnum):
    """How to handle resource creation when it fails."""

    # Attempt to create, return any error
    RETURN_ERRORS = 0
    # Attempt to create, ignore AlreadyExists errors
    IGNORE_ON_EXISTS = 1
    # Attempt to create, fall back to update on AlreadyExists
    UPDATE_ON_EXISTS = 2
    # As UPDATE_ON_EXISTS, then delete and recreate on immutable field errors
    FORCE_UPDATE_ON_EXISTS = 3


@dataclass(frozen=True)
class RetryOptions:
    """How often and how long to retry; ``cancelled`` ends waits early."""

    attempts: int = 10
    delay: float = 0.1
    backoff: bool = True
    sleep: Callable[[float], None] = time.sleep
    cancelled: Optional[Callable[[], bool]] = None

    def delay_for(self, attempt: int) -> float:
        """The pause after the given zero-based attempt."""
        return self.delay * (2 ** attempt) if self.backoff else self.delay


DEFAULT_RETRY_OPTIONS = RetryOptions()
# Generous, for pulling images.
INSTALLER_RETRY_OPTIONS = RetryOptions(attempts=500, delay=0.25, backoff=False)


class RetryError(Exception):
    """Every attempt failed; ``errors`` holds each attempt's error."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = tuple(errors)
        lines = "\n".join(f"#{i}: {err}" for i, err in enumerate(self.errors, start=1))
        super().__init__(f"All attempts fail:\n{lines}")


class KubeClient(Protocol):
    def create(self, res: Resource) -> Any: ...

    def get(self, res: Resource) -> Resource: ...

    def update(self, res: Resource) -> Any: ...

    def delete(self, res: Resource) -> Any: ...

    def list_resources(self, gvr: GroupVersionResource) -> Any: ...


def retry(fn: Callable[[], T], options: Optional[RetryOptions] = None) -> T:
    """Call fn until it returns, at most ``attempts`` times."""
    opts = options or DEFAULT_RETRY_OPTIONS
    if opts.attempts < 1:
        raise ValueError("retry needs at least one attempt")
    errors: List[BaseException] = []
    for attempt in range(opts.attempts):
        try:
            return fn()
        except Exception as exc:
            errors.append(exc)
            if attempt < opts.attempts - 1:
                opts.sleep(opts.delay_for(attempt))
    raise RetryError(errors) from errors[-1]


def _metadata(res: Resource) -> Dict[str, Any]:
    meta = res.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        res["metadata"] = meta
    return meta


def _resource_version(res: Resource) -> str:
    meta = res.get("metadata")
    value = meta.get("resourceVersion") if isinstance(meta, dict) else None
    return value if isinstance(value, str) else ""


def _set_resource_version(res: Resource, version: str) -> None:
    meta = _metadata(res)
    if version:
        meta["resourceVersion"] = version
    else:
        meta.pop("resourceVersion", None)


def update_resource_version(client: KubeClient, res: Resource) -> None:
    """Copy the server's resource version onto the resource."""
    current = client.get(copy.deepcopy(res))
    _set_resource_version(res, _resource_version(current))


def _cancelled(options: RetryOptions) -> bool:
    return options.cancelled is not None and options.cancelled()


def wait_for_not_exist(client: KubeClient, res: Resource, options: Optional[RetryOptions] = None) -> None:
    """Wait until the server no longer knows the resource."""
    opts = options or INSTALLER_RETRY_OPTIONS

    def check() -> None:
        if _cancelled(opts):
            return
        try:
            client.get(copy.deepcopy(res))
        except Exception as exc:
            if is_not_found(exc):
                return
            raise
        raise RuntimeError(f"resource {name_of(res)} still exists")

    retry(check, opts)


def creation_function(
    client: KubeClient,
    res: Resource,
    policy: CreationPolicy = CreationPolicy.RETURN_ERRORS,
    options: Optional[RetryOptions] = None,
) -> Callable[[], None]:
    """A function that creates the resource according to the policy."""
    opts = options or INSTALLER_RETRY_OPTIONS
    res_copy = copy.deepcopy(res)

    def return_errors() -> None:
        client.create(copy.deepcopy(res))

    def ignore_on_exists() -> None:
        try:
            client.create(res_copy)
        except Exception as exc:
            if not is_already_exists(exc):
                raise

    def create_or_update() -> bool:
        """Create, else update; False if the update hit an immutable field."""
        try:
            client.create(res_copy)
            return True
        except Exception as exc:
            if not is_already_exists(exc):
                raise
        update_resource_version(client, res_copy)
        try:
            client.update(res_copy)
            return True
        except Exception as exc:
            if policy is not CreationPolicy.FORCE_UPDATE_ON_EXISTS or not is_immutable_error(exc):
                raise
        return False

    def update_on_exists() -> None:
        create_or_update()

    def force_update_on_exists() -> None:
        if create_or_update():
            return
        client.delete(res_copy)
        wait_for_not_exist(client, res_copy, opts)
        _set_resource_version(res_copy, "")
        client.create(res_copy)

    policy = CreationPolicy(policy)
    if policy is CreationPolicy.IGNORE_ON_EXISTS:
        return ignore_on_exists
    if policy is CreationPolicy.UPDATE_ON_EXISTS:
        return update_on_exists
    if policy is CreationPolicy.FORCE_UPDATE_ON_EXISTS:
        return force_update_on_exists
    return return_errors


def _lookup(api_version: str, kind: str, name: str, namespace: str = "") -> Resource:
    meta: Dict[str, Any] = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    return {"apiVersion": api_version, "kind": kind, "metadata": meta}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _conditions(obj: Resource) -> List[Dict[str, Any]]:
    conditions = _as_dict(obj.get("status")).get("conditions")
    return [c for c in conditions if isinstance(c, dict)] if isinstance(conditions, list) else []


def wait_for_crd(client: KubeClient, crd_name: str, options: Optional[RetryOptions] = None) -> None:
    """Wait until the CRD is established and its resources can be listed."""
    opts = options or INSTALLER_RETRY_OPTIONS

    def check() -> None:
        if _cancelled(opts):
            return
        try:
            crd = client.get(_lookup("apiextensions.k8s.io/v1", "CustomResourceDefinition", crd_name))
        except Exception as exc:
            raise RuntimeError(f"lookup crd {crd_name}: {exc}") from exc
        if not any(c.get("type") == "Established" for c in _conditions(crd)):
            raise RuntimeError(f"crd {crd_name} exists but not yet established by kube")
        spec = _as_dict(crd.get("spec"))
        versions = spec.get("versions")
        if not isinstance(versions, list) or not versions or not isinstance(versions[0], dict):
            raise RuntimeError(f"crd {crd_name} declares no versions")
        gvr = GroupVersionResource(
            group=str(spec.get("group", "")),
            version=str(versions[0].get("name", "")),
            resource=str(_as_dict(spec.get("names")).get("plural", "")),
        )
        client.list_resources(gvr)
        logger.info("registered crd name=%s", name_of(crd))

    retry(check, opts)


def wait_for_deployment_replica(
    client: KubeClient, name: str, namespace: str, options: Optional[RetryOptions] = None
) -> None:
    """Wait until the deployment has a ready replica, unless it wants none."""
    opts = options or INSTALLER_RETRY_OPTIONS

    def check() -> None:
        if _cancelled(opts):
            return
        try:
            deployment = client.get(_lookup("apps/v1", "Deployment", name, namespace))
        except Exception as exc:
            raise RuntimeError(f"lookup deployment {name}.{namespace}: {exc}") from exc
        replicas = _as_dict(deployment.get("spec")).get("replicas")
        if replicas is not None and replicas == 0:
            return
        ready = _as_dict(deployment.get("status")).get("readyReplicas") or 0
        if ready < 1:
            conditions = _conditions(deployment)
            condition = conditions[0] if conditions else {}
            raise RuntimeError(
                f"no ready replicas for deployment {namespace}.{name} with condition {condition!r}"
            )
        logger.info("deployment %s.%s ready", namespace, name)

    retry(check, opts)


def wait_for_job_complete(
    client: KubeClient, name: str, namespace: str, options: Optional[RetryOptions] = None
) -> None:
    """Wait until the job has a completion time and a Complete condition."""
    opts = options or INSTALLER_RETRY_OPTIONS

    def check() -> None:
        if _cancelled(opts):
            return
        try:
            job = client.get(_lookup("batch/v1", "Job", name, namespace))
        except Exception as exc:
            raise RuntimeError(f"lookup job {name}.{namespace}: {exc}") from exc
        conditions = _conditions(job)
        if _as_dict(job.get("status")).get("completionTime") is not None:
            if any(c.get("type") == "Complete" for c in conditions):
                logger.info("job %s.%s complete", namespace, name)
                return
        condition = conditions[0] if conditions else {}
        raise RuntimeError(
            f"no successful runs of job {namespace}.{name} with condition {condition!r}"
        )

    retry(check, opts)
"""Chart installation through a Helm client whose cluster actions are injected."""

from __future__ import annotations

import copy
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, IO, Iterable, List, Optional, Protocol, Tuple

import yaml

from kinstallutils.errors import is_not_found

logger = logging.getLogger(__name__)

Values = Dict[str, Any]


class ReleaseAlreadyInstalledError(Exception):
    """The release to install already exists in the namespace."""

    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(
            f"The helm release you are trying to install ({name}) appears"
            f" to already exist in {namespace}"
        )
        self.name = name
        self.namespace = namespace


@dataclass
class InstallerConfig:
    """What to install and how."""

    dry_run: bool = False
    create_namespace: bool = False
    verbose: bool = False
    install_namespace: str = ""
    release_name: str = ""
    # a local file path or an http(s) address
    release_uri: str = ""
    values_files: List[str] = field(default_factory=list)
    extra_values: Optional[Values] = None
    pre_install_message: str = ""
    post_install_message: str = ""


class ActionConfigFactory(Protocol):
    def new_action_config_from_file(self, kube_config: str, kube_context: str, namespace: str) -> Tuple[Any, Any]:
        """An action configuration and env settings from a kubeconfig file."""

    def new_action_config_from_memory(self, config: Any, namespace: str) -> Tuple[Any, Any]:
        """An action configuration and env settings from an in-memory kubeconfig."""


class ActionListFactory(Protocol):
    def release_list(self, action_config: Any, namespace: str) -> Any:
        """A release list runner with set_filter(name) and run()."""


class ChartLoader(Protocol):
    def load(self, archive: IO[bytes]) -> Any:
        """A chart loaded from an archive stream."""


class ResourceFetcher(Protocol):
    def get_resource(self, uri: str) -> IO[bytes]:
        """An open stream over the resource at the URI."""


@dataclass
class HelmFactories:
    """The pieces a HelmClient builds its actions from."""

    action_config_factory: ActionConfigFactory
    action_list_factory: ActionListFactory
    chart_loader: ChartLoader


@dataclass
class InstallAction:
    """A prepared installation; run() hands it to its action configuration."""

    action_config: Any
    release_name: str = ""
    namespace: str = ""
    dry_run: bool = False
    # a dry run does not query the API server
    client_only: bool = False

    def run(self, chart: Any, values: Values) -> Any:
        return self.action_config.run_install(self, chart, values)


@dataclass
class UninstallAction:
    """A prepared un-installation of a release by name."""

    action_config: Any

    def run(self, name: str) -> Any:
        return self.action_config.run_uninstall(name)


class HelmClient:
    """Prepares Helm actions against a cluster given by a kubeconfig file or in memory."""

    def __init__(
        self,
        resource_fetcher: ResourceFetcher,
        factories: HelmFactories,
        kube_config: str = "",
        kube_context: str = "",
        config: Any = None,
    ) -> None:
        self._fetcher = resource_fetcher
        self._factories = factories
        self._kube_config = kube_config
        self._kube_context = kube_context
        self._config = config

    @classmethod
    def for_file_config(
        cls, resource_fetcher: ResourceFetcher, factories: HelmFactories, kube_config: str, kube_context: str
    ) -> "HelmClient":
        return cls(resource_fetcher, factories, kube_config=kube_config, kube_context=kube_context)

    @classmethod
    def for_memory_config(cls, resource_fetcher: ResourceFetcher, factories: HelmFactories, config: Any) -> "HelmClient":
        return cls(resource_fetcher, factories, config=config)

    def _action_config_and_settings(self, namespace: str) -> Tuple[Any, Any]:
        factory = self._factories.action_config_factory
        if self._config is not None:
            return factory.new_action_config_from_memory(self._config, namespace)
        return factory.new_action_config_from_file(self._kube_config, self._kube_context, namespace)

    def new_install(self, namespace: str, release_name: str, dry_run: bool) -> Tuple[InstallAction, Any]:
        """An installation action and the env settings it runs with."""
        action_config, settings = self._action_config_and_settings(namespace)
        action = InstallAction(
            action_config=action_config,
            release_name=release_name,
            namespace=namespace,
            dry_run=dry_run,
            client_only=dry_run,
        )
        return action, settings

    def new_uninstall(self, namespace: str) -> UninstallAction:
        action_config, _ = self._action_config_and_settings(namespace)
        return UninstallAction(action_config)

    def download_chart(self, chart_uri: str) -> Any:
        """The chart archive at a file path or http(s) address."""
        reader = self._fetcher.get_resource(chart_uri)
        try:
            return self._factories.chart_loader.load(reader)
        finally:
            close = getattr(reader, "close", None)
            if close is not None:
                close()

    def release_list(self, namespace: str) -> Any:
        action_config, _ = self._action_config_and_settings(namespace)
        return self._factories.action_list_factory.release_list(action_config, namespace)

    def release_exists(self, namespace: str, release_name: str) -> bool:
        runner = self.release_list(namespace)
        runner.set_filter(release_name)
        return any(getattr(rel, "name", None) == release_name for rel in runner.run())


def _coalesce(dst: Values, src: Values, prefix: str) -> Values:
    for name, value in dst.items():
        if value is None:
            src[name] = None
    for name, value in src.items():
        full_key = f"{prefix}.{name}" if prefix else name
        if name in dst and dst[name] is None:
            del dst[name]
        elif name not in dst:
            dst[name] = value
        elif isinstance(value, dict):
            if isinstance(dst[name], dict):
                _coalesce(dst[name], value, full_key)
            else:
                logger.warning("warning: cannot overwrite table with non table for %s (%r)", full_key, value)
        elif isinstance(dst[name], dict) and value is not None:
            logger.warning("warning: destination for %s is a table. Ignoring non-table value (%r)", full_key, value)
    return dst


def coalesce_tables(dst: Optional[Values], src: Optional[Values]) -> Optional[Values]:
    """Merge src into dst, dst taking precedence; a None in dst removes the key."""
    if src is None:
        return copy.deepcopy(dst)
    if dst is None:
        return copy.deepcopy(src)
    return _coalesce(copy.deepcopy(dst), copy.deepcopy(src), "")


def _merge_maps(base: Values, override: Values) -> Values:
    out = dict(base)
    for name, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(name), dict):
            out[name] = _merge_maps(out[name], value)
        else:
            out[name] = value
    return out


def merge_value_files(paths: Optional[Iterable[str]]) -> Values:
    """Deep-merge YAML value files in order, later files winning; '-' reads stdin."""
    merged: Values = {}
    for path in paths or ():
        if path == "-":
            text = sys.stdin.read()
        else:
            with open(path, encoding="utf-8") as handle:
                text = handle.read()
        try:
            current = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"failed to parse {path}: {exc}") from exc
        if current is None:
            current = {}
        if not isinstance(current, dict):
            raise ValueError(f"failed to parse {path}: values must be a mapping")
        merged = _merge_maps(merged, current)
    return merged


def _chart_name(chart: Any) -> str:
    metadata = getattr(chart, "metadata", None)
    if isinstance(metadata, dict):
        return str(metadata.get("name", ""))
    return str(getattr(metadata, "name", "") or "")


class Installer:
    """Installs a chart release, creating its namespace on request."""

    def __init__(self, helm_client: Any, namespace_client: Any, out: Optional[IO[str]] = None) -> None:
        self._helm = helm_client
        self._namespaces = namespace_client
        self._out = out if out is not None else sys.stdout

    def install(self, config: InstallerConfig) -> None:
        namespace = config.install_namespace
        release_name = config.release_name
        if not config.dry_run:
            if self._helm.release_exists(namespace, release_name):
                raise ReleaseAlreadyInstalledError(release_name, namespace)
            if config.create_namespace:
                self._create_namespace(namespace)

        if not config.dry_run and config.pre_install_message:
            self._out.write(config.pre_install_message)
        elif not config.dry_run:
            self._out.write("Starting helm installation\n")

        install_action, _settings = self._helm.new_install(namespace, release_name, config.dry_run)

        if config.verbose:
            print(f"Looking for chart at {config.release_uri}")

        chart = self._helm.download_chart(config.release_uri)
        cli_values = merge_value_files(config.values_files)
        complete_values = coalesce_tables(config.extra_values, cli_values)

        if config.verbose:
            rendered = yaml.safe_dump(complete_values, default_flow_style=False)
            self._out.write(
                f"Installing the {_chart_name(chart)} chart with the following value overrides:\n{rendered}\n"
            )

        release = install_action.run(chart, complete_values)

        if not config.dry_run and config.post_install_message:
            self._out.write(config.post_install_message)
        elif not config.dry_run:
            self._out.write("Successful installation!\n")

        if config.verbose:
            print(f"Successfully ran helm install with release {release_name}")

        if config.dry_run:
            self._out.write(getattr(release, "manifest", "") or "")

    def _create_namespace(self, namespace: str) -> None:
        try:
            self._namespaces.get(namespace)
        except Exception as exc:
            if not is_not_found(exc):
                self._out.write(f"\nUnable to check if namespace {namespace} exists ({exc}). Continuing...\n")
                return
        else:
            return
        self._out.write(f"Creating namespace {namespace}... ")
        try:
            self._namespaces.create({"metadata": {"name": namespace}})
        except Exception as exc:
            self._out.write(f"\nUnable to create namespace {namespace} ({exc}). Continuing...\n")
        else:
            self._out.write("Done.\n")
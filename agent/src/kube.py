from __future__ import annotations

from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

from agent.src.config import AgentConfig


class KubeConfigError(RuntimeError):
    """Raised when Kubernetes client credentials cannot be resolved."""


class EmptyPathError(KubeConfigError):
    """No kubeconfig path was given; callers fall back to in-cluster discovery."""


class KubeConfigReadError(KubeConfigError):
    """The kubeconfig file exists in configuration but could not be read."""


class KubeConfigParseError(KubeConfigError):
    """The kubeconfig file was read but is not a usable kubeconfig."""


class InClusterConfigError(KubeConfigError):
    """The service-account credentials mounted into the pod are unusable."""


def kubeconfig_from_path(kubepath: str) -> client.Configuration:
    """Build a client configuration from the kubeconfig file at *kubepath*.

    Reading and parsing are separate stages so operators can tell a missing
    mount (:class:`KubeConfigReadError`) from a broken file
    (:class:`KubeConfigParseError`).
    """
    if not kubepath:
        raise EmptyPathError("empty path")

    try:
        with open(kubepath, encoding="utf-8") as handle:
            data = handle.read()
    except OSError as exc:
        raise KubeConfigReadError(f"reading kubeconfig at {kubepath}: {exc}") from exc

    stage = f"building rest config from kubeconfig at {kubepath}"
    try:
        config_dict = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise KubeConfigParseError(f"{stage}: {exc}") from exc
    if not isinstance(config_dict, dict):
        raise KubeConfigParseError(f"{stage}: expected a mapping at the document root")

    configuration = client.Configuration()
    try:
        config.load_kube_config_from_dict(
            config_dict=config_dict,
            client_configuration=configuration,
            persist_config=False,
        )
    except (ConfigException, ValueError, TypeError) as exc:
        raise KubeConfigParseError(f"{stage}: {exc}") from exc
    return configuration


def in_cluster_config() -> client.Configuration:
    """Build a client configuration from the pod's service-account mount."""
    configuration = client.Configuration()
    config.load_incluster_config(client_configuration=configuration)
    return configuration


def retrieve_kube_config(log: Any, cfg: AgentConfig) -> client.Configuration:
    """Resolve client credentials: the kubeconfig path when set, in-cluster otherwise.

    Exactly one source is consulted per call.  A non-empty path that fails
    to load is an error; it never falls through to in-cluster discovery.
    """
    try:
        kubeconfig = kubeconfig_from_path(cfg.kubeconfig_path)
    except EmptyPathError:
        kubeconfig = None
    except KubeConfigError as exc:
        raise type(exc)(f"retrieving kube config from path: {exc}") from exc

    if kubeconfig is not None:
        log.debug("using kube config from %s", cfg.kubeconfig_path)
        return kubeconfig

    try:
        configuration = in_cluster_config()
    except ConfigException as exc:
        raise InClusterConfigError(f"retrieving in node kube config: {exc}") from exc
    log.debug("using in node kube config")
    return configuration


def build_core_api(configuration: client.Configuration) -> CoreV1Api:
    """Return a CoreV1 API client bound to *configuration*."""
    return client.CoreV1Api(api_client=client.ApiClient(configuration=configuration))

from __future__ import annotations

import ipaddress
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError

LOGGER = logging.getLogger(__name__)

HOSTNAME_LABEL = "kubernetes.io/hostname"
REGION_LABELS = ("topology.kubernetes.io/region", "failure-domain.beta.kubernetes.io/region")
ZONE_LABELS = ("topology.kubernetes.io/zone", "failure-domain.beta.kubernetes.io/zone")
POOL_LABELS = (
    "cloud.google.com/gke-nodepool",
    "eks.amazonaws.com/nodegroup",
    "alpha.eksctl.io/nodegroup-name",
    "karpenter.sh/nodepool",
    "kubernetes.azure.com/agentpool",
    "node.kubernetes.io/pool",
)
CLOUD_UNKNOWN = "unknown"
_PROVIDER_SCHEMES = {"aws": "aws", "gce": "gcp", "azure": "azure"}


class NodeResolutionError(RuntimeError):
    """Raised when the node this process runs on cannot be resolved."""


class NodeNotFoundError(NodeResolutionError):
    """No node matched the requested name or hostname."""


@dataclass(frozen=True)
class Node:
    """Descriptor of the node the agent is running on.

    Built from the ``v1.Node`` object so later stages never need to inspect
    raw API objects.
    """

    name: str
    instance: str
    cloud: str
    provider_id: str
    pool: str = ""
    region: str = ""
    zone: str = ""
    external_ips: tuple[ipaddress.IPv4Address | ipaddress.IPv6Address, ...] = field(
        default_factory=tuple
    )
    internal_ips: tuple[ipaddress.IPv4Address | ipaddress.IPv6Address, ...] = field(
        default_factory=tuple
    )


def parse_provider_id(provider_id: str) -> tuple[str, str]:
    """Split a ``spec.providerID`` into ``(cloud, instance)``.

    The instance is the last path segment, which is the instance ID on AWS,
    the VM name on GCE and the VM scale-set member on Azure.
    """
    scheme, separator, rest = provider_id.partition("://")
    cloud = _PROVIDER_SCHEMES.get(scheme.lower())
    if not separator or cloud is None:
        raise NodeResolutionError(f"unsupported cloud provider id: {provider_id!r}")
    instance = rest.rstrip("/").rsplit("/", 1)[-1]
    if not instance:
        raise NodeResolutionError(f"provider id has no instance segment: {provider_id!r}")
    return cloud, instance


def _first_label(labels: dict[str, str], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = labels.get(key)
        if value:
            return value
    return ""


def _addresses(raw_node: Any, address_type: str) -> tuple[Any, ...]:
    status = getattr(raw_node, "status", None)
    result = []
    for address in getattr(status, "addresses", None) or []:
        if getattr(address, "type", None) != address_type:
            continue
        try:
            result.append(ipaddress.ip_address(address.address))
        except ValueError:
            LOGGER.debug("Skipping unparsable %s address %r", address_type, address.address)
    return tuple(result)


class NodeExplorer:
    """Resolves the Kubernetes node this process is scheduled on.

    With an explicit ``node_name`` the node is read directly.  Otherwise the
    local hostname is matched against the ``kubernetes.io/hostname`` label,
    which the kubelet sets on every node.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        node_name: str = "",
        develop_mode: bool = False,
        hostname_fn: Callable[[], str] = socket.gethostname,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.core_api = core_api
        self.node_name = node_name
        self.develop_mode = develop_mode
        self.hostname_fn = hostname_fn
        self.logger = logger or LOGGER

    def _read_by_name(self, name: str) -> Any:
        try:
            return self.core_api.read_node(name=name)
        except ApiException as exc:
            if exc.status == 404:
                raise NodeNotFoundError(f"node {name!r} not found") from exc
            raise NodeResolutionError(f"reading node {name!r}: {exc.reason}") from exc
        except (HTTPError, OSError) as exc:
            raise NodeResolutionError(f"reading node {name!r}: {exc}") from exc

    def _find_by_hostname(self, hostname: str) -> Any:
        selector = f"{HOSTNAME_LABEL}={hostname}"
        try:
            nodes = self.core_api.list_node(label_selector=selector)
        except ApiException as exc:
            raise NodeResolutionError(
                f"listing nodes with {selector}: {exc.reason}"
            ) from exc
        except (HTTPError, OSError) as exc:
            raise NodeResolutionError(f"listing nodes with {selector}: {exc}") from exc

        items = getattr(nodes, "items", None) or []
        if not items:
            raise NodeNotFoundError(f"no node labelled {selector}")
        if len(items) > 1:
            names = ", ".join(sorted(item.metadata.name for item in items))
            raise NodeResolutionError(f"{len(items)} nodes labelled {selector}: {names}")
        return items[0]

    def get_node(self) -> Node:
        """Return the descriptor of the current node.

        Raises :class:`NodeResolutionError` (or :class:`NodeNotFoundError`)
        on any failure; nothing here is retried.
        """
        if self.node_name:
            raw_node = self._read_by_name(self.node_name)
        else:
            hostname = self.hostname_fn()
            self.logger.debug("node name not set, looking up node by hostname %s", hostname)
            raw_node = self._find_by_hostname(hostname)
        return self.describe(raw_node)

    def describe(self, raw_node: Any) -> Node:
        """Convert a ``v1.Node`` into a :class:`Node` descriptor."""
        metadata = getattr(raw_node, "metadata", None)
        name = getattr(metadata, "name", None) or ""
        labels = dict(getattr(metadata, "labels", None) or {})
        provider_id = getattr(getattr(raw_node, "spec", None), "provider_id", None) or ""

        try:
            cloud, instance = parse_provider_id(provider_id)
        except NodeResolutionError:
            if not self.develop_mode:
                raise
            self.logger.warning(
                "node %s has unsupported provider id %r; accepted in develop mode",
                name,
                provider_id,
            )
            cloud, instance = CLOUD_UNKNOWN, name

        return Node(
            name=name,
            instance=instance,
            cloud=cloud,
            provider_id=provider_id,
            pool=_first_label(labels, POOL_LABELS),
            region=_first_label(labels, REGION_LABELS),
            zone=_first_label(labels, ZONE_LABELS),
            external_ips=_addresses(raw_node, "ExternalIP"),
            internal_ips=_addresses(raw_node, "InternalIP"),
        )

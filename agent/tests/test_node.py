from __future__ import annotations

import ipaddress
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, NewConnectionError

from agent.src.node import (
    CLOUD_UNKNOWN,
    Node,
    NodeExplorer,
    NodeNotFoundError,
    NodeResolutionError,
    parse_provider_id,
)


def make_node(
    name: str = "worker-1",
    provider_id: str | None = "aws:///us-east-1a/i-0abc123",
    labels: dict[str, str] | None = None,
    addresses: list[tuple[str, str]] | None = None,
) -> SimpleNamespace:
    if labels is None:
        labels = {
            "topology.kubernetes.io/region": "us-east-1",
            "topology.kubernetes.io/zone": "us-east-1a",
            "eks.amazonaws.com/nodegroup": "public",
        }
    if addresses is None:
        addresses = [
            ("InternalIP", "10.0.0.12"),
            ("ExternalIP", "203.0.113.7"),
            ("Hostname", "ip-10-0-0-12.ec2.internal"),
        ]
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels),
        spec=SimpleNamespace(provider_id=provider_id),
        status=SimpleNamespace(
            addresses=[SimpleNamespace(type=t, address=a) for t, a in addresses]
        ),
    )


class FakeCoreApi:
    def __init__(
        self,
        nodes: list[SimpleNamespace] | None = None,
        read_error: Exception | None = None,
        list_error: Exception | None = None,
    ) -> None:
        self.nodes = nodes or []
        self.read_error = read_error
        self.list_error = list_error
        self.read_calls: list[str] = []
        self.selectors: list[str] = []

    def read_node(self, name: str) -> SimpleNamespace:
        self.read_calls.append(name)
        if self.read_error is not None:
            raise self.read_error
        for node in self.nodes:
            if node.metadata.name == name:
                return node
        raise ApiException(status=404, reason="Not Found")

    def list_node(self, label_selector: str) -> SimpleNamespace:
        self.selectors.append(label_selector)
        if self.list_error is not None:
            raise self.list_error
        hostname = label_selector.split("=", 1)[1]
        items = [
            node
            for node in self.nodes
            if node.metadata.labels.get("kubernetes.io/hostname") == hostname
        ]
        return SimpleNamespace(items=items)


def _explorer(api: Any, **kwargs: Any) -> NodeExplorer:
    kwargs.setdefault("hostname_fn", lambda: "ip-10-0-0-12")
    return NodeExplorer(api, **kwargs)


class TestParseProviderId:
    @pytest.mark.parametrize(
        ("provider_id", "cloud", "instance"),
        [
            ("aws:///us-east-1a/i-0abc123", "aws", "i-0abc123"),
            ("gce://my-project/us-central1-b/gke-pool-1-abcd", "gcp", "gke-pool-1-abcd"),
            (
                "azure:///subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/"
                "virtualMachineScaleSets/vmss/virtualMachines/3",
                "azure",
                "3",
            ),
        ],
    )
    def test_known_providers(self, provider_id: str, cloud: str, instance: str) -> None:
        assert parse_provider_id(provider_id) == (cloud, instance)

    @pytest.mark.parametrize("provider_id", ["", "kind://docker/kind/kind-worker", "i-123", "aws://"])
    def test_unsupported_provider_ids(self, provider_id: str) -> None:
        with pytest.raises(NodeResolutionError):
            parse_provider_id(provider_id)


class TestGetNodeByName:
    def test_reads_named_node_and_builds_descriptor(self) -> None:
        api = FakeCoreApi(nodes=[make_node()])

        node = _explorer(api, node_name="worker-1").get_node()

        assert api.read_calls == ["worker-1"]
        assert api.selectors == []
        assert node == Node(
            name="worker-1",
            instance="i-0abc123",
            cloud="aws",
            provider_id="aws:///us-east-1a/i-0abc123",
            pool="public",
            region="us-east-1",
            zone="us-east-1a",
            external_ips=(ipaddress.ip_address("203.0.113.7"),),
            internal_ips=(ipaddress.ip_address("10.0.0.12"),),
        )

    def test_missing_named_node_raises_not_found(self) -> None:
        api = FakeCoreApi(nodes=[])

        with pytest.raises(NodeNotFoundError, match="'worker-9' not found"):
            _explorer(api, node_name="worker-9").get_node()

    def test_api_error_is_wrapped(self) -> None:
        api = FakeCoreApi(read_error=ApiException(status=403, reason="Forbidden"))

        with pytest.raises(NodeResolutionError, match="Forbidden") as excinfo:
            _explorer(api, node_name="worker-1").get_node()

        assert not isinstance(excinfo.value, NodeNotFoundError)
        assert isinstance(excinfo.value.__cause__, ApiException)


class TestGetNodeByHostname:
    def test_looks_up_node_by_hostname_label(self) -> None:
        labelled = make_node(
            name="ip-10-0-0-12.ec2.internal",
            labels={"kubernetes.io/hostname": "ip-10-0-0-12"},
        )
        api = FakeCoreApi(nodes=[labelled, make_node(name="other", labels={})])

        node = _explorer(api).get_node()

        assert api.selectors == ["kubernetes.io/hostname=ip-10-0-0-12"]
        assert api.read_calls == []
        assert node.name == "ip-10-0-0-12.ec2.internal"

    def test_no_match_raises_not_found(self) -> None:
        api = FakeCoreApi(nodes=[make_node(labels={"kubernetes.io/hostname": "elsewhere"})])

        with pytest.raises(NodeNotFoundError):
            _explorer(api).get_node()

    def test_several_matches_are_ambiguous(self) -> None:
        labels = {"kubernetes.io/hostname": "ip-10-0-0-12"}
        api = FakeCoreApi(nodes=[make_node(name="a", labels=labels), make_node(name="b", labels=labels)])

        with pytest.raises(NodeResolutionError, match="2 nodes labelled") as excinfo:
            _explorer(api).get_node()

        assert not isinstance(excinfo.value, NodeNotFoundError)

    def test_list_error_is_wrapped(self) -> None:
        api = FakeCoreApi(list_error=ApiException(status=500, reason="boom"))

        with pytest.raises(NodeResolutionError, match="boom"):
            _explorer(api).get_node()


class TestDescribe:
    def test_falls_back_to_deprecated_topology_labels(self) -> None:
        raw = make_node(
            provider_id="gce://proj/europe-west1-b/gke-node",
            labels={
                "failure-domain.beta.kubernetes.io/region": "europe-west1",
                "failure-domain.beta.kubernetes.io/zone": "europe-west1-b",
                "cloud.google.com/gke-nodepool": "static-ip",
            },
        )

        node = _explorer(FakeCoreApi()).describe(raw)

        assert node.cloud == "gcp"
        assert node.region == "europe-west1"
        assert node.zone == "europe-west1-b"
        assert node.pool == "static-ip"

    def test_skips_unparsable_addresses(self) -> None:
        raw = make_node(addresses=[("ExternalIP", "not-an-ip"), ("ExternalIP", "2001:db8::1")])

        node = _explorer(FakeCoreApi()).describe(raw)

        assert node.external_ips == (ipaddress.ip_address("2001:db8::1"),)
        assert node.internal_ips == ()

    def test_handles_missing_status_and_labels(self) -> None:
        raw = SimpleNamespace(
            metadata=SimpleNamespace(name="bare", labels=None),
            spec=SimpleNamespace(provider_id="aws:///eu-west-1a/i-1"),
            status=None,
        )

        node = _explorer(FakeCoreApi()).describe(raw)

        assert node.pool == ""
        assert node.region == ""
        assert node.external_ips == ()

    def test_unknown_provider_fails_outside_develop_mode(self) -> None:
        raw = make_node(provider_id="kind://docker/kind/kind-worker")

        with pytest.raises(NodeResolutionError, match="unsupported cloud provider"):
            _explorer(FakeCoreApi()).describe(raw)

    def test_unknown_provider_is_accepted_in_develop_mode(self) -> None:
        raw = make_node(name="kind-worker", provider_id=None)

        node = _explorer(FakeCoreApi(), develop_mode=True).describe(raw)

        assert node.cloud == CLOUD_UNKNOWN
        assert node.instance == "kind-worker"
        assert node.provider_id == ""


class TestUnreachableApiServer:
    def test_read_connection_failure_is_wrapped(self) -> None:
        refused = MaxRetryError(None, "/api/v1/nodes/worker-1", reason="Connection refused")
        api = FakeCoreApi(read_error=refused)

        with pytest.raises(NodeResolutionError, match="reading node 'worker-1'") as excinfo:
            _explorer(api, node_name="worker-1").get_node()

        assert excinfo.value.__cause__ is refused

    def test_list_connection_failure_is_wrapped(self) -> None:
        refused = MaxRetryError(None, "/api/v1/nodes", reason="Connection refused")
        api = FakeCoreApi(list_error=refused)

        with pytest.raises(NodeResolutionError, match="listing nodes with") as excinfo:
            _explorer(api).get_node()

        assert not isinstance(excinfo.value, NodeNotFoundError)
        assert excinfo.value.__cause__ is refused

    def test_socket_errors_are_wrapped(self) -> None:
        api = FakeCoreApi(read_error=NewConnectionError(None, "Failed to establish a new connection"))

        with pytest.raises(NodeResolutionError):
            _explorer(api, node_name="worker-1").get_node()

    def test_timeout_is_wrapped(self) -> None:
        api = FakeCoreApi(list_error=TimeoutError("timed out"))

        with pytest.raises(NodeResolutionError, match="timed out"):
            _explorer(api).get_node()

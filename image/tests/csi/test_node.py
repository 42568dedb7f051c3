# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import pytest
from grpc import StatusCode  # type: ignore
from grpc.aio import AbortError  # type: ignore

from kube_listener.csi.node import Node
from kube_listener.csi.spec.csi_pb2 import (
    NodeGetCapabilitiesRequest,
    NodeGetInfoRequest,
    NodePublishVolumeRequest,
    NodeUnpublishVolumeRequest,
)
from kube_listener.shared.kubernetes import ObjectRef
from tests.fakes import FakeClient, FakeContext

# ---------------------------------------------------------------------------- #

POD = ObjectRef("Pod", "web-0", "ns1")
PV = ObjectRef("PersistentVolume", "pvc-1234")
POD_LISTENERS = ObjectRef("PodListeners", "pod-pod-uid", "ns1")

BY_NAME = {"listeners.kube-listener.io/listener-name": "web"}
BY_CLASS = {"listeners.kube-listener.io/listener-class": "public"}


def _add_pod(client: FakeClient, node_name: Optional[str] = "node-a") -> None:

    spec: dict[str, Any] = {
        "containers": [
            {
                "name": "web",
                "ports": [
                    {"name": "http", "containerPort": 8080, "protocol": "TCP"},
                    {"containerPort": 9090},
                ],
            }
        ],
        "volumes": [
            {"name": "listener", "persistentVolumeClaim": {"claimName": "data"}}
        ],
    }

    if node_name is not None:
        spec["nodeName"] = node_name

    client.add(
        {
            "kind": "Pod",
            "metadata": {"name": "web-0", "namespace": "ns1", "uid": "pod-uid"},
            "spec": spec,
        }
    )


def _add_volume(client: FakeClient) -> None:

    client.add(
        {
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": "data",
                "namespace": "ns1",
                "labels": {"app": "web"},
            },
        }
    )

    client.add_pinned_pv("pvc-1234", "node-a", claim=("ns1", "data"))


def _publish_request(
    target_path: Path, selector: Mapping[str, str]
) -> NodePublishVolumeRequest:

    return NodePublishVolumeRequest(
        volume_id="pvc-1234",
        target_path=str(target_path),
        volume_context={
            "csi.storage.k8s.io/pod.namespace": "ns1",
            "csi.storage.k8s.io/pod.name": "web-0",
            **selector,
        },
    )


def _node(client: FakeClient) -> Node:
    return Node(client, "node-a")  # type: ignore


def _files(root: Path) -> dict[str, str]:
    """Regular files under `root`, relative path --> contents."""
    return {
        str(path.relative_to(root)): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file() and not path.is_symlink()
    }


# ---------------------------------------------------------------------------- #


class TestNodePublishVolume:
    @pytest.mark.asyncio
    async def test_node_ports(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_node("node-a", external_ip="1.2.3.4", hostname="node-a")
        listener = client.add_listener(
            "web",
            "ns1",
            class_name="public",
            ports=[
                {"name": "http", "port": 8080},
                {"name": "metrics", "port": 9090},
            ],
            status={
                "serviceName": "web",
                "ingressAddresses": [
                    {
                        "address": "5.6.7.8",
                        "addressType": "IP",
                        "ports": {"http": 30080, "metrics": 30090},
                    }
                ],
                "nodePorts": {"http": 30080, "metrics": 30090},
            },
        )

        _add_pod(client)
        _add_volume(client)

        target = tmp_path / "target"

        await _node(client).NodePublishVolume(
            _publish_request(target, BY_NAME), context
        )

        # addresses of the pod's own node are written

        assert _files(target) == {
            "addresses/1.2.3.4/address": "1.2.3.4",
            "addresses/1.2.3.4/ports/http": "30080",
            "addresses/1.2.3.4/ports/metrics": "30090",
        }

        assert (target / "default-address").is_symlink()
        assert (target / "default-address").readlink() == Path(
            "addresses/1.2.3.4"
        )

        # objects are labelled

        pv_labels = client.objects[PV]["metadata"]["labels"]
        assert pv_labels == {
            "listeners.kube-listener.io/listener-namespace": "ns1",
            "listeners.kube-listener.io/listener-name": "web",
        }

        listener_uid = listener["metadata"]["uid"]
        pod_labels = client.objects[POD]["metadata"]["labels"]
        assert pod_labels[f"listeners.kube-listener.io/mnt.{listener_uid}"] == (
            "true"
        )

        # addresses are recorded

        assert client.objects[POD_LISTENERS]["spec"]["listeners"] == {
            "listener": {
                "scope": "Node",
                "ingressAddresses": [
                    {
                        "address": "1.2.3.4",
                        "addressType": "IP",
                        "ports": {"http": 30080, "metrics": 30090},
                    }
                ],
            }
        }

    @pytest.mark.asyncio
    async def test_cluster_addresses(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("internal", "ClusterIP")
        client.add_listener(
            "web",
            "ns1",
            class_name="internal",
            status={
                "serviceName": "web",
                "ingressAddresses": [
                    {
                        "address": "web.ns1.svc.cluster.local",
                        "addressType": "Hostname",
                        "ports": {"http": 8080},
                    }
                ],
            },
        )

        _add_pod(client, node_name=None)
        _add_volume(client)

        target = tmp_path / "target"

        await _node(client).NodePublishVolume(
            _publish_request(target, BY_NAME), context
        )

        assert _files(target) == {
            "addresses/web.ns1.svc.cluster.local/address": (
                "web.ns1.svc.cluster.local"
            ),
            "addresses/web.ns1.svc.cluster.local/ports/http": "8080",
        }

        record = client.objects[POD_LISTENERS]["spec"]["listeners"]
        assert record["listener"]["scope"] == "Cluster"

    @pytest.mark.asyncio
    async def test_node_ports_without_ports(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_node("node-a", external_ip="1.2.3.4")
        client.add_listener(
            "web",
            "ns1",
            class_name="public",
            status={
                "serviceName": "web",
                "ingressAddresses": [
                    {"address": "5.6.7.8", "addressType": "IP", "ports": {}}
                ],
                "nodePorts": {},
            },
        )

        _add_pod(client)
        _add_volume(client)

        target = tmp_path / "target"

        await _node(client).NodePublishVolume(
            _publish_request(target, BY_NAME), context
        )

        # still the pod's own node, not the addresses in the status

        assert _files(target) == {"addresses/1.2.3.4/address": "1.2.3.4"}

        record = client.objects[POD_LISTENERS]["spec"]["listeners"]
        assert record["listener"]["scope"] == "Node"

    @pytest.mark.asyncio
    async def test_no_address_yet(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("internal", "ClusterIP")
        client.add_listener("web", "ns1", class_name="internal")

        _add_pod(client)
        _add_volume(client)

        target = tmp_path / "target"

        with pytest.raises(AbortError):
            await _node(client).NodePublishVolume(
                _publish_request(target, BY_NAME), context
            )

        assert context.code == StatusCode.UNAVAILABLE
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_listener_is_created_for_class(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_node("node-a", external_ip="1.2.3.4")

        _add_pod(client)
        _add_volume(client)

        # no addresses until the Listener is reconciled

        with pytest.raises(AbortError):
            await _node(client).NodePublishVolume(
                _publish_request(tmp_path / "target", BY_CLASS), context
            )

        assert context.code == StatusCode.UNAVAILABLE

        listener = client.objects[ObjectRef("Listener", "data", "ns1")]

        assert listener["metadata"]["labels"] == {"app": "web"}
        assert listener["metadata"]["ownerReferences"][0]["name"] == "pvc-1234"
        assert listener["spec"] == {
            "className": "public",
            "ports": [
                {"name": "http", "port": 8080, "protocol": "TCP"},
                {"name": "port-9090", "port": 9090},
            ],
            "publishNotReadyAddresses": True,
        }

        pv_labels = client.objects[PV]["metadata"]["labels"]
        assert pv_labels["listeners.kube-listener.io/listener-name"] == "data"

        # once reconciled, publishing succeeds

        listener["status"] = {"nodePorts": {"http": 31000, "port-9090": 31001}}

        context = FakeContext()

        await _node(client).NodePublishVolume(
            _publish_request(tmp_path / "target", BY_CLASS), context
        )

        assert _files(tmp_path / "target") == {
            "addresses/1.2.3.4/address": "1.2.3.4",
            "addresses/1.2.3.4/ports/http": "31000",
            "addresses/1.2.3.4/ports/port-9090": "31001",
        }

    @pytest.mark.asyncio
    async def test_unscheduled_pod(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_listener(
            "web", "ns1", class_name="public", status={"nodePorts": {"a": 1}}
        )

        _add_pod(client, node_name=None)
        _add_volume(client)

        with pytest.raises(AbortError):
            await _node(client).NodePublishVolume(
                _publish_request(tmp_path / "target", BY_NAME), context
            )

        assert context.code == StatusCode.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_node_without_addresses(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_listener(
            "web", "ns1", class_name="public", status={"nodePorts": {"a": 1}}
        )
        client.add_node("node-a")

        _add_pod(client)
        _add_volume(client)

        with pytest.raises(AbortError):
            await _node(client).NodePublishVolume(
                _publish_request(tmp_path / "target", BY_NAME), context
            )

        assert context.code == StatusCode.FAILED_PRECONDITION

    @pytest.mark.parametrize(
        "volume_context",
        [
            {"listeners.kube-listener.io/listener-name": "web"},
            {
                "csi.storage.k8s.io/pod.namespace": "ns1",
                "csi.storage.k8s.io/pod.name": "web-0",
            },
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_volume_context(
        self,
        client: FakeClient,
        context: FakeContext,
        tmp_path: Path,
        volume_context: Mapping[str, str],
    ) -> None:

        request = NodePublishVolumeRequest(
            volume_id="pvc-1234",
            target_path=str(tmp_path / "target"),
            volume_context=volume_context,
        )

        with pytest.raises(AbortError):
            await _node(client).NodePublishVolume(request, context)

        assert context.code == StatusCode.INVALID_ARGUMENT


# ---------------------------------------------------------------------------- #


class TestNodeUnpublishVolume:
    @pytest.mark.asyncio
    async def test_round_trip(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        client.add_listener_class("public", "NodePort")
        client.add_node("node-a", external_ip="1.2.3.4")
        client.add_listener(
            "web",
            "ns1",
            class_name="public",
            status={"nodePorts": {"http": 30080}},
        )

        _add_pod(client)
        _add_volume(client)

        target = tmp_path / "target"
        node = _node(client)

        await node.NodePublishVolume(_publish_request(target, BY_NAME), context)
        assert target.exists()

        await node.NodeUnpublishVolume(
            NodeUnpublishVolumeRequest(
                volume_id="pvc-1234", target_path=str(target)
            ),
            context,
        )

        assert not target.exists()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_never_published(
        self, client: FakeClient, context: FakeContext, tmp_path: Path
    ) -> None:

        for _ in range(2):
            await _node(client).NodeUnpublishVolume(
                NodeUnpublishVolumeRequest(
                    volume_id="pvc-1234", target_path=str(tmp_path / "target")
                ),
                context,
            )

        assert context.code is None


# ---------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_node_info(client: FakeClient, context: FakeContext) -> None:

    node = _node(client)

    info = await node.NodeGetInfo(NodeGetInfoRequest(), context)

    assert info.node_id == "node-a"
    assert dict(info.accessible_topology.segments) == {
        "listeners.kube-listener.io/hostname": "node-a"
    }

    capabilities = await node.NodeGetCapabilities(
        NodeGetCapabilitiesRequest(), context
    )

    assert list(capabilities.capabilities) == []


# ---------------------------------------------------------------------------- #

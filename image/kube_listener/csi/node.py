# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from grpc.aio import ServicerContext  # type: ignore

from kube_listener.csi.common import (
    FailedPrecondition,
    Internal,
    InvalidArgument,
    ListenerSelector,
    Unavailable,
    abort_on_csi_error,
    fetch,
    get_listener_class,
    log_grpc,
    require,
)
from kube_listener.csi.pod_dir import (
    UnsafePathComponent,
    remove_pod_dir,
    write_pod_dir,
)
from kube_listener.csi.spec.csi_pb2 import (
    NodeGetCapabilitiesRequest,
    NodeGetCapabilitiesResponse,
    NodeGetInfoRequest,
    NodeGetInfoResponse,
    NodePublishVolumeRequest,
    NodePublishVolumeResponse,
    NodeUnpublishVolumeRequest,
    NodeUnpublishVolumeResponse,
    Topology,
)
from kube_listener.csi.spec.csi_pb2_grpc import NodeServicer
from kube_listener.shared.address import node_primary_addresses
from kube_listener.shared.config import (
    LISTENER_KIND,
    LISTENER_NAME_LABEL,
    LISTENER_NAMESPACE_LABEL,
    NODE_FIELD_MANAGER,
    POD_LISTENERS_KIND,
    POD_NAME_KEY,
    POD_NAMESPACE_KEY,
    TOPOLOGY_NODE_KEY,
    mounted_pod_label,
)
from kube_listener.shared.kubernetes import Client, ObjectRef
from kube_listener.shared.listeners import (
    InvalidListener,
    Listener,
    ListenerIngress,
    ListenerPort,
    ListenerScope,
    listener_body,
    pod_listeners_body,
    pod_listeners_name,
    pod_listeners_patch,
)

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class VolumeContext:
    """What NodePublishVolume() needs from the volume context."""

    pod: ObjectRef
    selector: ListenerSelector

    @staticmethod
    def decode(context: Mapping[str, str]) -> VolumeContext:
        return VolumeContext(
            pod=ObjectRef(
                kind="Pod",
                name=require(context, POD_NAME_KEY),
                namespace=require(context, POD_NAMESPACE_KEY),
            ),
            selector=ListenerSelector.from_volume_context(context),
        )


# ---------------------------------------------------------------------------- #


class Node(NodeServicer):

    client: Client
    node_name: str

    def __init__(self, client: Client, node_name: str) -> None:
        self.client = client
        self.node_name = node_name

    @log_grpc
    async def NodeGetInfo(
        self, request: NodeGetInfoRequest, context: ServicerContext
    ) -> NodeGetInfoResponse:

        return NodeGetInfoResponse(
            node_id=self.node_name,
            max_volumes_per_node=0,  # unlimited
            accessible_topology=Topology(
                segments={TOPOLOGY_NODE_KEY: self.node_name}
            ),
        )

    @log_grpc
    async def NodeGetCapabilities(
        self, request: NodeGetCapabilitiesRequest, context: ServicerContext
    ) -> NodeGetCapabilitiesResponse:

        return NodeGetCapabilitiesResponse(capabilities=[])

    @log_grpc
    @abort_on_csi_error
    async def NodePublishVolume(
        self, request: NodePublishVolumeRequest, context: ServicerContext
    ) -> NodePublishVolumeResponse:

        volume = VolumeContext.decode(request.volume_context)

        pv_ref = ObjectRef("PersistentVolume", request.volume_id)

        pv = await fetch(self.client.get(pv_ref))
        pod = await fetch(self.client.get(volume.pod))

        # get or create Listener

        listener_obj = await self.resolve_listener(volume.selector, pv, pod)

        try:
            listener = Listener.from_obj(listener_obj)
        except InvalidListener as e:
            raise InvalidArgument(
                f"{ObjectRef.from_obj(listener_obj)} is invalid"
            ) from e

        # let the reconciler find this volume's node, and the Service this pod

        await fetch(
            self.client.merge_patch(
                pv_ref,
                {
                    "metadata": {
                        "labels": {
                            LISTENER_NAMESPACE_LABEL: listener.namespace,
                            LISTENER_NAME_LABEL: listener.name,
                        }
                    }
                },
            )
        )

        await fetch(
            self.client.merge_patch(
                volume.pod,
                {"metadata": {"labels": mounted_pod_label(listener.uid)}},
            )
        )

        # determine addresses

        scope, addresses = await self.listener_addresses(listener, pod)

        if not addresses:
            raise Unavailable(
                f"{ObjectRef.from_obj(listener_obj)} has no addresses yet"
            )

        # publish addresses

        await self.record_pod_listeners(pod, pv, scope, addresses)

        try:
            write_pod_dir(Path(request.target_path), addresses)
        except (OSError, UnsafePathComponent) as e:
            raise Internal(f"failed to write {request.target_path}") from e

        return NodePublishVolumeResponse()

    async def resolve_listener(
        self,
        selector: ListenerSelector,
        pv: Mapping[str, Any],
        pod: Mapping[str, Any],
    ) -> dict[str, Any]:

        namespace = pod["metadata"]["namespace"]

        if selector.listener_name is not None:
            return await fetch(
                self.client.get(
                    ObjectRef(LISTENER_KIND, selector.listener_name, namespace)
                )
            )

        assert selector.class_name is not None

        # create a Listener named after the PVC, which goes away with the PV

        claim_ref = (pv.get("spec") or {}).get("claimRef")

        if not claim_ref:
            raise Unavailable(
                f"{ObjectRef.from_obj(pv)} is not bound to a claim yet"
            )

        pvc = await fetch(
            self.client.get(
                ObjectRef(
                    "PersistentVolumeClaim",
                    claim_ref["name"],
                    claim_ref.get("namespace", namespace),
                )
            )
        )

        body = listener_body(
            claim_ref["name"],
            namespace,
            class_name=selector.class_name,
            ports=pod_ports(pod),
            labels=pvc["metadata"].get("labels") or {},
            owner=pv,
        )

        return await fetch(self.client.apply(NODE_FIELD_MANAGER, body))

    async def listener_addresses(
        self, listener: Listener, pod: Mapping[str, Any]
    ) -> tuple[ListenerScope, list[ListenerIngress]]:
        """If the Listener is exposed on node ports, the address of the pod's
        own node, which is more accurate than the Listener's status. Otherwise,
        the addresses in the Listener's status."""

        node_ports = listener.status.node_ports

        if node_ports is None:
            addresses = list(listener.status.ingress_addresses)
            return ListenerScope.CLUSTER, addresses

        listener_ref = ObjectRef(
            LISTENER_KIND, listener.name, listener.namespace
        )

        node_name = (pod.get("spec") or {}).get("nodeName")

        if not node_name:
            raise Unavailable(
                f"{ObjectRef.from_obj(pod)} is not scheduled to a node yet"
            )

        if listener.spec.class_name is None:
            raise InvalidArgument(
                f"{listener_ref} has no class (.spec.className)"
            )

        listener_class = await get_listener_class(
            self.client, listener.spec.class_name
        )

        node = await fetch(self.client.get(ObjectRef("Node", node_name)))

        picked = node_primary_addresses(node).pick(
            listener_class.resolved_preferred_address_type()
        )

        if picked is None:
            raise FailedPrecondition(f"Node {node_name} has no known addresses")

        (address, address_type) = picked

        return ListenerScope.NODE, [
            ListenerIngress(address, address_type, node_ports)
        ]

    async def record_pod_listeners(
        self,
        pod: Mapping[str, Any],
        pv: Mapping[str, Any],
        scope: ListenerScope,
        addresses: Sequence[ListenerIngress],
    ) -> None:

        metadata = pod["metadata"]

        claim_name = ((pv.get("spec") or {}).get("claimRef") or {}).get(
            "name", pv["metadata"]["name"]
        )

        await fetch(self.client.create_if_missing(pod_listeners_body(pod)))

        await fetch(
            self.client.merge_patch(
                ObjectRef(
                    POD_LISTENERS_KIND,
                    pod_listeners_name(metadata["uid"]),
                    metadata["namespace"],
                ),
                pod_listeners_patch(
                    pod_volume_name(pod, claim_name), scope, addresses
                ),
            )
        )

    @log_grpc
    @abort_on_csi_error
    async def NodeUnpublishVolume(
        self, request: NodeUnpublishVolumeRequest, context: ServicerContext
    ) -> NodeUnpublishVolumeResponse:

        try:
            remove_pod_dir(Path(request.target_path))
        except OSError as e:
            raise Internal(f"failed to remove {request.target_path}") from e

        return NodeUnpublishVolumeResponse()

    # The remaining Node RPCs are not part of the service definition, so gRPC
    # answers them with UNIMPLEMENTED.


# ---------------------------------------------------------------------------- #


def pod_ports(pod: Mapping[str, Any]) -> list[ListenerPort]:
    """The ports of all containers of a Pod. Unnamed ports are named after
    their number, and ports whose name was already taken are dropped."""

    ports: dict[str, ListenerPort] = {}

    for container in (pod.get("spec") or {}).get("containers") or []:
        for port in container.get("ports") or []:

            number = port["containerPort"]
            name = port.get("name") or f"port-{number}"

            if name not in ports:
                ports[name] = ListenerPort(
                    name=name, port=number, protocol=port.get("protocol")
                )

    return list(ports.values())


def pod_volume_name(pod: Mapping[str, Any], claim_name: str) -> str:
    """Name of the Pod's volume that is backed by the given PVC, or the name of
    the PVC itself if the Pod has no such volume."""

    pod_name = pod["metadata"]["name"]

    for volume in (pod.get("spec") or {}).get("volumes") or []:

        pvc_source = volume.get("persistentVolumeClaim") or {}

        if pvc_source.get("claimName") == claim_name:
            return volume["name"]

        # generic ephemeral volumes get a PVC named <pod>-<volume>
        ephemeral_claim_name = f"{pod_name}-{volume['name']}"

        if "ephemeral" in volume and ephemeral_claim_name == claim_name:
            return volume["name"]

    return claim_name


# ---------------------------------------------------------------------------- #

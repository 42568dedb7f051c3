# ---------------------------------------------------------------------------- #

from __future__ import annotations

from grpc.aio import ServicerContext  # type: ignore

from kube_listener.csi.common import (
    InvalidArgument,
    ListenerSelector,
    abort_on_csi_error,
    fetch,
    get_listener_class,
    log_grpc,
    require,
)
from kube_listener.csi.spec.csi_pb2 import (
    ControllerGetCapabilitiesRequest,
    ControllerGetCapabilitiesResponse,
    ControllerServiceCapability,
    CreateVolumeRequest,
    CreateVolumeResponse,
    DeleteVolumeRequest,
    DeleteVolumeResponse,
    Volume,
)
from kube_listener.csi.spec.csi_pb2_grpc import ControllerServicer
from kube_listener.shared.config import (
    LISTENER_KIND,
    PVC_NAME_KEY,
    PVC_NAMESPACE_KEY,
)
from kube_listener.shared.kubernetes import Client, ObjectRef
from kube_listener.shared.listeners import ListenerClass, ServiceType

# ---------------------------------------------------------------------------- #


class Controller(ControllerServicer):

    client: Client

    def __init__(self, client: Client) -> None:
        self.client = client

    @log_grpc
    async def ControllerGetCapabilities(
        self,
        request: ControllerGetCapabilitiesRequest,
        context: ServicerContext,
    ) -> ControllerGetCapabilitiesResponse:

        return ControllerGetCapabilitiesResponse(
            capabilities=[
                ControllerServiceCapability(
                    rpc=ControllerServiceCapability.RPC(
                        type=(
                            ControllerServiceCapability.RPC.CREATE_DELETE_VOLUME
                        )
                    )
                )
            ]
        )

    @log_grpc
    @abort_on_csi_error
    async def CreateVolume(
        self, request: CreateVolumeRequest, context: ServicerContext
    ) -> CreateVolumeResponse:

        pvc_name = require(request.parameters, PVC_NAME_KEY)
        pvc_namespace = require(request.parameters, PVC_NAMESPACE_KEY)

        pvc = await fetch(
            self.client.get(
                ObjectRef("PersistentVolumeClaim", pvc_name, pvc_namespace)
            )
        )

        # the PVC annotations select the Listener, and are passed on to every
        # NodePublishVolume() call through the volume context

        annotations = pvc["metadata"].get("annotations") or {}
        selector = ListenerSelector.from_volume_context(annotations)

        listener_class = await self.resolve_listener_class(
            selector, pvc_namespace
        )

        # pin volumes to a node only if their addresses are node-specific and
        # must remain stable

        requirements = request.accessibility_requirements

        if (
            listener_class.service_type is ServiceType.NODE_PORT
            and listener_class.sticky_node_ports
        ):
            topology = list(
                requirements.preferred[:1] or requirements.requisite[:1]
            )
        else:
            topology = []

        return CreateVolumeResponse(
            volume=Volume(
                volume_id=request.name,
                capacity_bytes=0,
                volume_context=annotations,
                accessible_topology=topology,
            )
        )

    async def resolve_listener_class(
        self, selector: ListenerSelector, namespace: str
    ) -> ListenerClass:

        if selector.class_name is not None:
            return await get_listener_class(self.client, selector.class_name)

        assert selector.listener_name is not None

        ref = ObjectRef(LISTENER_KIND, selector.listener_name, namespace)

        listener = await fetch(
            self.client.get(ref), not_found=InvalidArgument
        )

        class_name = (listener.get("spec") or {}).get("className")

        if not class_name:
            raise InvalidArgument(f"{ref} has no class (.spec.className)")

        return await get_listener_class(self.client, class_name)

    @log_grpc
    async def DeleteVolume(
        self, request: DeleteVolumeRequest, context: ServicerContext
    ) -> DeleteVolumeResponse:

        # Volumes are only handles to Listeners, which are deleted along with
        # their PersistentVolume through its owner reference. There is nothing
        # to delete here.

        return DeleteVolumeResponse()

    # The remaining Controller RPCs are not part of the service definition, so
    # gRPC answers them with UNIMPLEMENTED.


# ---------------------------------------------------------------------------- #

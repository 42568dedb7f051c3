# ---------------------------------------------------------------------------- #

from __future__ import annotations

from google.protobuf.wrappers_pb2 import BoolValue
from grpc.aio import ServicerContext  # type: ignore

from kube_listener.csi.common import log_grpc
from kube_listener.csi.spec.csi_pb2 import (
    GetPluginCapabilitiesRequest,
    GetPluginCapabilitiesResponse,
    GetPluginInfoRequest,
    GetPluginInfoResponse,
    PluginCapability,
    ProbeRequest,
    ProbeResponse,
)
from kube_listener.csi.spec.csi_pb2_grpc import IdentityServicer
from kube_listener.shared.config import DRIVER_NAME, VERSION

# ---------------------------------------------------------------------------- #


class Identity(IdentityServicer):
    @log_grpc
    async def GetPluginInfo(
        self, request: GetPluginInfoRequest, context: ServicerContext
    ) -> GetPluginInfoResponse:

        return GetPluginInfoResponse(name=DRIVER_NAME, vendor_version=VERSION)

    @log_grpc
    async def GetPluginCapabilities(
        self, request: GetPluginCapabilitiesRequest, context: ServicerContext
    ) -> GetPluginCapabilitiesResponse:

        def service(type: int) -> PluginCapability:
            return PluginCapability(service=PluginCapability.Service(type=type))

        return GetPluginCapabilitiesResponse(
            capabilities=[
                service(PluginCapability.Service.CONTROLLER_SERVICE),
                service(
                    PluginCapability.Service.VOLUME_ACCESSIBILITY_CONSTRAINTS
                ),
            ]
        )

    @log_grpc
    async def Probe(
        self, request: ProbeRequest, context: ServicerContext
    ) -> ProbeResponse:

        return ProbeResponse(ready=BoolValue(value=True))


# ---------------------------------------------------------------------------- #

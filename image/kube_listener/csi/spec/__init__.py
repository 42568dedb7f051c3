# ---------------------------------------------------------------------------- #
# CSI messages and services, generated from csi.proto on import. Afterwards,
# kube_listener.csi.spec.csi_pb2 and kube_listener.csi.spec.csi_pb2_grpc can be
# imported like regular modules.

from __future__ import annotations

import grpc  # type: ignore

csi_pb2, csi_pb2_grpc = grpc.protos_and_services(
    "kube_listener/csi/spec/csi.proto"
)

# ---------------------------------------------------------------------------- #

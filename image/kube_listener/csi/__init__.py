# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
import os
from math import inf
from pathlib import Path
from signal import SIGTERM
from typing import Optional

import grpc.aio  # type: ignore
from kubernetes_asyncio.client import ApiClient  # type: ignore

from kube_listener.csi.controller import Controller
from kube_listener.csi.identity import Identity
from kube_listener.csi.node import Node
from kube_listener.csi.spec.csi_pb2_grpc import (
    add_ControllerServicer_to_server,
    add_IdentityServicer_to_server,
    add_NodeServicer_to_server,
)
from kube_listener.shared.kubernetes import Client
from kube_listener.shared.util import log

# ---------------------------------------------------------------------------- #


def run_controller(csi_endpoint: Path) -> None:
    asyncio.run(_run_async(csi_endpoint, None))


def run_node(csi_endpoint: Path, node_name: str) -> None:
    asyncio.run(_run_async(csi_endpoint, node_name))


async def _run_async(csi_endpoint: Path, node_name: Optional[str]) -> None:

    async with ApiClient() as api_client:

        client = Client(api_client)

        # set up CSI plugin server

        server = grpc.aio.server()

        add_IdentityServicer_to_server(Identity(), server)

        if node_name is None:
            add_ControllerServicer_to_server(Controller(client), server)
        else:
            add_NodeServicer_to_server(Node(client, node_name), server)

        _bind_unix_socket(server, csi_endpoint)

        # set up signal handler to allow for graceful termination

        asyncio.get_running_loop().add_signal_handler(
            SIGTERM, lambda: asyncio.create_task(server.stop(inf))
        )

        # run CSI plugin server

        await server.start()

        role = "controller" if node_name is None else "node"
        log(f"Serving CSI {role} plugin on {csi_endpoint}")

        await server.wait_for_termination()


def _bind_unix_socket(server: grpc.aio.Server, path: Path) -> None:
    """Bind to a Unix socket that only the current user can connect to,
    replacing any socket left behind by a previous run."""

    path.unlink(missing_ok=True)

    old_umask = os.umask(0o177)

    try:
        server.add_insecure_port(f"unix://{path}")
    finally:
        os.umask(old_umask)


# ---------------------------------------------------------------------------- #

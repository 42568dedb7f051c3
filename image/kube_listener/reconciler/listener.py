# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import kopf

from kube_listener.shared.address import (
    AddressType,
    load_balancer_ingress_addresses,
    node_primary_addresses,
)
from kube_listener.shared.config import (
    LISTENER_CLASS_KIND,
    LISTENER_KIND,
    LISTENER_NAME_LABEL,
    LISTENER_NAMESPACE_LABEL,
    RECONCILER_FIELD_MANAGER,
    TOPOLOGY_NODE_KEY,
    mounted_pod_label,
)
from kube_listener.shared.kubernetes import (
    Client,
    ObjectRef,
    api_version_of,
    owner_reference,
)
from kube_listener.shared.listeners import (
    InvalidListener,
    InvalidListenerClass,
    Listener,
    ListenerClass,
    ListenerIngress,
    ListenerStatus,
    ServiceType,
)
from kube_listener.shared.util import log

# ---------------------------------------------------------------------------- #


class ListenerHasNoClass(Exception):
    def __init__(self, ref: ObjectRef) -> None:
        super().__init__(f"{ref} has no class (.spec.className)")


async def reconcile_listener(
    client: Client, ref: ObjectRef, *, cluster_domain: str
) -> None:
    """
    Bring the Service derived from a Listener, and the Listener's status, in
    line with the current state of the cluster.

    Level-triggered: only the identity of the Listener is needed, everything
    else is fetched anew.
    """

    listener_obj = await client.get_opt(ref)

    if listener_obj is None:
        return  # deleted, the Service is garbage collected

    try:
        listener = Listener.from_obj(listener_obj)
    except InvalidListener as e:
        raise kopf.PermanentError(f"{ref} is invalid") from e

    if listener.spec.class_name is None:
        raise ListenerHasNoClass(ref)

    class_obj = await client.get(
        ObjectRef(LISTENER_CLASS_KIND, listener.spec.class_name)
    )

    try:
        listener_class = ListenerClass.from_obj(class_obj)
    except InvalidListenerClass as e:
        raise kopf.PermanentError(
            f"ListenerClass {listener.spec.class_name} is invalid"
        ) from e

    service = await client.apply(
        RECONCILER_FIELD_MANAGER,
        service_body(listener_obj, listener, listener_class),
    )

    status = await _listener_status(
        client, listener, listener_class, service, cluster_domain
    )

    await client.apply_status(
        RECONCILER_FIELD_MANAGER,
        {
            "apiVersion": api_version_of(LISTENER_KIND),
            "kind": LISTENER_KIND,
            "metadata": {
                "name": listener.name,
                "namespace": listener.namespace,
            },
            "status": status.to_obj(),
        },
    )


# ---------------------------------------------------------------------------- #


def service_body(
    listener_obj: Mapping[str, Any],
    listener: Listener,
    listener_class: ListenerClass,
) -> dict[str, Any]:
    """The Service that exposes the pods of a Listener, as it should be."""

    # (protocol, name) --> port, a later duplicate replaces an earlier one

    ports: dict[tuple[str, str], dict[str, Any]] = {}

    for port in listener.spec.ports:
        protocol = port.protocol or "TCP"
        ports[protocol, port.name] = {
            "name": port.name,
            "port": port.port,
            "protocol": protocol,
        }

    spec: dict[str, Any] = {
        "type": listener_class.service_type.value,
        "ports": [ports[key] for key in sorted(ports)],
        "selector": dict(listener.spec.pod_selector)
        | mounted_pod_label(listener.uid),
        "publishNotReadyAddresses": listener.spec.publish_not_ready_addresses,
    }

    if listener_class.service_type is not ServiceType.CLUSTER_IP:
        spec["externalTrafficPolicy"] = listener_class.external_traffic_policy

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": listener.name,
            "namespace": listener.namespace,
            "annotations": dict(listener_class.service_annotations),
            "ownerReferences": [
                owner_reference(listener_obj, controller=True)
            ],
        },
        "spec": spec,
    }


# ---------------------------------------------------------------------------- #


async def _listener_status(
    client: Client,
    listener: Listener,
    listener_class: ListenerClass,
    service: Mapping[str, Any],
    cluster_domain: str,
) -> ListenerStatus:

    service_name = service["metadata"]["name"]
    service_spec = service.get("spec") or {}
    service_ports = [
        p for p in service_spec.get("ports") or [] if p.get("name")
    ]

    preferred = listener_class.resolved_preferred_address_type()

    if listener_class.service_type is ServiceType.NODE_PORT:

        node_ports = {
            p["name"]: p["nodePort"] for p in service_ports if p.get("nodePort")
        }

        addresses = [
            ListenerIngress(address, address_type, node_ports)
            for (address, address_type) in await _node_addresses(
                client, listener, preferred
            )
        ]

        return ListenerStatus(
            service_name=service_name,
            ingress_addresses=addresses,
            node_ports=node_ports,
        )

    ports = {p["name"]: p["port"] for p in service_ports}

    if listener_class.service_type is ServiceType.LOAD_BALANCER:

        ingresses = (
            (service.get("status") or {}).get("loadBalancer") or {}
        ).get("ingress") or []

        picked = [
            load_balancer_ingress_addresses(ingress).pick(preferred)
            for ingress in ingresses
        ]

    elif preferred is AddressType.IP:

        cluster_ips = service_spec.get("clusterIPs") or [
            service_spec.get("clusterIP")
        ]

        picked = [
            (ip, AddressType.IP)
            for ip in cluster_ips
            if ip and ip != "None"
        ]

    else:

        picked = [
            (
                f"{service_name}.{listener.namespace}.svc.{cluster_domain}",
                AddressType.HOSTNAME,
            )
        ]

    return ListenerStatus(
        service_name=service_name,
        ingress_addresses=[
            ListenerIngress(address, address_type, ports)
            for (address, address_type) in filter(None, picked)
        ],
    )


async def _node_addresses(
    client: Client, listener: Listener, preferred: AddressType
) -> list[tuple[str, AddressType]]:
    """Addresses of the nodes that the Listener's pods run on, one per node,
    ordered by node name."""

    ref = ObjectRef(LISTENER_KIND, listener.name, listener.namespace)

    # nodes that volumes were pinned to, known before the pods are scheduled

    pvs = await client.list_objects(
        "PersistentVolume",
        label_selector=(
            f"{LISTENER_NAMESPACE_LABEL}={listener.namespace},"
            f"{LISTENER_NAME_LABEL}={listener.name}"
        ),
    )

    pv_nodes = {name for pv in pvs for name in pinned_node_names(pv)}

    # nodes that the Service's endpoints run on

    endpoints = await client.get_opt(
        ObjectRef("Endpoints", listener.name, listener.namespace)
    )

    endpoint_nodes = (
        set() if endpoints is None else endpoint_node_names(endpoints)
    )

    unpinned = endpoint_nodes - pv_nodes

    if unpinned:
        log(
            f"{ref} has endpoints on nodes {sorted(unpinned)} without a"
            f" PersistentVolume pinned to them"
        )

    addresses = []

    for node_name in sorted(pv_nodes | endpoint_nodes):

        node = await client.get_opt(ObjectRef("Node", node_name))

        if node is None:
            log(f"{ref} is backed by Node {node_name}, which does not exist")
            continue

        picked = node_primary_addresses(node).pick(preferred)

        if picked is not None:
            addresses.append(picked)

    return addresses


def pinned_node_names(pv: Mapping[str, Any]) -> set[str]:
    """Names of the nodes that a PersistentVolume's node affinity restricts it
    to, as set by CreateVolume."""

    required = (
        ((pv.get("spec") or {}).get("nodeAffinity") or {}).get("required")
        or {}
    )

    return {
        value
        for term in required.get("nodeSelectorTerms") or []
        for expression in term.get("matchExpressions") or []
        if expression.get("key") == TOPOLOGY_NODE_KEY
        and expression.get("operator") == "In"
        for value in expression.get("values") or []
    }


def endpoint_node_names(endpoints: Mapping[str, Any]) -> set[str]:
    return {
        address["nodeName"]
        for subset in endpoints.get("subsets") or []
        for address in (subset.get("addresses") or [])
        + (subset.get("notReadyAddresses") or [])
        if address.get("nodeName")
    }


# ---------------------------------------------------------------------------- #

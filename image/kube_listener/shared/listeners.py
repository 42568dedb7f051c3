# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum, unique
from pathlib import Path
from typing import Any, Optional

import yamale  # type: ignore

from kube_listener.shared.address import AddressType
from kube_listener.shared.config import (
    LISTENER_KIND,
    POD_LISTENERS_KIND,
)
from kube_listener.shared.kubernetes import api_version_of, owner_reference

# ---------------------------------------------------------------------------- #


@unique
class ServiceType(Enum):
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"
    CLUSTER_IP = "ClusterIP"


@unique
class ListenerScope(Enum):
    NODE = "Node"
    CLUSTER = "Cluster"


class InvalidListener(ValueError):
    pass


class InvalidListenerClass(ValueError):
    pass


def _validate(
    schema: Any, obj: Mapping[str, Any], error: type[Exception]
) -> None:

    data = [({"spec": obj.get("spec")}, None)]

    try:
        yamale.validate(schema=schema, data=data, strict=False)
    except yamale.YamaleError as e:
        assert len(e.results) == 1
        raise error("".join(f"\n  {msg}" for msg in e.results[0].errors))


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ListenerClass:

    __SCHEMA = yamale.make_schema(
        content=(
            Path(__file__).parent / "listener-class-schema.yaml"
        ).read_text()
    )

    name: str
    service_type: ServiceType
    service_annotations: Mapping[str, str] = field(default_factory=dict)
    preferred_address_type: Optional[AddressType] = None
    external_traffic_policy: str = "Local"
    sticky_node_ports: bool = False

    @staticmethod
    def from_obj(obj: Mapping[str, Any]) -> ListenerClass:

        _validate(ListenerClass.__SCHEMA, obj, InvalidListenerClass)

        spec = obj["spec"]
        preferred = spec.get("preferredAddressType")

        return ListenerClass(
            name=obj["metadata"]["name"],
            service_type=ServiceType(spec["serviceType"]),
            service_annotations=dict(spec.get("serviceAnnotations") or {}),
            preferred_address_type=(
                None if preferred is None else AddressType(preferred)
            ),
            external_traffic_policy=(
                spec.get("externalTrafficPolicy") or "Local"
            ),
            sticky_node_ports=bool(spec.get("stickyNodePorts")),
        )

    def resolved_preferred_address_type(self) -> AddressType:
        """When unset, Node-local classes prefer IPs (node hostnames are often
        not resolvable from outside the cluster) and all others prefer
        hostnames."""

        if self.preferred_address_type is not None:
            return self.preferred_address_type
        elif self.service_type is ServiceType.NODE_PORT:
            return AddressType.IP
        else:
            return AddressType.HOSTNAME


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ListenerPort:

    name: str
    port: int
    protocol: Optional[str] = None

    def to_obj(self) -> dict[str, Any]:

        obj: dict[str, Any] = {"name": self.name, "port": self.port}

        if self.protocol is not None:
            obj["protocol"] = self.protocol

        return obj


@dataclass(frozen=True)
class ListenerSpec:

    class_name: Optional[str] = None
    pod_selector: Mapping[str, str] = field(default_factory=dict)
    ports: Sequence[ListenerPort] = ()
    publish_not_ready_addresses: bool = True


@dataclass(frozen=True)
class ListenerIngress:

    address: str
    address_type: AddressType
    ports: Mapping[str, int]

    @staticmethod
    def from_obj(obj: Mapping[str, Any]) -> ListenerIngress:
        return ListenerIngress(
            address=obj["address"],
            address_type=AddressType(obj.get("addressType", "IP")),
            ports=dict(obj.get("ports") or {}),
        )

    def to_obj(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "addressType": self.address_type.value,
            "ports": dict(self.ports),
        }


@dataclass(frozen=True)
class ListenerStatus:

    service_name: Optional[str] = None
    ingress_addresses: Sequence[ListenerIngress] = ()
    node_ports: Optional[Mapping[str, int]] = None

    @staticmethod
    def from_obj(obj: Optional[Mapping[str, Any]]) -> ListenerStatus:

        if not obj:
            return ListenerStatus()

        node_ports = obj.get("nodePorts")

        return ListenerStatus(
            service_name=obj.get("serviceName"),
            ingress_addresses=tuple(
                ListenerIngress.from_obj(ingress)
                for ingress in obj.get("ingressAddresses") or []
            ),
            node_ports=None if node_ports is None else dict(node_ports),
        )

    def to_obj(self) -> dict[str, Any]:

        obj: dict[str, Any] = {
            "serviceName": self.service_name,
            "ingressAddresses": [i.to_obj() for i in self.ingress_addresses],
        }

        if self.node_ports is not None:
            obj["nodePorts"] = dict(self.node_ports)

        return obj


@dataclass(frozen=True)
class Listener:

    __SCHEMA = yamale.make_schema(
        content=(Path(__file__).parent / "listener-schema.yaml").read_text()
    )

    name: str
    namespace: str
    uid: str
    spec: ListenerSpec
    status: ListenerStatus

    @staticmethod
    def from_obj(obj: Mapping[str, Any]) -> Listener:
        """Raises `InvalidListener` if the object does not conform to the
        Listener schema or has duplicate port names."""

        _validate(Listener.__SCHEMA, obj, InvalidListener)

        spec = obj.get("spec") or {}

        ports = tuple(
            ListenerPort(
                name=port["name"],
                port=port["port"],
                protocol=port.get("protocol"),
            )
            for port in spec.get("ports") or []
        )

        port_names = [port.name for port in ports]

        if len(set(port_names)) != len(port_names):
            raise InvalidListener("\n  spec.ports: names must be unique")

        publish_not_ready_addresses = spec.get("publishNotReadyAddresses")

        return Listener(
            name=obj["metadata"]["name"],
            namespace=obj["metadata"]["namespace"],
            uid=obj["metadata"]["uid"],
            spec=ListenerSpec(
                class_name=spec.get("className"),
                pod_selector=dict(spec.get("podSelector") or {}),
                ports=ports,
                publish_not_ready_addresses=(
                    True
                    if publish_not_ready_addresses is None
                    else publish_not_ready_addresses
                ),
            ),
            status=ListenerStatus.from_obj(obj.get("status")),
        )


# ---------------------------------------------------------------------------- #


def listener_body(
    name: str,
    namespace: str,
    *,
    class_name: str,
    ports: Sequence[ListenerPort],
    labels: Mapping[str, str],
    owner: Mapping[str, Any],
) -> dict[str, Any]:
    """Body of a Listener created on behalf of a volume, rather than by a
    user."""

    return {
        "apiVersion": api_version_of(LISTENER_KIND),
        "kind": LISTENER_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels),
            "ownerReferences": [owner_reference(owner)],
        },
        "spec": {
            "className": class_name,
            "ports": [port.to_obj() for port in ports],
            "publishNotReadyAddresses": True,
        },
    }


def pod_listeners_name(pod_uid: str) -> str:
    return f"pod-{pod_uid}"


def pod_listeners_body(pod: Mapping[str, Any]) -> dict[str, Any]:
    """Empty PodListeners record for the given Pod, owned by it."""

    return {
        "apiVersion": api_version_of(POD_LISTENERS_KIND),
        "kind": POD_LISTENERS_KIND,
        "metadata": {
            "name": pod_listeners_name(pod["metadata"]["uid"]),
            "namespace": pod["metadata"]["namespace"],
            "ownerReferences": [owner_reference(pod)],
        },
        "spec": {"listeners": {}},
    }


def pod_listeners_patch(
    volume_name: str,
    scope: ListenerScope,
    ingress_addresses: Sequence[ListenerIngress],
) -> dict[str, Any]:
    """Merge patch that records the addresses of one volume without touching
    the entries of the Pod's other volumes."""

    return {
        "spec": {
            "listeners": {
                volume_name: {
                    "scope": scope.value,
                    "ingressAddresses": [i.to_obj() for i in ingress_addresses],
                }
            }
        }
    }


# ---------------------------------------------------------------------------- #

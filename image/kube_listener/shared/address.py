# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Optional

# ---------------------------------------------------------------------------- #


@unique
class AddressType(Enum):
    IP = "IP"
    HOSTNAME = "Hostname"


@dataclass(frozen=True)
class AddressCandidates:
    """The primary addresses of an entity, at most one for each type of
    address."""

    ip: Optional[str] = None
    hostname: Optional[str] = None

    def pick(
        self, preferred_address_type: AddressType
    ) -> Optional[tuple[str, AddressType]]:
        """Pick the address of the preferred type, falling back to the other
        type if the entity has no address of the preferred type."""

        ip = None if self.ip is None else (self.ip, AddressType.IP)

        hostname = (
            None
            if self.hostname is None
            else (self.hostname, AddressType.HOSTNAME)
        )

        if preferred_address_type is AddressType.IP:
            return ip or hostname
        else:
            return hostname or ip


# ---------------------------------------------------------------------------- #


def node_primary_addresses(node: Mapping[str, Any]) -> AddressCandidates:
    """Guess the primary addresses of a Node, which external clients are
    expected to be able to reach it on."""

    addresses = (node.get("status") or {}).get("addresses") or []

    def first_of_type(address_type: str) -> Optional[str]:
        return next(
            (a["address"] for a in addresses if a.get("type") == address_type),
            None,
        )

    return AddressCandidates(
        ip=first_of_type("ExternalIP") or first_of_type("InternalIP"),
        hostname=first_of_type("Hostname"),
    )


def load_balancer_ingress_addresses(
    ingress: Mapping[str, Any]
) -> AddressCandidates:
    """Addresses of one entry of a Service's `status.loadBalancer.ingress`."""

    return AddressCandidates(
        ip=ingress.get("ip") or None, hostname=ingress.get("hostname") or None
    )


# ---------------------------------------------------------------------------- #

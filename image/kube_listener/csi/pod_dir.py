# ---------------------------------------------------------------------------- #
# The directory that a pod sees in place of a Listener volume:
#
#   addresses/<address>/address             the address itself
#   addresses/<address>/ports/<port name>   decimal port number
#   default-address -> addresses/<address>  relative symlink

from __future__ import annotations

import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from kube_listener.shared.listeners import ListenerIngress

# ---------------------------------------------------------------------------- #


class UnsafePathComponent(ValueError):
    def __init__(self, what: str, value: str) -> None:
        super().__init__(f"{what} {value!r} cannot be used as a file name")


def write_pod_dir(
    target_path: Path, ingress_addresses: Sequence[ListenerIngress]
) -> None:
    """
    (Re)write the pod directory at `target_path`, replacing any addresses that
    were written to it before. The first address is the default one.

    Raises `OSError` on filesystem failures, and `UnsafePathComponent` if an
    address or port name would escape its directory.
    """

    assert ingress_addresses

    for ingress in ingress_addresses:
        _check_path_component("address", ingress.address)
        for port_name in ingress.ports:
            _check_path_component("port name", port_name)

    addresses_dir = target_path / "addresses"

    target_path.mkdir(parents=True, exist_ok=True)

    try:
        shutil.rmtree(addresses_dir)
    except FileNotFoundError:
        pass  # first publish

    for ingress in ingress_addresses:

        address_dir = addresses_dir / ingress.address
        ports_dir = address_dir / "ports"

        ports_dir.mkdir(parents=True, exist_ok=True)

        (address_dir / "address").write_text(ingress.address)

        for (port_name, port) in ingress.ports.items():
            (ports_dir / port_name).write_text(str(port))

    # replace the symlink atomically, in case it already exists

    link = target_path / "default-address"
    temp_link = target_path / ".default-address.tmp"

    temp_link.unlink(missing_ok=True)
    temp_link.symlink_to(Path("addresses") / ingress_addresses[0].address)

    os.replace(temp_link, link)


def remove_pod_dir(target_path: Path) -> None:
    """Remove the pod directory. Succeeds if it does not exist."""

    try:
        shutil.rmtree(target_path)
    except FileNotFoundError:
        pass


def _check_path_component(what: str, value: str) -> None:
    if not value or value in (".", "..") or "/" in value or "\0" in value:
        raise UnsafePathComponent(what, value)


# ---------------------------------------------------------------------------- #

# ---------------------------------------------------------------------------- #

from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path

from kubernetes_asyncio.config import load_incluster_config  # type: ignore

import kube_listener.csi
import kube_listener.reconciler.controller
from kube_listener.shared.config import (
    CSI_SOCKET_PATH,
    DEFAULT_CLUSTER_DOMAIN,
    RECONCILE_WORKERS,
)
from kube_listener.shared.presets import ListenerClassPreset

# ---------------------------------------------------------------------------- #


def main() -> None:
    """
    Usage:

        python -m kube_listener reconciler [--cluster-domain <domain>]
            [--listener-class-preset <preset>] [--workers <n>]
        python -m kube_listener csi-plugin [--csi-endpoint <path>] controller
        python -m kube_listener csi-plugin [--csi-endpoint <path>]
            node <node_name>
    """

    args = _parse_args()

    load_incluster_config()

    if args.mode == "reconciler":

        kube_listener.reconciler.controller.run(
            cluster_domain=args.cluster_domain,
            preset=ListenerClassPreset(args.listener_class_preset),
            workers=args.workers,
        )

    elif args.mode == "csi-plugin":

        if args.csi_plugin == "controller":
            kube_listener.csi.run_controller(args.csi_endpoint)
        elif args.csi_plugin == "node":
            kube_listener.csi.run_node(
                args.csi_endpoint, node_name=args.node_name
            )


def _parse_args() -> Namespace:

    parser = ArgumentParser(prog="kube_listener")

    subparsers = parser.add_subparsers(dest="mode", required=True)

    # 'reconciler' subcommand

    reconciler_parser = subparsers.add_parser("reconciler")

    reconciler_parser.add_argument(
        "--cluster-domain", default=DEFAULT_CLUSTER_DOMAIN
    )

    reconciler_parser.add_argument(
        "--listener-class-preset",
        choices=[preset.value for preset in ListenerClassPreset],
        default=ListenerClassPreset.NONE.value,
    )

    reconciler_parser.add_argument(
        "--workers", type=_positive_int, default=RECONCILE_WORKERS
    )

    # 'csi-plugin' subcommand

    csi_parser = subparsers.add_parser("csi-plugin")
    csi_parser.add_argument(
        "--csi-endpoint", type=Path, default=CSI_SOCKET_PATH
    )

    csi_subparsers = csi_parser.add_subparsers(dest="csi_plugin", required=True)
    csi_subparsers.add_parser("controller")
    csi_subparsers.add_parser("node").add_argument("node_name")

    # parse arguments

    return parser.parse_args()


def _positive_int(value: str) -> int:

    number = int(value)

    if number <= 0:
        raise ValueError(value)

    return number


# ---------------------------------------------------------------------------- #

if __name__ == "__main__":
    main()

# ---------------------------------------------------------------------------- #

# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

# ---------------------------------------------------------------------------- #

VERSION = "0.1.0"

DOMAIN = "listeners.kube-listener.io"
"""Used for the CRD group, as the CSI driver name, as a prefix for labels,
annotations, and finalizers, and in a few other places."""

DRIVER_NAME = DOMAIN

CRD_GROUP = DOMAIN
CRD_VERSION = "v1alpha1"

LISTENER_KIND = "Listener"
LISTENER_PLURAL = "listeners"

LISTENER_CLASS_KIND = "ListenerClass"
LISTENER_CLASS_PLURAL = "listenerclasses"

POD_LISTENERS_KIND = "PodListeners"
POD_LISTENERS_PLURAL = "podlisteners"

# ---------------------------------------------------------------------------- #
# Volume context and CreateVolume parameters

LISTENER_NAME_KEY = f"{DOMAIN}/listener-name"
LISTENER_CLASS_KEY = f"{DOMAIN}/listener-class"

POD_NAMESPACE_KEY = "csi.storage.k8s.io/pod.namespace"
POD_NAME_KEY = "csi.storage.k8s.io/pod.name"

PVC_NAME_KEY = "csi.storage.k8s.io/pvc/name"
PVC_NAMESPACE_KEY = "csi.storage.k8s.io/pvc/namespace"

TOPOLOGY_NODE_KEY = f"{DOMAIN}/hostname"
"""Topology segment advertised by each node plugin, and therefore the key used
in the node affinity of PersistentVolumes pinned to a node."""

# ---------------------------------------------------------------------------- #
# Labels

LISTENER_NAMESPACE_LABEL = f"{DOMAIN}/listener-namespace"
LISTENER_NAME_LABEL = f"{DOMAIN}/listener-name"
"""Set on PersistentVolumes that back a Listener, so that the reconciler can
find the nodes a Listener's pods run on before its Endpoints exist."""


def mounted_pod_label(listener_uid: str) -> dict[str, str]:
    """Label set on every Pod that mounts the Listener with the given UID, and
    which that Listener's Service selects on."""
    return {f"{DOMAIN}/mnt.{listener_uid}": "true"}


# ---------------------------------------------------------------------------- #
# Runtime

RECONCILER_FIELD_MANAGER = "kube-listener/reconciler"
NODE_FIELD_MANAGER = "kube-listener/csi-node"

RECONCILE_RETRY_DELAY = timedelta(seconds=5)
"""Amount of time to wait before retrying a failed reconciliation. Fixed, never
grows."""

RECONCILE_WORKERS = 16
"""Maximum number of Listeners reconciled concurrently."""

DEFAULT_CLUSTER_DOMAIN = "cluster.local"

CSI_SOCKET_PATH = Path("/csi/socket")
"""Default absolute path, in the context of a CSI controller/node plugin
container, to the CSI Unix domain socket."""

KOPF_FINALIZER = f"{DOMAIN}/kopf"
"""Finalizer for kopf to use instead of its default one."""

# ---------------------------------------------------------------------------- #

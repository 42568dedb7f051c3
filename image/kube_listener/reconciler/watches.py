# ---------------------------------------------------------------------------- #
# Mapping of watch events on related objects to the Listeners they affect. The
# kopf indexes are passed in explicitly, so these are pure functions of the
# event body and of the watch-derived cache.

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from kube_listener.shared.config import (
    CRD_GROUP,
    LISTENER_KIND,
    LISTENER_NAME_LABEL,
    LISTENER_NAMESPACE_LABEL,
)
from kube_listener.shared.kubernetes import ObjectRef

# ---------------------------------------------------------------------------- #

ListenersByClass = Mapping[str, Iterable[ObjectRef]]
"""Class name --> refs of the Listeners that use that class."""

ListenersByRef = Mapping[tuple[str, str], Iterable[str]]
"""(Namespace, name) --> UIDs of the Listener(s) with that namespace and name.
Usually a single UID, but briefly two while a Listener is being replaced."""

# ---------------------------------------------------------------------------- #


def listener_index_by_class(body: Mapping[str, Any]) -> dict[str, ObjectRef]:

    class_name = (body.get("spec") or {}).get("className")

    if not class_name:
        return {}

    return {class_name: _listener_ref(body)}


def listener_index_by_ref(
    body: Mapping[str, Any]
) -> dict[tuple[str, str], str]:

    metadata = body["metadata"]
    return {(metadata["namespace"], metadata["name"]): metadata["uid"]}


# ---------------------------------------------------------------------------- #


def listeners_of_listener(body: Mapping[str, Any]) -> list[ObjectRef]:
    return [_listener_ref(body)]


def listeners_of_service(body: Mapping[str, Any]) -> list[ObjectRef]:
    """Listeners that own the Service."""

    metadata = body["metadata"]

    return [
        ObjectRef(LISTENER_KIND, ref["name"], metadata["namespace"])
        for ref in metadata.get("ownerReferences") or []
        if ref.get("kind") == LISTENER_KIND
        and ref.get("apiVersion", "").split("/")[0] == CRD_GROUP
    ]


def listeners_of_endpoints(
    body: Mapping[str, Any], listeners_by_ref: ListenersByRef
) -> list[ObjectRef]:
    """Endpoints share the name of their Service, which shares the name of its
    Listener."""

    metadata = body["metadata"]
    key = (metadata["namespace"], metadata["name"])

    if not any(True for _ in listeners_by_ref.get(key, ())):
        return []

    return [ObjectRef(LISTENER_KIND, metadata["name"], metadata["namespace"])]


def listeners_of_listener_class(
    body: Mapping[str, Any], listeners_by_class: ListenersByClass
) -> list[ObjectRef]:

    refs = listeners_by_class.get(body["metadata"]["name"], ())
    return sorted(set(refs), key=lambda ref: (ref.namespace, ref.name))


def listeners_of_persistent_volume(
    body: Mapping[str, Any]
) -> list[ObjectRef]:
    """Listener named by the discovery labels of a PersistentVolume."""

    labels = body["metadata"].get("labels") or {}

    namespace = labels.get(LISTENER_NAMESPACE_LABEL)
    name = labels.get(LISTENER_NAME_LABEL)

    if not namespace or not name:
        return []

    return [ObjectRef(LISTENER_KIND, name, namespace)]


# ---------------------------------------------------------------------------- #


def _listener_ref(body: Mapping[str, Any]) -> ObjectRef:
    metadata = body["metadata"]
    return ObjectRef(LISTENER_KIND, metadata["name"], metadata["namespace"])


# ---------------------------------------------------------------------------- #

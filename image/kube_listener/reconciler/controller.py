# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import create_task
from collections.abc import Iterable
from typing import Any, Optional

import kopf
from kubernetes_asyncio.client import ApiClient  # type: ignore

from kube_listener.reconciler.listener import reconcile_listener
from kube_listener.reconciler.queue import ReconcileQueue
from kube_listener.reconciler.watches import (
    ListenersByClass,
    ListenersByRef,
    listener_index_by_class,
    listener_index_by_ref,
    listeners_of_endpoints,
    listeners_of_listener,
    listeners_of_listener_class,
    listeners_of_persistent_volume,
    listeners_of_service,
)
from kube_listener.shared.config import (
    CRD_GROUP,
    CRD_VERSION,
    KOPF_FINALIZER,
    LISTENER_CLASS_PLURAL,
    LISTENER_NAME_LABEL,
    LISTENER_PLURAL,
)
from kube_listener.shared.kubernetes import Client, ObjectRef
from kube_listener.shared.presets import (
    ListenerClassPreset,
    apply_listener_class_preset,
)

# ---------------------------------------------------------------------------- #


def run(
    cluster_domain: str, preset: ListenerClassPreset, workers: int
) -> None:

    # create Kubernetes API client object

    client = Client(ApiClient())

    # create work queue

    async def reconcile(ref: ObjectRef) -> None:
        await reconcile_listener(client, ref, cluster_domain=cluster_domain)

    queue: ReconcileQueue[ObjectRef] = ReconcileQueue(
        reconcile, workers=workers
    )

    # define handlers

    registry = kopf.OperatorRegistry()

    _define_operator_handlers(registry, client, queue, preset)
    _define_watch_handlers(registry, queue)

    # run kopf

    kopf.configure()
    kopf.run(registry=registry, standalone=True, clusterwide=True)


# ---------------------------------------------------------------------------- #
# Operator lifecycle


def _define_operator_handlers(
    registry: kopf.OperatorRegistry,
    client: Client,
    queue: ReconcileQueue[ObjectRef],
    preset: ListenerClassPreset,
) -> None:
    @kopf.on.login(registry=registry)
    async def on_login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_via_client(**kwargs)

    @kopf.on.startup(registry=registry)
    async def on_startup(
        settings: kopf.OperatorSettings, logger: kopf.Logger, **_: object
    ) -> None:

        # use custom finalizer

        settings.persistence.finalizer = KOPF_FINALIZER

        # don't create events

        settings.posting.enabled = False

        # create preset ListenerClasses that don't exist yet

        await apply_listener_class_preset(client, preset)

        # launch task that drains the work queue

        create_task(queue.run())

        logger.info("Reconciling Listeners with %d workers", queue.workers)


# ---------------------------------------------------------------------------- #
# Watches


def _define_watch_handlers(
    registry: kopf.OperatorRegistry, queue: ReconcileQueue[ObjectRef]
) -> None:
    def enqueue_all(refs: Iterable[ObjectRef]) -> None:
        for ref in refs:
            queue.enqueue(ref)

    # indexes

    @kopf.index(CRD_GROUP, CRD_VERSION, LISTENER_PLURAL, registry=registry)
    async def listeners_by_class(
        body: kopf.Body, **_: object
    ) -> dict[str, ObjectRef]:
        return listener_index_by_class(body)

    @kopf.index(CRD_GROUP, CRD_VERSION, LISTENER_PLURAL, registry=registry)
    async def listeners_by_ref(
        body: kopf.Body, **_: object
    ) -> dict[tuple[str, str], str]:
        return listener_index_by_ref(body)

    # Listeners themselves

    @kopf.on.event(CRD_GROUP, CRD_VERSION, LISTENER_PLURAL, registry=registry)
    async def on_listener_event(body: kopf.Body, **_: object) -> None:
        enqueue_all(listeners_of_listener(body))

    # objects derived from or related to Listeners

    @kopf.on.event("", "v1", "services", registry=registry)
    async def on_service_event(body: kopf.Body, **_: object) -> None:
        enqueue_all(listeners_of_service(body))

    @kopf.on.event("", "v1", "endpoints", registry=registry)
    async def on_endpoints_event(
        body: kopf.Body, listeners_by_ref: ListenersByRef, **_: object
    ) -> None:
        enqueue_all(listeners_of_endpoints(body, listeners_by_ref))

    @kopf.on.event(
        CRD_GROUP, CRD_VERSION, LISTENER_CLASS_PLURAL, registry=registry
    )
    async def on_listener_class_event(
        body: kopf.Body, listeners_by_class: ListenersByClass, **_: object
    ) -> None:
        enqueue_all(listeners_of_listener_class(body, listeners_by_class))

    @kopf.on.event(
        "",
        "v1",
        "persistentvolumes",
        labels={LISTENER_NAME_LABEL: kopf.PRESENT},
        registry=registry,
    )
    async def on_persistent_volume_event(
        body: kopf.Body, **_: object
    ) -> None:
        enqueue_all(listeners_of_persistent_volume(body))


# ---------------------------------------------------------------------------- #

# ---------------------------------------------------------------------------- #

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import pytest
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
    V1Node,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeList,
    V1Service,
)

from kube_listener.shared.kubernetes import (
    APPLY_PATCH,
    MERGE_PATCH,
    Client,
    ObjectNotFound,
    ObjectRef,
    ObjectStoreError,
)

# ---------------------------------------------------------------------------- #

GROUP = "listeners.kube-listener.io"
VERSION = "v1alpha1"


class _ApiMethod:
    """Replaces one generated API method. Records the keyword arguments of each
    call, then returns `result` or raises `error`."""

    calls: list[dict[str, Any]]

    def __init__(
        self, result: Any = None, error: Optional[Exception] = None
    ) -> None:
        self.calls = []
        self.result = result
        self.error = error

    async def __call__(self, **kwargs: Any) -> Any:

        self.calls.append(kwargs)

        if self.error is not None:
            raise self.error

        return self.result


def _patch_api(
    monkeypatch: pytest.MonkeyPatch,
    api: type,
    method_name: str,
    result: Any = None,
    error: Optional[Exception] = None,
) -> _ApiMethod:

    method = _ApiMethod(result, error)
    monkeypatch.setattr(api, method_name, method)
    return method


# ---------------------------------------------------------------------------- #


class TestGet:
    @pytest.mark.asyncio
    async def test_core_object(self, monkeypatch: pytest.MonkeyPatch) -> None:

        read = _patch_api(
            monkeypatch,
            CoreV1Api,
            "read_node",
            V1Node(metadata=V1ObjectMeta(name="node-a")),
        )

        async with ApiClient() as api_client:
            node = await Client(api_client).get(ObjectRef("Node", "node-a"))

        assert node == {
            "apiVersion": "v1",
            "kind": "Node",
            "metadata": {"name": "node-a"},
        }
        assert read.calls == [{"name": "node-a"}]

    @pytest.mark.asyncio
    async def test_custom_object(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        listener = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": "Listener",
            "metadata": {"name": "web", "namespace": "ns1"},
        }

        get = _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "get_namespaced_custom_object",
            listener,
        )

        async with ApiClient() as api_client:
            obj = await Client(api_client).get(
                ObjectRef("Listener", "web", "ns1")
            )

        assert obj == listener
        assert get.calls == [
            {
                "group": GROUP,
                "version": VERSION,
                "plural": "listeners",
                "name": "web",
                "namespace": "ns1",
            }
        ]

    @dataclass
    class Case:
        status: int
        error_type: type[ObjectStoreError]
        optional_result_is_none: bool

    @pytest.mark.parametrize(
        "case",
        [
            Case(404, ObjectNotFound, True),
            Case(403, ObjectStoreError, False),
            Case(500, ObjectStoreError, False),
        ],
    )
    @pytest.mark.asyncio
    async def test_errors(
        self, monkeypatch: pytest.MonkeyPatch, case: Case
    ) -> None:

        api_error = ApiException(status=case.status)
        ref = ObjectRef("Endpoints", "web", "ns1")

        _patch_api(
            monkeypatch,
            CoreV1Api,
            "read_namespaced_endpoints",
            error=api_error,
        )

        async with ApiClient() as api_client:

            client = Client(api_client)

            with pytest.raises(case.error_type) as exc_info:
                await client.get(ref)

            assert type(exc_info.value) is case.error_type
            assert exc_info.value.ref == ref
            assert exc_info.value.__cause__ is api_error
            assert str(exc_info.value) == "failed to get Endpoints ns1/web"

            if case.optional_result_is_none:
                assert await client.get_opt(ref) is None
            else:
                with pytest.raises(case.error_type):
                    await client.get_opt(ref)


# ---------------------------------------------------------------------------- #


class TestListObjects:
    @pytest.mark.asyncio
    async def test_cluster_scoped_core_kind(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        list_pvs = _patch_api(
            monkeypatch,
            CoreV1Api,
            "list_persistent_volume",
            V1PersistentVolumeList(
                items=[V1PersistentVolume(metadata=V1ObjectMeta(name="pv1"))]
            ),
        )

        async with ApiClient() as api_client:
            pvs = await Client(api_client).list_objects(
                "PersistentVolume", label_selector=f"{GROUP}/listener-name"
            )

        # list items lack apiVersion and kind, which are filled in

        assert pvs == [
            {
                "apiVersion": "v1",
                "kind": "PersistentVolume",
                "metadata": {"name": "pv1"},
            }
        ]
        assert list_pvs.calls == [
            {"label_selector": f"{GROUP}/listener-name"}
        ]

    @pytest.mark.asyncio
    async def test_namespaced_custom_kind(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        list_listeners = _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "list_namespaced_custom_object",
            {"items": [{"metadata": {"name": "web", "namespace": "ns1"}}]},
        )

        async with ApiClient() as api_client:
            listeners = await Client(api_client).list_objects(
                "Listener", namespace="ns1"
            )

        assert listeners == [
            {
                "apiVersion": f"{GROUP}/{VERSION}",
                "kind": "Listener",
                "metadata": {"name": "web", "namespace": "ns1"},
            }
        ]
        assert list_listeners.calls == [
            {
                "group": GROUP,
                "version": VERSION,
                "plural": "listeners",
                "namespace": "ns1",
                "label_selector": None,
            }
        ]


# ---------------------------------------------------------------------------- #


class TestWrites:
    @pytest.mark.asyncio
    async def test_apply(self, monkeypatch: pytest.MonkeyPatch) -> None:

        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web", "namespace": "ns1"},
            "spec": {"type": "ClusterIP"},
        }

        patch = _patch_api(
            monkeypatch,
            CoreV1Api,
            "patch_namespaced_service",
            V1Service(metadata=V1ObjectMeta(name="web", namespace="ns1")),
        )

        async with ApiClient() as api_client:
            service = await Client(api_client).apply("reconciler", body)

        assert service == {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web", "namespace": "ns1"},
        }
        assert patch.calls == [
            {
                "name": "web",
                "namespace": "ns1",
                "body": body,
                "field_manager": "reconciler",
                "force": True,
                "_content_type": APPLY_PATCH,
            }
        ]

    @pytest.mark.asyncio
    async def test_apply_status(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        body = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": "Listener",
            "metadata": {"name": "web", "namespace": "ns1"},
            "status": {"serviceName": "web", "ingressAddresses": []},
        }

        patch = _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "patch_namespaced_custom_object_status",
            body,
        )

        async with ApiClient() as api_client:
            await Client(api_client).apply_status("reconciler", body)

        assert patch.calls == [
            {
                "group": GROUP,
                "version": VERSION,
                "plural": "listeners",
                "name": "web",
                "namespace": "ns1",
                "body": body,
                "field_manager": "reconciler",
                "force": True,
                "_content_type": APPLY_PATCH,
            }
        ]

    @pytest.mark.asyncio
    async def test_merge_patch(self, monkeypatch: pytest.MonkeyPatch) -> None:

        labels = {"metadata": {"labels": {f"{GROUP}/mnt.uid-1": "true"}}}

        patch = _patch_api(
            monkeypatch,
            CoreV1Api,
            "patch_namespaced_pod",
            {"metadata": {"name": "web-0", "namespace": "ns1"}},
        )

        async with ApiClient() as api_client:
            await Client(api_client).merge_patch(
                ObjectRef("Pod", "web-0", "ns1"), labels
            )

        assert patch.calls == [
            {
                "name": "web-0",
                "namespace": "ns1",
                "body": labels,
                "_content_type": MERGE_PATCH,
            }
        ]


# ---------------------------------------------------------------------------- #


class TestCreateIfMissing:

    LISTENER_CLASS = {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": "ListenerClass",
        "metadata": {"name": "public"},
        "spec": {"serviceType": "NodePort"},
    }

    @pytest.mark.asyncio
    async def test_created(self, monkeypatch: pytest.MonkeyPatch) -> None:

        create = _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "create_cluster_custom_object",
            self.LISTENER_CLASS,
        )

        async with ApiClient() as api_client:
            created = await Client(api_client).create_if_missing(
                self.LISTENER_CLASS
            )

        assert created
        assert create.calls == [
            {
                "group": GROUP,
                "version": VERSION,
                "plural": "listenerclasses",
                "body": self.LISTENER_CLASS,
            }
        ]

    @pytest.mark.asyncio
    async def test_already_exists(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "create_cluster_custom_object",
            error=ApiException(status=409),
        )

        async with ApiClient() as api_client:
            created = await Client(api_client).create_if_missing(
                self.LISTENER_CLASS
            )

        assert not created

    @pytest.mark.asyncio
    async def test_other_errors_propagate(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:

        _patch_api(
            monkeypatch,
            CustomObjectsApi,
            "create_cluster_custom_object",
            error=ApiException(status=422),
        )

        async with ApiClient() as api_client:
            with pytest.raises(ObjectStoreError) as exc_info:
                await Client(api_client).create_if_missing(
                    self.LISTENER_CLASS
                )

        assert str(exc_info.value) == "failed to create ListenerClass public"


# ---------------------------------------------------------------------------- #

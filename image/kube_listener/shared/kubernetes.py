# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional, Union

from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
)

from kube_listener.shared.config import (
    CRD_GROUP,
    CRD_VERSION,
    LISTENER_CLASS_KIND,
    LISTENER_CLASS_PLURAL,
    LISTENER_KIND,
    LISTENER_PLURAL,
    POD_LISTENERS_KIND,
    POD_LISTENERS_PLURAL,
)

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ObjectRef:
    """Identity of a cluster object, carrying just enough information for error
    messages, watch mapping, and work queue keys."""

    kind: str
    name: str
    namespace: Optional[str] = None

    @staticmethod
    def from_obj(obj: Mapping[str, Any]) -> ObjectRef:
        return ObjectRef(
            kind=obj["kind"],
            name=obj["metadata"]["name"],
            namespace=obj["metadata"].get("namespace"),
        )

    def __str__(self) -> str:
        if self.namespace is None:
            return f"{self.kind} {self.name}"
        else:
            return f"{self.kind} {self.namespace}/{self.name}"


def owner_reference(
    obj: Mapping[str, Any], *, controller: bool = False
) -> dict[str, Any]:

    reference = {
        "apiVersion": obj["apiVersion"],
        "kind": obj["kind"],
        "name": obj["metadata"]["name"],
        "uid": obj["metadata"]["uid"],
    }

    if controller:
        reference |= {"controller": True, "blockOwnerDeletion": True}

    return reference


# ---------------------------------------------------------------------------- #


class ObjectStoreError(Exception):
    def __init__(self, verb: str, ref: ObjectRef) -> None:
        super().__init__(f"failed to {verb} {ref}")
        self.verb = verb
        self.ref = ref


class ObjectNotFound(ObjectStoreError):
    pass


# ---------------------------------------------------------------------------- #

APPLY_PATCH = "application/apply-patch+yaml"
MERGE_PATCH = "application/merge-patch+json"

_Fn = Callable[..., Coroutine[Any, Any, Any]]


@dataclass(frozen=True)
class _CoreKind:

    api_version: str
    snake_name: str
    namespaced: bool

    def fn(self, api_client: ApiClient, verb: str, suffix: str = "") -> _Fn:
        scope = "namespaced_" if self.namespaced else ""
        method = f"{verb}_{scope}{self.snake_name}{suffix}"
        return getattr(CoreV1Api(api_client), method)  # type: ignore

    def object_kwargs(self, ref: ObjectRef) -> dict[str, Any]:
        if self.namespaced:
            return {"name": ref.name, "namespace": ref.namespace}
        else:
            return {"name": ref.name}

    def list_fn(
        self, api_client: ApiClient, namespace: Optional[str]
    ) -> tuple[_Fn, dict[str, Any]]:

        api = CoreV1Api(api_client)

        if not self.namespaced:
            return getattr(api, f"list_{self.snake_name}"), {}
        elif namespace is None:
            fn = getattr(api, f"list_{self.snake_name}_for_all_namespaces")
            return fn, {}
        else:
            fn = getattr(api, f"list_namespaced_{self.snake_name}")
            return fn, {"namespace": namespace}


@dataclass(frozen=True)
class _CustomKind:

    plural: str
    namespaced: bool

    @property
    def api_version(self) -> str:
        return f"{CRD_GROUP}/{CRD_VERSION}"

    def fn(self, api_client: ApiClient, verb: str, suffix: str = "") -> _Fn:
        scope = "namespaced" if self.namespaced else "cluster"
        method = f"{verb}_{scope}_custom_object{suffix}"
        return getattr(CustomObjectsApi(api_client), method)  # type: ignore

    def object_kwargs(self, ref: ObjectRef) -> dict[str, Any]:

        kwargs = {
            "group": CRD_GROUP,
            "version": CRD_VERSION,
            "plural": self.plural,
            "name": ref.name,
        }

        if self.namespaced:
            kwargs["namespace"] = ref.namespace

        return kwargs

    def list_fn(
        self, api_client: ApiClient, namespace: Optional[str]
    ) -> tuple[_Fn, dict[str, Any]]:

        api = CustomObjectsApi(api_client)
        kwargs = {
            "group": CRD_GROUP,
            "version": CRD_VERSION,
            "plural": self.plural,
        }

        if namespace is None:
            return api.list_cluster_custom_object, kwargs
        else:
            kwargs["namespace"] = namespace
            return api.list_namespaced_custom_object, kwargs


_Kind = Union[_CoreKind, _CustomKind]

_KINDS: Mapping[str, _Kind] = {
    "Endpoints": _CoreKind("v1", "endpoints", namespaced=True),
    "Node": _CoreKind("v1", "node", namespaced=False),
    "PersistentVolume": _CoreKind("v1", "persistent_volume", namespaced=False),
    "PersistentVolumeClaim": _CoreKind(
        "v1", "persistent_volume_claim", namespaced=True
    ),
    "Pod": _CoreKind("v1", "pod", namespaced=True),
    "Service": _CoreKind("v1", "service", namespaced=True),
    LISTENER_KIND: _CustomKind(LISTENER_PLURAL, namespaced=True),
    LISTENER_CLASS_KIND: _CustomKind(LISTENER_CLASS_PLURAL, namespaced=False),
    POD_LISTENERS_KIND: _CustomKind(POD_LISTENERS_PLURAL, namespaced=True),
}


def api_version_of(kind: str) -> str:
    return _KINDS[kind].api_version


# ---------------------------------------------------------------------------- #


class Client:
    """
    Asynchronous access to the cluster's object store.

    All objects are exchanged as plain dictionaries, using the same camelCase
    field names as the Kubernetes API. Every failure is raised as an
    `ObjectStoreError`, or as an `ObjectNotFound` if the object does not exist.
    """

    api_client: ApiClient

    def __init__(self, api_client: ApiClient) -> None:
        self.api_client = api_client

    async def get(self, ref: ObjectRef) -> dict[str, Any]:

        kind = _KINDS[ref.kind]

        obj = await self.__call(
            "get",
            ref,
            kind.fn(self.api_client, "get" if _is_custom(kind) else "read"),
            **kind.object_kwargs(ref),
        )

        return self.__to_dict(ref.kind, obj)

    async def get_opt(self, ref: ObjectRef) -> Optional[dict[str, Any]]:
        """Like `get()`, but returns `None` if the object does not exist."""

        try:
            return await self.get(ref)
        except ObjectNotFound:
            return None

    async def list_objects(
        self,
        kind_name: str,
        *,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:

        kind = _KINDS[kind_name]
        list_fn, kwargs = kind.list_fn(self.api_client, namespace)

        ref = ObjectRef(kind=kind_name, name="*", namespace=namespace)

        objects = await self.__call(
            "list", ref, list_fn, label_selector=label_selector, **kwargs
        )

        objects = self.__to_dict(kind_name, objects)

        return [
            {"apiVersion": kind.api_version, "kind": kind_name} | obj
            for obj in objects["items"]
        ]

    async def apply(
        self, field_manager: str, body: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Server-side apply `body`, taking ownership of all fields it sets away
        from any other field manager."""

        ref = ObjectRef.from_obj(body)
        kind = _KINDS[ref.kind]

        obj = await self.__call(
            "apply",
            ref,
            kind.fn(self.api_client, "patch"),
            **kind.object_kwargs(ref),
            body=body,
            field_manager=field_manager,
            force=True,
            _content_type=APPLY_PATCH,
        )

        return self.__to_dict(ref.kind, obj)

    async def apply_status(
        self, field_manager: str, body: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Like `apply()`, but against the status subresource."""

        ref = ObjectRef.from_obj(body)
        kind = _KINDS[ref.kind]

        obj = await self.__call(
            "apply status of",
            ref,
            kind.fn(self.api_client, "patch", "_status"),
            **kind.object_kwargs(ref),
            body=body,
            field_manager=field_manager,
            force=True,
            _content_type=APPLY_PATCH,
        )

        return self.__to_dict(ref.kind, obj)

    async def merge_patch(
        self, ref: ObjectRef, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        """JSON merge patch. Unlike `apply()`, never removes fields that were
        previously set by the same caller."""

        kind = _KINDS[ref.kind]

        obj = await self.__call(
            "patch",
            ref,
            kind.fn(self.api_client, "patch"),
            **kind.object_kwargs(ref),
            body=patch,
            _content_type=MERGE_PATCH,
        )

        return self.__to_dict(ref.kind, obj)

    async def create_if_missing(self, body: Mapping[str, Any]) -> bool:
        """Returns whether the object was created."""

        ref = ObjectRef.from_obj(body)
        kind = _KINDS[ref.kind]

        kwargs = kind.object_kwargs(ref)
        del kwargs["name"]

        try:
            await self.__call(
                "create",
                ref,
                kind.fn(self.api_client, "create"),
                **kwargs,
                body=body,
            )
        except ObjectStoreError as e:
            cause = e.__cause__
            if isinstance(cause, ApiException) and (
                cause.status == HTTPStatus.CONFLICT
            ):
                return False  # already exists
            raise

        return True

    async def __call(
        self, verb: str, ref: ObjectRef, fn: _Fn, **kwargs: Any
    ) -> Any:

        try:
            return await fn(**kwargs)
        except ApiException as e:
            if e.status == HTTPStatus.NOT_FOUND:
                raise ObjectNotFound(verb, ref) from e
            else:
                raise ObjectStoreError(verb, ref) from e

    def __to_dict(self, kind_name: str, obj: Any) -> Any:

        if _is_custom(_KINDS[kind_name]):
            return obj  # custom objects are already returned as dicts

        obj = self.api_client.sanitize_for_serialization(obj)

        if "metadata" in obj and "items" not in obj:
            obj = {"apiVersion": "v1", "kind": kind_name} | obj

        return obj


def _is_custom(kind: _Kind) -> bool:
    return isinstance(kind, _CustomKind)


# ---------------------------------------------------------------------------- #

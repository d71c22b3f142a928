from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, ApiextensionsV1Api, CustomObjectsApi

from fnctl.src.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)
from fnctl.src.function import GROUP, KIND, PLURAL, VERSION, Function

LOGGER = logging.getLogger(__name__)


def _translate_api_exception(exc: ApiException, step: str, resource: str) -> StoreError:
    """Map a Kubernetes API failure onto the store error taxonomy."""
    message = f"Failed to {step} function {resource}: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message, status=exc.status)
    if exc.status == 409:
        if step == "create":
            return AlreadyExistsError(message, status=exc.status)
        return ConflictError(message, status=exc.status)
    return StoreError(message, status=exc.status)


class FunctionClient:
    """CRUD and list/watch access to Function custom resources.

    Wraps :class:`~kubernetes.client.CustomObjectsApi` so that callers work
    with :class:`~fnctl.src.function.Function` instances and the controller's
    own error types instead of raw dicts and ``ApiException``.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        apiextensions_api: ApiextensionsV1Api | None = None,
        group: str = GROUP,
        version: str = VERSION,
        plural: str = PLURAL,
    ) -> None:
        self.custom_api = custom_api
        self.apiextensions_api = apiextensions_api
        self.group = group
        self.version = version
        self.plural = plural

    @property
    def list_func(self) -> Callable[..., Any]:
        """The raw list callable, suitable for ``kubernetes.watch.Watch().stream``."""
        return self.custom_api.list_namespaced_custom_object

    def resource_kwargs(self, namespace: str) -> dict[str, str]:
        return {
            "group": self.group,
            "version": self.version,
            "namespace": namespace,
            "plural": self.plural,
        }

    def create(self, function: Function) -> Function:
        body = function.to_dict()
        body["metadata"].pop("resourceVersion", None)
        try:
            created = self.custom_api.create_namespaced_custom_object(
                body=body, **self.resource_kwargs(function.namespace)
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, "create", function.namespaced_name) from exc
        return Function.from_dict(created)

    def update(self, function: Function) -> Function:
        """Replace the stored object, status included.

        The ``resourceVersion`` of ``function`` is sent along, so a concurrent
        write surfaces as :class:`ConflictError`.
        """
        try:
            updated = self.custom_api.replace_namespaced_custom_object(
                name=function.name,
                body=function.to_dict(),
                **self.resource_kwargs(function.namespace),
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, "update", function.namespaced_name) from exc
        return Function.from_dict(updated)

    def get(self, namespace: str, name: str) -> Function:
        try:
            raw = self.custom_api.get_namespaced_custom_object(
                name=name, **self.resource_kwargs(namespace)
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, "get", f"{namespace}.{name}") from exc
        return Function.from_dict(raw)

    def delete(self, namespace: str, name: str) -> None:
        try:
            self.custom_api.delete_namespaced_custom_object(
                name=name, **self.resource_kwargs(namespace)
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, "delete", f"{namespace}.{name}") from exc

    def list(self, namespace: str, label_selector: str | None = None) -> list[Function]:
        functions, _ = self.list_for_watch(namespace, label_selector=label_selector)
        return functions

    def list_for_watch(
        self, namespace: str, label_selector: str | None = None
    ) -> tuple[list[Function], str | None]:
        """List Functions and return the list's ``resourceVersion`` for a follow-up watch."""
        kwargs: dict[str, Any] = self.resource_kwargs(namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            raw = self.custom_api.list_namespaced_custom_object(**kwargs)
        except ApiException as exc:
            raise _translate_api_exception(exc, "list", namespace) from exc
        items = raw.get("items") or []
        resource_version = (raw.get("metadata") or {}).get("resourceVersion")
        return [Function.from_dict(item) for item in items], resource_version

    def crd_body(self) -> dict[str, Any]:
        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": f"{self.plural}.{self.group}"},
            "spec": {
                "group": self.group,
                "scope": "Namespaced",
                "names": {
                    "singular": KIND.lower(),
                    "plural": self.plural,
                    "kind": KIND,
                    "listKind": f"{KIND}List",
                },
                "versions": [
                    {
                        "name": self.version,
                        "served": True,
                        "storage": True,
                        "schema": {
                            "openAPIV3Schema": {
                                "type": "object",
                                "x-kubernetes-preserve-unknown-fields": True,
                            }
                        },
                    }
                ],
            },
        }

    def create_resource(self, poll_interval_seconds: float = 0.1, timeout_seconds: float = 60) -> None:
        """Register the Function CRD (idempotently) and wait until it is served."""
        if self.apiextensions_api is None:
            raise StoreError("Cannot register the Function resource without an apiextensions client")

        LOGGER.debug("Creating resource %s.%s", self.plural, self.group)
        try:
            self.apiextensions_api.create_custom_resource_definition(body=self.crd_body())
            LOGGER.info("Created resource %s.%s", self.plural, self.group)
        except ApiException as exc:
            if exc.status != 409:
                raise StoreError(
                    f"Failed to create custom resource {self.plural}.{self.group}: "
                    f"{exc.status} {exc.reason}",
                    status=exc.status,
                ) from exc
            LOGGER.debug("Resource already existed, skipping creation")

        self.wait_for_resource(poll_interval_seconds, timeout_seconds)

    def wait_for_resource(self, poll_interval_seconds: float = 0.1, timeout_seconds: float = 60) -> None:
        """Poll until the API server serves the Function resource.

        A freshly registered CRD answers ``404`` for a short while; any other
        failure stops the wait immediately.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                self.custom_api.list_cluster_custom_object(
                    group=self.group, version=self.version, plural=self.plural, limit=1
                )
                LOGGER.debug("Resource %s.%s is ready", self.plural, self.group)
                return
            except ApiException as exc:
                if exc.status != 404:
                    raise StoreError(
                        f"Failed waiting for resource {self.plural}.{self.group}: "
                        f"{exc.status} {exc.reason}",
                        status=exc.status,
                    ) from exc
            if time.monotonic() >= deadline:
                raise StoreError(
                    f"Timed out after {timeout_seconds:g}s waiting for resource "
                    f"{self.plural}.{self.group}"
                )
            time.sleep(poll_interval_seconds)

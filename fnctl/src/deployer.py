from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import (
    ApiException,
    AppsV1Api,
    AutoscalingV1Api,
    CoreV1Api,
    V1Container,
    V1ContainerPort,
    V1CrossVersionObjectReference,
    V1DeleteOptions,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1HorizontalPodAutoscaler,
    V1HorizontalPodAutoscalerSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from fnctl.src.errors import ApplyError
from fnctl.src.function import LATEST, NAME_LABEL, VERSION_LABEL, Function

CONTAINER_NAME = "function"
CONTAINER_HTTP_PORT = 8080
CLASS_LABELS = {"serverless": "fnctl"}
HPA_DEFAULT_MIN_REPLICAS = 1
HPA_DEFAULT_MAX_REPLICAS = 4
HPA_TARGET_CPU_PERCENT = 80


@dataclass(frozen=True)
class DeploymentRef:
    """Where a Function ended up after a successful apply."""

    namespace: str
    name: str
    replicas: int
    node_port: int | None = None
    autoscaled: bool = False


def function_labels(function: Function) -> dict[str, str]:
    """Function labels plus the class labels that mark generated resources."""
    return {**function.labels, **CLASS_LABELS}


def selector_labels(function: Function) -> dict[str, str]:
    return {
        **CLASS_LABELS,
        NAME_LABEL: function.labels.get(NAME_LABEL, function.name),
        VERSION_LABEL: function.labels.get(VERSION_LABEL, LATEST),
    }


def function_replicas(function: Function) -> int:
    if function.spec.disable:
        return 0
    return function.spec.replicas or function.spec.min_replicas or 1


def autoscaled(function: Function) -> bool:
    """A Function without a fixed replica count is scaled by an HPA, unless disabled."""
    return not function.spec.replicas and not function.spec.disable


def hpa_bounds(function: Function) -> tuple[int, int]:
    min_replicas = function.spec.min_replicas or HPA_DEFAULT_MIN_REPLICAS
    max_replicas = function.spec.max_replicas or HPA_DEFAULT_MAX_REPLICAS
    return min_replicas, max(min_replicas, max_replicas)


def function_annotations(function: Function) -> dict[str, str]:
    annotations: dict[str, str] = {}
    if function.spec.description:
        annotations["description"] = function.spec.description
    annotations["func_json"] = json.dumps(
        function.spec.to_dict(), separators=(",", ":"), sort_keys=True
    )
    annotations["func_gen"] = function.resource_version
    return annotations


def function_env(function: Function, labels: dict[str, str]) -> list[V1EnvVar]:
    env = [
        V1EnvVar(name=str(item.get("name", "")), value=str(item.get("value", "")))
        for item in function.spec.env
        if isinstance(item, dict) and item.get("name")
    ]
    env.append(V1EnvVar(name="FNCTL_FUNCTION_NAME", value=labels.get(NAME_LABEL, "")))
    env.append(V1EnvVar(name="FNCTL_FUNCTION_VERSION", value=labels.get(VERSION_LABEL, "")))

    for binding_name, binding in sorted(function.spec.data_bindings.items()):
        prefix = f"FNCTL_DATA_BINDING_{binding_name}_"
        binding = binding if isinstance(binding, dict) else {}
        env.append(V1EnvVar(name=f"{prefix}CLASS", value=str(binding.get("class", ""))))
        env.append(V1EnvVar(name=f"{prefix}URL", value=str(binding.get("url", ""))))
    return env


def service_ports(function: Function, existing: list[Any] | None) -> list[Any]:
    """Return the service ports for ``function``.

    A node port the cluster already assigned is kept when the Function asks
    for automatic assignment (``http_port == 0``); otherwise the port is
    (re)set from ``spec.http_port``.
    """
    if existing and getattr(existing[0], "node_port", None) and not function.spec.http_port:
        return existing
    return [
        V1ServicePort(
            name="web",
            port=CONTAINER_HTTP_PORT,
            node_port=function.spec.http_port or None,
        )
    ]


class DeploymentApplier:
    """Converges the Service, Deployment and autoscaler generated for a Function."""

    def __init__(
        self,
        apps_api: AppsV1Api,
        core_api: CoreV1Api,
        autoscaling_api: AutoscalingV1Api,
        delete_poll_interval_seconds: float = 1.0,
        delete_wait_timeout_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.core_api = core_api
        self.autoscaling_api = autoscaling_api
        self.delete_poll_interval_seconds = delete_poll_interval_seconds
        self.delete_wait_timeout_seconds = delete_wait_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def create_or_update(self, function: Function) -> DeploymentRef:
        labels = function_labels(function)
        service = self._create_or_update_service(labels, function)
        deployment = self._create_or_update_deployment(labels, function)
        hpa = self._create_or_update_hpa(labels, function)

        ports = getattr(getattr(service, "spec", None), "ports", None) or []
        node_port = getattr(ports[0], "node_port", None) if ports else None
        replicas = getattr(getattr(deployment, "spec", None), "replicas", None)
        self.logger.debug("Deployment created/updated for %s", function.namespaced_name)
        return DeploymentRef(
            namespace=function.namespace,
            name=function.name,
            replicas=function_replicas(function) if replicas is None else replicas,
            node_port=node_port,
            autoscaled=hpa is not None,
        )

    def delete(self, namespace: str, name: str) -> None:
        """Delete the generated HPA, Service and Deployment; missing objects are fine."""
        options = V1DeleteOptions(propagation_policy="Foreground")
        for kind, delete_fn in (
            ("HPA", self.autoscaling_api.delete_namespaced_horizontal_pod_autoscaler),
            ("service", self.core_api.delete_namespaced_service),
            ("deployment", self.apps_api.delete_namespaced_deployment),
        ):
            try:
                delete_fn(name=name, namespace=namespace, body=options)
                self.logger.debug("Deleted %s %s.%s", kind, namespace, name)
            except ApiException as exc:
                if exc.status == 404:
                    continue
                raise ApplyError(
                    f"Failed to delete {kind} {namespace}.{name}: {exc.status} {exc.reason}"
                ) from exc

    def _read_unless_terminating(
        self, kind: str, read_fn: Callable[..., Any], function: Function
    ) -> Any | None:
        """Read an existing object, waiting out a pending deletion.

        Returns ``None`` when there is nothing to update and the object has to
        be created.
        """
        deadline = time.monotonic() + self.delete_wait_timeout_seconds
        while True:
            try:
                existing = read_fn(name=function.name, namespace=function.namespace)
            except ApiException as exc:
                if exc.status == 404:
                    return None
                raise ApplyError(
                    f"Failed to get {kind} {function.namespaced_name}: {exc.status} {exc.reason}"
                ) from exc

            metadata = getattr(existing, "metadata", None)
            if getattr(metadata, "deletion_timestamp", None) is None:
                return existing

            if time.monotonic() >= deadline:
                raise ApplyError(
                    f"Timed out waiting for {kind} {function.namespaced_name} to delete"
                )
            self.logger.debug("%s %s is deleting, waiting", kind.capitalize(), function.namespaced_name)
            time.sleep(self.delete_poll_interval_seconds)

    def _create_or_update_service(self, labels: dict[str, str], function: Function) -> Any:
        existing = self._read_unless_terminating(
            "service", self.core_api.read_namespaced_service, function
        )
        selector = selector_labels(function)
        try:
            if existing is None:
                body = V1Service(
                    metadata=V1ObjectMeta(
                        name=function.name, namespace=function.namespace, labels=labels
                    ),
                    spec=V1ServiceSpec(
                        type="NodePort",
                        selector=selector,
                        ports=service_ports(function, None),
                    ),
                )
                service = self.core_api.create_namespaced_service(
                    namespace=function.namespace, body=body
                )
                self.logger.debug(
                    "Service created for %s (http_port=%s)",
                    function.namespaced_name,
                    function.spec.http_port,
                )
                return service

            existing.metadata.labels = labels
            existing.spec.type = "NodePort"
            existing.spec.selector = selector
            existing.spec.ports = service_ports(function, existing.spec.ports)
            service = self.core_api.replace_namespaced_service(
                name=function.name, namespace=function.namespace, body=existing
            )
            self.logger.debug(
                "Service updated for %s (http_port=%s)",
                function.namespaced_name,
                function.spec.http_port,
            )
            return service
        except ApiException as exc:
            raise ApplyError(
                f"Failed to create/update service {function.namespaced_name}: "
                f"{exc.status} {exc.reason}"
            ) from exc

    def _populate_container(
        self, container: V1Container, labels: dict[str, str], function: Function
    ) -> V1Container:
        resources = function.spec.resources or {}
        container.image = function.spec.image or None
        container.working_dir = function.spec.working_dir or None
        container.resources = (
            V1ResourceRequirements(
                limits=resources.get("limits"), requests=resources.get("requests")
            )
            if resources
            else None
        )
        container.env = function_env(function, labels)
        container.ports = [V1ContainerPort(container_port=CONTAINER_HTTP_PORT)]
        return container

    def _create_or_update_deployment(self, labels: dict[str, str], function: Function) -> Any:
        existing = self._read_unless_terminating(
            "deployment", self.apps_api.read_namespaced_deployment, function
        )
        replicas = function_replicas(function)
        annotations = function_annotations(function)
        try:
            if existing is None:
                container = self._populate_container(
                    V1Container(name=CONTAINER_NAME), labels, function
                )
                body = V1Deployment(
                    metadata=V1ObjectMeta(
                        name=function.name,
                        namespace=function.namespace,
                        labels=labels,
                        annotations=annotations,
                    ),
                    spec=V1DeploymentSpec(
                        replicas=replicas,
                        selector=V1LabelSelector(match_labels=selector_labels(function)),
                        template=V1PodTemplateSpec(
                            metadata=V1ObjectMeta(labels={**labels, **selector_labels(function)}),
                            spec=V1PodSpec(containers=[container]),
                        ),
                    ),
                )
                deployment = self.apps_api.create_namespaced_deployment(
                    namespace=function.namespace, body=body
                )
                self.logger.debug("Deployment created for %s", function.namespaced_name)
                return deployment

            existing.metadata.labels = labels
            existing.metadata.annotations = annotations
            existing.spec.replicas = replicas
            existing.spec.template.metadata.labels = {**labels, **selector_labels(function)}
            containers = existing.spec.template.spec.containers or []
            if not containers:
                containers = [V1Container(name=CONTAINER_NAME)]
                existing.spec.template.spec.containers = containers
            self._populate_container(containers[0], labels, function)
            deployment = self.apps_api.replace_namespaced_deployment(
                name=function.name, namespace=function.namespace, body=existing
            )
            self.logger.debug("Deployment updated for %s", function.namespaced_name)
            return deployment
        except ApiException as exc:
            raise ApplyError(
                f"Failed to create/update deployment {function.namespaced_name}: "
                f"{exc.status} {exc.reason}"
            ) from exc

    def _create_or_update_hpa(self, labels: dict[str, str], function: Function) -> Any | None:
        """Keep an autoscaler exactly while the Function leaves scaling to the cluster."""
        try:
            existing = self.autoscaling_api.read_namespaced_horizontal_pod_autoscaler(
                name=function.name, namespace=function.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                raise ApplyError(
                    f"Failed to get HPA {function.namespaced_name}: {exc.status} {exc.reason}"
                ) from exc
            existing = None

        try:
            if not autoscaled(function):
                if existing is not None:
                    self.autoscaling_api.delete_namespaced_horizontal_pod_autoscaler(
                        name=function.name, namespace=function.namespace
                    )
                    self.logger.debug(
                        "HPA for %s no longer needed, deleted", function.namespaced_name
                    )
                return None

            min_replicas, max_replicas = hpa_bounds(function)
            if existing is None:
                body = V1HorizontalPodAutoscaler(
                    metadata=V1ObjectMeta(
                        name=function.name, namespace=function.namespace, labels=labels
                    ),
                    spec=V1HorizontalPodAutoscalerSpec(
                        min_replicas=min_replicas,
                        max_replicas=max_replicas,
                        target_cpu_utilization_percentage=HPA_TARGET_CPU_PERCENT,
                        scale_target_ref=V1CrossVersionObjectReference(
                            api_version="apps/v1", kind="Deployment", name=function.name
                        ),
                    ),
                )
                hpa = self.autoscaling_api.create_namespaced_horizontal_pod_autoscaler(
                    namespace=function.namespace, body=body
                )
                self.logger.debug(
                    "HPA created for %s (%d-%d replicas)",
                    function.namespaced_name,
                    min_replicas,
                    max_replicas,
                )
                return hpa

            existing.metadata.labels = labels
            existing.spec.min_replicas = min_replicas
            existing.spec.max_replicas = max_replicas
            existing.spec.target_cpu_utilization_percentage = HPA_TARGET_CPU_PERCENT
            hpa = self.autoscaling_api.replace_namespaced_horizontal_pod_autoscaler(
                name=function.name, namespace=function.namespace, body=existing
            )
            self.logger.debug("HPA updated for %s", function.namespaced_name)
            return hpa
        except ApiException as exc:
            raise ApplyError(
                f"Failed to create/update HPA {function.namespaced_name}: "
                f"{exc.status} {exc.reason}"
            ) from exc

from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import (
    ApiextensionsV1Api,
    AppsV1Api,
    AutoscalingV1Api,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    custom_api: CustomObjectsApi
    apps_api: AppsV1Api
    core_api: CoreV1Api
    autoscaling_api: AutoscalingV1Api
    apiextensions_api: ApiextensionsV1Api


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development. An explicit ``kubeconfig`` path
    skips the in-cluster attempt.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the controller needs, using the active kube configuration."""
    return KubeClients(
        custom_api=client.CustomObjectsApi(),
        apps_api=client.AppsV1Api(),
        core_api=client.CoreV1Api(),
        autoscaling_api=client.AutoscalingV1Api(),
        apiextensions_api=client.ApiextensionsV1Api(),
    )

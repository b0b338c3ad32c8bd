"""Client wrappers for Kubernetes, the image registry, and node agents."""

from __future__ import annotations

import os

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config import new_client_from_config


def load_k8s_api_client(context: str | None = None) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client.

    With no context and a ``KUBERNETES_SERVICE_HOST`` in the environment, the
    in-cluster service account is used. Otherwise the named (or current)
    kubeconfig context is loaded. Neither path mutates the global SDK configuration.
    """
    if context is None and os.environ.get("KUBERNETES_SERVICE_HOST"):
        configuration = k8s_client.Configuration()
        k8s_config.load_incluster_config(client_configuration=configuration)
        return k8s_client.ApiClient(configuration)
    return new_client_from_config(context=context)

"""Kubernetes client wrapper for the downstream and management clusters."""

from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi, StorageV1Api, VersionApi
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from kub_voldiag.errors import ClusterUnreachableError

logger = logging.getLogger(__name__)


class K8sClient:
    """Wraps the Kubernetes Python client for one kubeconfig context.

    Each instance owns a private ApiClient, so the downstream and management
    clusters can be queried side by side from the same process.
    """

    def __init__(self, kubeconfig: str | None = None, context: str | None = None):
        self.kubeconfig = kubeconfig
        self.context = context
        self._api_client: client.ApiClient | None = None

    def connect(self) -> None:
        """Load kubeconfig for this context and create the API client."""
        try:
            self._api_client = config.new_client_from_config(
                config_file=self.kubeconfig,
                context=self.context,
            )
        except ConfigException:
            if self.context:
                raise
            # Fall back to in-cluster config (running inside a pod)
            config.load_incluster_config()
            self._api_client = client.ApiClient()

    @property
    def api(self) -> client.ApiClient:
        if self._api_client is None:
            raise RuntimeError("K8sClient not connected. Call connect() first.")
        return self._api_client

    @property
    def core_v1(self) -> CoreV1Api:
        return CoreV1Api(self.api)

    @property
    def storage_v1(self) -> StorageV1Api:
        return StorageV1Api(self.api)

    @property
    def custom_objects(self) -> CustomObjectsApi:
        return CustomObjectsApi(self.api)

    def check_reachable(self) -> None:
        """Raise ClusterUnreachableError unless the API server answers."""
        try:
            VersionApi(self.api).get_code()
        except Exception as exc:
            logger.debug("Version request for context %s failed: %s", self.context, exc)
            raise ClusterUnreachableError(self.context or "in-cluster", str(exc)) from exc

    def namespace_exists(self, name: str) -> bool:
        """Return True if the namespace exists, False on 404."""
        try:
            self.core_v1.read_namespace(name)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise ClusterUnreachableError(self.context or "in-cluster", str(exc)) from exc
        except Exception as exc:
            logger.debug("Namespace lookup on context %s failed: %s", self.context, exc)
            raise ClusterUnreachableError(self.context or "in-cluster", str(exc)) from exc
        return True

    def get_cluster_name(self) -> str:
        """Return the cluster name of this client's context from kubeconfig."""
        try:
            contexts, active_context = config.list_kube_config_contexts(
                config_file=self.kubeconfig,
            )
        except ConfigException:
            return "in-cluster"
        selected = active_context
        if self.context:
            selected = next((c for c in contexts if c.get("name") == self.context), active_context)
        return selected.get("context", {}).get("cluster", "unknown")

    def get_context_name(self) -> str:
        """Return this client's context name."""
        if self.context:
            return self.context
        try:
            _, active_context = config.list_kube_config_contexts(
                config_file=self.kubeconfig,
            )
            return active_context.get("name", "unknown")
        except ConfigException:
            return "in-cluster"

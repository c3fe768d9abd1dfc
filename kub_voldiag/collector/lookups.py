"""Point lookups against the management cluster.

These are the only per-volume network calls of a run: the management PVC used
for identity resolution, the block-storage volume, and pod existence lookups
for ghost detection. A failed lookup of any kind is reported as "absent";
transient API errors and true absence are deliberately not distinguished.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from kub_voldiag.k8s_client import K8sClient

logger = logging.getLogger(__name__)

LONGHORN_GROUP = "longhorn.io"
LONGHORN_VERSION = "v1beta2"

DEFAULT_REQUEST_TIMEOUT = 10.0


class Lookups(Protocol):
    """Point-lookup interface used by the identity resolver and analyzer."""

    def get_pvc_volume_name(self, namespace: str, name: str) -> str | None: ...

    def get_block_volume(self, namespace: str, name: str) -> dict[str, Any] | None: ...

    def pod_exists(self, namespace: str, name: str) -> bool: ...

    def pod_phase(self, namespace: str, name: str) -> str | None: ...


class ManagementLookups:
    """Lookups backed by a connected management-cluster K8sClient.

    Every call is bounded by `request_timeout` seconds.
    """

    def __init__(self, k8s: K8sClient, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.k8s = k8s
        self.request_timeout = request_timeout

    def get_pvc_volume_name(self, namespace: str, name: str) -> str | None:
        """Return spec.volumeName of the PVC, or None if it is missing or unbound."""
        try:
            pvc = self.k8s.core_v1.read_namespaced_persistent_volume_claim(
                name, namespace, _request_timeout=self.request_timeout
            )
        except Exception as exc:
            logger.debug("PVC %s/%s lookup failed: %s", namespace, name, exc)
            return None
        return (pvc.spec.volume_name if pvc.spec else None) or None

    def get_block_volume(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the Longhorn volume custom object, or None."""
        try:
            return self.k8s.custom_objects.get_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=namespace,
                plural="volumes",
                name=name,
                _request_timeout=self.request_timeout,
            )
        except Exception as exc:
            logger.debug("Block volume %s/%s lookup failed: %s", namespace, name, exc)
            return None

    def pod_phase(self, namespace: str, name: str) -> str | None:
        """Return the pod's phase, or None if it cannot be read."""
        try:
            pod = self.k8s.core_v1.read_namespaced_pod(
                name, namespace, _request_timeout=self.request_timeout
            )
        except Exception as exc:
            logger.debug("Pod %s/%s lookup failed: %s", namespace, name, exc)
            return None
        return (pod.status.phase if pod.status else None) or "Unknown"

    def pod_exists(self, namespace: str, name: str) -> bool:
        return self.pod_phase(namespace, name) is not None

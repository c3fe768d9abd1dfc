"""Cluster snapshot collector.

Queries every bulk list the analysis needs exactly once and stores the results
as typed records in a ClusterSnapshot. The per-volume analyzer only filters and
joins over this snapshot; the only calls it makes afterwards are point lookups
(see collector.lookups).
"""

from __future__ import annotations

import logging
from typing import Any

from rich.progress import Progress

from kub_voldiag.errors import ClusterUnreachableError
from kub_voldiag.k8s_client import K8sClient
from kub_voldiag.models import (
    UNSCHEDULED,
    AttachmentRecord,
    ClusterSnapshot,
    MachineInstanceRecord,
    MachineRecord,
    PersistentVolumeRecord,
    PodRecord,
    VolumeRequest,
)

logger = logging.getLogger(__name__)

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"


def _required_list(context: str, func: Any, *args: Any, **kwargs: Any) -> list[Any]:
    """Call a K8s list API and return .items; any failure aborts the run."""
    try:
        result = func(*args, **kwargs)
    except Exception as exc:
        logger.debug("API call %s failed: %s", func.__name__, exc)
        raise ClusterUnreachableError(context, f"{func.__name__} failed: {exc}") from exc
    return result.items if hasattr(result, "items") else []


def _safe_custom_list(func: Any, **kwargs: Any) -> list[dict[str, Any]]:
    """Call a CustomObjectsApi list and return its items, swallowing 403/404 errors."""
    try:
        result = func(**kwargs)
        return result.get("items", [])
    except Exception as exc:
        # Forbidden (RBAC), or the CRD is not installed
        logger.warning("Custom object list %s failed: %s", kwargs.get("plural", "?"), exc)
        return []


# ---------------------------------------------------------------------------
# Raw object -> record converters
# ---------------------------------------------------------------------------


def pv_from_api(pv: Any) -> PersistentVolumeRecord:
    spec = pv.spec
    claim = spec.claim_ref if spec else None
    modes = (spec.access_modes if spec else None) or []
    return PersistentVolumeRecord(
        name=pv.metadata.name,
        phase=(pv.status.phase if pv.status else None) or "Unknown",
        claim_namespace=(claim.namespace if claim else None) or "",
        claim_name=(claim.name if claim else None) or "",
        access_mode=modes[0] if modes else "Unknown",
    )


def attachment_from_api(va: Any) -> AttachmentRecord:
    spec = va.spec
    source = spec.source if spec else None
    return AttachmentRecord(
        name=va.metadata.name,
        node=(spec.node_name if spec else None) or "",
        volume_name=(source.persistent_volume_name if source else None) or "",
        attached=bool(va.status and va.status.attached is True),
    )


def pod_from_api(pod: Any) -> PodRecord:
    spec = pod.spec
    claims = tuple(
        vol.persistent_volume_claim.claim_name
        for vol in ((spec.volumes if spec else None) or [])
        if vol.persistent_volume_claim and vol.persistent_volume_claim.claim_name
    )
    return PodRecord(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace or "",
        node=(spec.node_name if spec else None) or UNSCHEDULED,
        phase=(pod.status.phase if pod.status else None) or "Unknown",
        claim_names=claims,
    )


def machine_from_api(vm: dict[str, Any]) -> MachineRecord:
    template_spec = ((vm.get("spec") or {}).get("template") or {}).get("spec") or {}
    volumes = tuple(v.get("name", "") for v in template_spec.get("volumes") or [])

    requests: list[VolumeRequest] = []
    for req in (vm.get("status") or {}).get("volumeRequests") or []:
        add = req.get("addVolumeOptions") or {}
        remove = req.get("removeVolumeOptions") or {}
        if add.get("name"):
            requests.append(VolumeRequest("add", add["name"]))
        if remove.get("name"):
            requests.append(VolumeRequest("remove", remove["name"]))

    return MachineRecord(
        name=(vm.get("metadata") or {}).get("name", ""),
        volume_names=volumes,
        volume_requests=tuple(requests),
    )


def instance_from_api(vmi: dict[str, Any]) -> MachineInstanceRecord:
    volumes = tuple(v.get("name", "") for v in (vmi.get("spec") or {}).get("volumes") or [])
    return MachineInstanceRecord(
        name=(vmi.get("metadata") or {}).get("name", ""),
        volume_names=volumes,
    )


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


def collect_snapshot(
    downstream: K8sClient,
    management: K8sClient,
    namespace: str,
    cluster_label: str,
    cluster_name: str,
    progress: Progress | None = None,
) -> ClusterSnapshot:
    """Collect the bulk lists from both clusters.

    Args:
        downstream: Connected client for the workload cluster.
        management: Connected client for the virtualization-management cluster.
        namespace: Management namespace holding the downstream cluster's machines.
        cluster_label: Label key selecting machines that belong to the downstream cluster.
        cluster_name: Label value for `cluster_label`.
        progress: Optional Rich Progress bar to show collection status.
    """
    snap = ClusterSnapshot()
    ds_ctx = downstream.get_context_name()
    selector = f"{cluster_label}={cluster_name}"
    custom = management.custom_objects

    steps = 5
    if progress:
        task_id = progress.add_task("Collecting cluster state...", total=steps)

    def _advance(label: str) -> None:
        if progress:
            progress.update(task_id, description=f"Collected {label}")
            progress.advance(task_id)

    snap.pvs = [
        pv_from_api(pv)
        for pv in _required_list(ds_ctx, downstream.core_v1.list_persistent_volume)
    ]
    _advance("PersistentVolumes")

    snap.attachments = [
        attachment_from_api(va)
        for va in _required_list(ds_ctx, downstream.storage_v1.list_volume_attachment)
    ]
    _advance("VolumeAttachments")

    snap.pods = [
        pod_from_api(pod)
        for pod in _required_list(ds_ctx, downstream.core_v1.list_pod_for_all_namespaces)
    ]
    _advance("Pods")

    snap.machines = [
        machine_from_api(vm)
        for vm in _safe_custom_list(
            custom.list_namespaced_custom_object,
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural="virtualmachines",
            label_selector=selector,
        )
    ]
    _advance("VirtualMachines")

    snap.instances = [
        instance_from_api(vmi)
        for vmi in _safe_custom_list(
            custom.list_namespaced_custom_object,
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural="virtualmachineinstances",
            label_selector=selector,
        )
    ]
    _advance("VirtualMachineInstances")

    logger.debug(
        "Snapshot: %d PVs, %d VAs, %d pods, %d VMs, %d VMIs (selector %s)",
        len(snap.pvs),
        len(snap.attachments),
        len(snap.pods),
        len(snap.machines),
        len(snap.instances),
        selector,
    )
    return snap

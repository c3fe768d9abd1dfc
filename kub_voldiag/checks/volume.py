"""Per-volume analyzer.

Correlates one bound downstream volume across every place its attachment state
is recorded: downstream pods and VolumeAttachments, management-cluster VM and
VMI specs, the block-storage volume's workload status, and queued hotplug
requests. The checks run in a fixed order because later steps depend on the
active-pod count established by the pod step.

Detects: missing claims, multiple writers on single-writer volumes, stale and
mismatched VolumeAttachments, stale or conflicting VM/VMI spec references,
ghost workload-status entries, block-storage/spec disagreement, and stuck
add/remove volume requests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from functools import partial

from kub_voldiag.models import (
    ClusterSnapshot,
    PersistentVolumeRecord,
    Severity,
    VolumeAnalysis,
    WorkloadLiveness,
    WorkloadStatusEntry,
)
from kub_voldiag.resolver import IdentityResolver

logger = logging.getLogger(__name__)

DEFAULT_HOTPLUG_PREFIX = "hp-volume-"
DEFAULT_LAUNCHER_PREFIX = "virt-launcher-"


def analyze_volume(
    pv: PersistentVolumeRecord,
    snap: ClusterSnapshot,
    resolver: IdentityResolver,
    hotplug_prefix: str = DEFAULT_HOTPLUG_PREFIX,
    launcher_prefix: str = DEFAULT_LAUNCHER_PREFIX,
) -> VolumeAnalysis:
    """Run the seven ordered checks for one bound volume.

    Never raises for data problems: every inconsistency becomes a Finding on
    the returned VolumeAnalysis.
    """
    analysis = VolumeAnalysis(volume=pv.name)

    if not _check_claim(analysis, pv, resolver):
        return analysis

    _check_pods(analysis, pv, snap)
    _check_attachments(analysis, pv, snap)
    _check_machine_specs(analysis, snap)
    _check_block_storage(analysis, resolver, hotplug_prefix, launcher_prefix)
    _check_volume_requests(analysis, snap)

    logger.debug(
        "Analyzed %s: %d critical, %d warning, %d info",
        pv.name,
        analysis.critical_count,
        analysis.warning_count,
        analysis.info_count,
    )
    return analysis


def _check_claim(
    analysis: VolumeAnalysis, pv: PersistentVolumeRecord, resolver: IdentityResolver
) -> bool:
    """Step 1: claim reference and management-cluster identity.

    Returns False when analysis of this volume cannot continue.
    """
    analysis.access_mode = pv.access_mode

    if not pv.has_claim:
        analysis.add(Severity.CRITICAL, "No claim reference (unbound or released)")
        analysis.aborted = True
        return False

    analysis.claim_namespace = pv.claim_namespace
    analysis.claim_name = pv.claim_name

    analysis.identity = resolver.resolve(pv.name)
    if analysis.identity is None:
        analysis.add(Severity.WARNING, "No management-cluster PVC mapping")
    return True


def _check_pods(
    analysis: VolumeAnalysis, pv: PersistentVolumeRecord, snap: ClusterSnapshot
) -> None:
    """Step 2: partition pods using the claim into active and completed."""
    for pod in snap.pods_for_claim(pv.claim_namespace, pv.claim_name):
        if pod.is_active:
            analysis.active_pods.append(pod)
        else:
            analysis.completed_pods.append(pod)
        if pod.is_pending:
            analysis.pending_pods.append(pod.name)

    primary = analysis.primary_pod
    if analysis.active_pod_count > 1 and pv.single_writer:
        analysis.add(
            Severity.CRITICAL,
            f"Multiple active pods on {pv.access_mode} volume: "
            f"{', '.join(p.name for p in analysis.active_pods)}",
            primary.node if primary and primary.is_scheduled else None,
        )


def _check_attachments(
    analysis: VolumeAnalysis, pv: PersistentVolumeRecord, snap: ClusterSnapshot
) -> None:
    """Step 3: VolumeAttachments against the active pods."""
    analysis.attachments = snap.attachments_for(pv.name)
    primary = analysis.primary_pod

    if not analysis.attachments:
        if primary is not None:
            analysis.add(
                Severity.WARNING,
                "Active pod but no VolumeAttachment found",
                primary.node if primary.is_scheduled else None,
            )
        return

    for va in analysis.attachments:
        if primary is None:
            analysis.add(Severity.CRITICAL, "Stale VolumeAttachment (no active pods)", va.node)
        elif primary.is_scheduled and va.node != primary.node:
            analysis.add(
                Severity.CRITICAL,
                f"VolumeAttachment/pod node mismatch: VA={va.node}, Pod={primary.node}",
                va.node,
            )
        elif not va.attached:
            analysis.add(
                Severity.WARNING,
                "VolumeAttachment not attached despite active pod",
                va.node,
            )

    count = len(analysis.attachments)
    if count > 1 and pv.single_writer:
        for va in analysis.attachments:
            analysis.add(
                Severity.CRITICAL,
                f"{pv.access_mode} volume has {count} VolumeAttachments",
                va.node,
            )


def _check_machine_specs(analysis: VolumeAnalysis, snap: ClusterSnapshot) -> None:
    """Step 4: declared (VM) and live (VMI) spec references."""
    volume = analysis.volume
    vms = analysis.machines = snap.machines_referencing(volume)
    vmis = analysis.instances = snap.instances_referencing(volume)

    if len(vms) > 1:
        analysis.add(Severity.CRITICAL, f"Multiple VMs reference volume: {', '.join(vms)}")
    if len(vmis) > 1:
        analysis.add(Severity.CRITICAL, f"Multiple VMIs reference volume: {', '.join(vmis)}")

    if len(vms) != len(vmis):
        analysis.add(
            Severity.CRITICAL,
            f"VM/VMI count mismatch ({len(vms)} vs {len(vmis)})",
        )
    elif len(vms) == 1 and vms[0] != vmis[0]:
        analysis.add(
            Severity.CRITICAL,
            f"VM/VMI name mismatch: VM={vms[0]}, VMI={vmis[0]}",
        )

    if analysis.active_pod_count == 0:
        if vms:
            analysis.add(
                Severity.CRITICAL,
                f"Stale VM attachment (no active pods): {', '.join(vms)}",
                vms[0],
            )
        if vmis:
            analysis.add(
                Severity.CRITICAL,
                f"Stale VMI attachment (no active pods): {', '.join(vmis)}",
                vmis[0],
            )


def _check_entry_liveness(
    entry: WorkloadStatusEntry,
    resolver: IdentityResolver,
    hotplug_prefix: str,
    launcher_prefix: str,
) -> WorkloadLiveness:
    """Step 6: point-lookup liveness of the entry's hotplug pod and launcher."""
    pod_exists = None
    if entry.pod_name.startswith(hotplug_prefix):
        pod_exists = resolver.pod_exists(entry.pod_name)

    workload_exists = None
    workload_phase = ""
    if entry.workload_name.startswith(launcher_prefix):
        phase = resolver.pod_phase(entry.workload_name)
        workload_exists = phase is not None
        workload_phase = phase or ""

    return WorkloadLiveness(
        entry=entry,
        pod_exists=pod_exists,
        workload_exists=workload_exists,
        workload_phase=workload_phase,
    )


def _check_block_storage(
    analysis: VolumeAnalysis,
    resolver: IdentityResolver,
    hotplug_prefix: str,
    launcher_prefix: str,
) -> None:
    """Step 5: the block-storage volume's workload status."""
    identity = analysis.identity
    if identity is None:
        return

    status = resolver.block_status(identity)
    if status is None:
        analysis.add(
            Severity.WARNING,
            f"Block-storage volume {identity.block_volume} not found",
        )
        return
    analysis.block_status = status

    if not status.workloads:
        return

    entries = sorted(status.workloads, key=lambda e: (e.pod_name, e.workload_name))
    analysis.workload_liveness = [
        _check_entry_liveness(entry, resolver, hotplug_prefix, launcher_prefix) for entry in entries
    ]

    has_ghosts = any(w.is_ghost for w in analysis.workload_liveness)
    if has_ghosts or analysis.active_pod_count == 0:
        if status.last_pod_ref_at:
            analysis.add(Severity.INFO, "Stale workload status with ghost entries (cosmetic)")
        else:
            analysis.add(
                Severity.WARNING,
                "Stale workload status without lastPodRefAt (may require manual investigation)",
            )

    workload_vms = sorted({e.machine_name for e in entries if e.machine_name})
    if len(workload_vms) > 1:
        analysis.add(
            Severity.CRITICAL,
            f"Block-storage layer shows multi-VM attachment: {', '.join(workload_vms)}",
        )
    elif len(workload_vms) == 1 and len(analysis.machines) == 1:
        if workload_vms[0] != analysis.machines[0]:
            analysis.add(
                Severity.CRITICAL,
                f"Block-storage/VM spec mismatch: workload VM={workload_vms[0]}, "
                f"spec VM={analysis.machines[0]}",
            )


def _check_volume_requests(analysis: VolumeAnalysis, snap: ClusterSnapshot) -> None:
    """Step 7: add/remove volume requests stuck in VM status."""
    analysis.pending_requests = snap.pending_requests_for(analysis.volume)
    for vm, request in analysis.pending_requests:
        analysis.add(
            Severity.CRITICAL,
            f"Pending {request.action}VolumeRequest on VM {vm}",
            vm,
        )


def iter_volume_analyses(
    volumes: list[PersistentVolumeRecord],
    snap: ClusterSnapshot,
    resolver: IdentityResolver,
    workers: int = 8,
    timeout: float | None = None,
    hotplug_prefix: str = DEFAULT_HOTPLUG_PREFIX,
    launcher_prefix: str = DEFAULT_LAUNCHER_PREFIX,
) -> Iterator[VolumeAnalysis]:
    """Analyze volumes on a bounded thread pool, yielding results in input order.

    Each worker builds its own VolumeAnalysis, so no state is shared between
    threads. Raises concurrent.futures.TimeoutError if `timeout` seconds elapse
    before every volume has been analyzed; outstanding work is cancelled.
    """
    fn = partial(
        analyze_volume,
        snap=snap,
        resolver=resolver,
        hotplug_prefix=hotplug_prefix,
        launcher_prefix=launcher_prefix,
    )
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="voldiag")
    try:
        yield from executor.map(fn, volumes, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

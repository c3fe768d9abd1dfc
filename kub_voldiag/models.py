"""Data models for the volume diagnostic engine.

Core concepts:
- ClusterSnapshot: typed, point-in-time capture of both clusters' bulk lists
- Finding: a single detected inconsistency with severity and optional node
- VolumeAnalysis: the findings and evidence gathered for one bound volume
- DiagnosticReport: aggregated run output (summary counts, node impact, anomalies)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Access modes that permit a single concurrent attachment.
SINGLE_WRITER_MODES = frozenset({"ReadWriteOnce", "ReadWriteOncePod"})

# Pod phases that no longer hold a volume.
TERMINAL_POD_PHASES = frozenset({"Succeeded", "Completed", "Failed"})

UNSCHEDULED = "unscheduled"

_LAUNCHER_RE = re.compile(r"^virt-launcher-(.*)-[a-z0-9]*$")


class Severity(str, Enum):
    """Severity level for diagnostic findings."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def sort_order(self) -> int:
        return {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}[self]

    @property
    def is_issue(self) -> bool:
        """CRITICAL and WARNING mark a volume as having issues; INFO does not."""
        return self is not Severity.INFO


# ---------------------------------------------------------------------------
# Finding: a single detected inconsistency
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Finding:
    """A single diagnostic finding.

    `subject` is a volume name, or a synthetic key (e.g. ``orphaned-va-<name>``)
    for cluster-wide anomalies that are not tied to a known volume.
    """

    subject: str
    severity: Severity
    message: str
    node: str | None = None

    @property
    def display_text(self) -> str:
        if self.node:
            return f"{self.message} [{self.node}]"
        return self.message


# ---------------------------------------------------------------------------
# Snapshot records (normalised from raw API objects by the collector)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersistentVolumeRecord:
    name: str
    phase: str = "Unknown"
    claim_namespace: str = ""
    claim_name: str = ""
    access_mode: str = "Unknown"

    @property
    def is_bound(self) -> bool:
        return self.phase == "Bound"

    @property
    def has_claim(self) -> bool:
        return bool(self.claim_namespace and self.claim_name)

    @property
    def single_writer(self) -> bool:
        return self.access_mode in SINGLE_WRITER_MODES


@dataclass(frozen=True)
class AttachmentRecord:
    """A downstream VolumeAttachment."""

    name: str
    node: str
    volume_name: str
    attached: bool = False


@dataclass(frozen=True)
class PodRecord:
    name: str
    namespace: str
    node: str = UNSCHEDULED
    phase: str = "Unknown"
    claim_names: tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.phase not in TERMINAL_POD_PHASES

    @property
    def is_pending(self) -> bool:
        return self.phase == "Pending"

    @property
    def is_scheduled(self) -> bool:
        return bool(self.node) and self.node != UNSCHEDULED


@dataclass(frozen=True)
class VolumeRequest:
    """A queued hotplug request in a VirtualMachine's status."""

    action: str  # "add" or "remove"
    volume_name: str


@dataclass(frozen=True)
class MachineRecord:
    """A VirtualMachine: declared volumes plus queued volume requests."""

    name: str
    volume_names: tuple[str, ...] = ()
    volume_requests: tuple[VolumeRequest, ...] = ()


@dataclass(frozen=True)
class MachineInstanceRecord:
    """A VirtualMachineInstance: live volumes."""

    name: str
    volume_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkloadStatusEntry:
    pod_name: str
    pod_status: str = ""
    workload_name: str = ""
    workload_type: str = ""

    @property
    def machine_name(self) -> str:
        """Machine that owns the workload (``virt-launcher-<vm>-<hash>`` -> ``<vm>``)."""
        match = _LAUNCHER_RE.match(self.workload_name)
        if match:
            return match.group(1)
        return self.workload_name


@dataclass(frozen=True)
class BlockVolumeStatus:
    """The block-storage volume's kubernetesStatus record."""

    name: str
    last_pvc_ref_at: str | None = None
    last_pod_ref_at: str | None = None
    pv_name: str = ""
    pv_status: str = ""
    pvc_name: str = ""
    workloads: tuple[WorkloadStatusEntry, ...] = ()

    @classmethod
    def from_custom_object(cls, obj: dict[str, Any]) -> BlockVolumeStatus:
        """Parse a Longhorn ``volumes.longhorn.io`` object as returned by CustomObjectsApi."""
        name = (obj.get("metadata") or {}).get("name", "")
        ks = (obj.get("status") or {}).get("kubernetesStatus") or {}
        workloads = tuple(
            WorkloadStatusEntry(
                pod_name=w.get("podName") or "",
                pod_status=w.get("podStatus") or "",
                workload_name=w.get("workloadName") or "",
                workload_type=w.get("workloadType") or "",
            )
            for w in ks.get("workloadsStatus") or []
        )
        return cls(
            name=name,
            last_pvc_ref_at=ks.get("lastPVCRefAt") or None,
            last_pod_ref_at=ks.get("lastPodRefAt") or None,
            pv_name=ks.get("pvName") or "",
            pv_status=ks.get("pvStatus") or "",
            pvc_name=ks.get("pvcName") or "",
            workloads=workloads,
        )


# ---------------------------------------------------------------------------
# Cluster Snapshot: point-in-time state of both clusters
# ---------------------------------------------------------------------------


@dataclass
class ClusterSnapshot:
    """Point-in-time capture of the bulk lists used by every analysis step.

    The collector populates this once per run; the analyzer only filters and
    joins over it, so bulk lists are never re-queried per volume.
    """

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Downstream cluster
    pvs: list[PersistentVolumeRecord] = field(default_factory=list)
    attachments: list[AttachmentRecord] = field(default_factory=list)
    pods: list[PodRecord] = field(default_factory=list)

    # Management cluster
    machines: list[MachineRecord] = field(default_factory=list)
    instances: list[MachineInstanceRecord] = field(default_factory=list)

    def bound_volumes(self) -> list[PersistentVolumeRecord]:
        """Bound PVs sorted and de-duplicated by name."""
        seen: dict[str, PersistentVolumeRecord] = {}
        for pv in self.pvs:
            if pv.is_bound and pv.name not in seen:
                seen[pv.name] = pv
        return [seen[name] for name in sorted(seen)]

    def unbound_volumes(self) -> list[PersistentVolumeRecord]:
        return sorted((pv for pv in self.pvs if not pv.is_bound), key=lambda p: p.name)

    def volume_names(self) -> set[str]:
        return {pv.name for pv in self.pvs}

    def pods_for_claim(self, namespace: str, claim_name: str) -> list[PodRecord]:
        return sorted(
            (p for p in self.pods if p.namespace == namespace and claim_name in p.claim_names),
            key=lambda p: p.name,
        )

    def attachments_for(self, volume: str) -> list[AttachmentRecord]:
        return sorted(
            (a for a in self.attachments if a.volume_name == volume),
            key=lambda a: a.name,
        )

    def machines_referencing(self, volume: str) -> list[str]:
        return sorted(m.name for m in self.machines if volume in m.volume_names)

    def instances_referencing(self, volume: str) -> list[str]:
        return sorted(i.name for i in self.instances if volume in i.volume_names)

    def pending_requests_for(self, volume: str) -> list[tuple[str, VolumeRequest]]:
        """(machine name, request) pairs naming `volume`, adds before removes."""
        pairs = [
            (m.name, r)
            for m in self.machines
            for r in m.volume_requests
            if r.volume_name == volume
        ]
        return sorted(pairs, key=lambda p: (p[1].action != "add", p[0]))


# ---------------------------------------------------------------------------
# Identity resolution and per-volume analysis output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VolumeIdentity:
    """A downstream volume mapped onto the management cluster."""

    volume: str
    management_pvc: str
    block_volume: str


@dataclass(frozen=True)
class WorkloadLiveness:
    """Liveness lookup results for one workload-status entry.

    `pod_exists` / `workload_exists` are None when the name does not follow the
    hotplug / launcher naming convention and was therefore not looked up.
    """

    entry: WorkloadStatusEntry
    pod_exists: bool | None = None
    workload_exists: bool | None = None
    workload_phase: str = ""

    @property
    def ghost_pod(self) -> bool:
        return self.pod_exists is False

    @property
    def ghost_workload(self) -> bool:
        return self.workload_exists is False

    @property
    def is_ghost(self) -> bool:
        return self.ghost_pod or self.ghost_workload


@dataclass
class VolumeAnalysis:
    """Findings and collected evidence for a single bound volume."""

    volume: str
    findings: list[Finding] = field(default_factory=list)

    # Step 1
    claim_namespace: str = ""
    claim_name: str = ""
    access_mode: str = "Unknown"
    aborted: bool = False

    # Step 2
    active_pods: list[PodRecord] = field(default_factory=list)
    completed_pods: list[PodRecord] = field(default_factory=list)
    pending_pods: list[str] = field(default_factory=list)

    # Step 3
    attachments: list[AttachmentRecord] = field(default_factory=list)

    # Step 4
    machines: list[str] = field(default_factory=list)
    instances: list[str] = field(default_factory=list)

    # Steps 5-6
    identity: VolumeIdentity | None = None
    block_status: BlockVolumeStatus | None = None
    workload_liveness: list[WorkloadLiveness] = field(default_factory=list)

    # Step 7
    pending_requests: list[tuple[str, VolumeRequest]] = field(default_factory=list)

    def add(self, severity: Severity, message: str, node: str | None = None) -> None:
        self.findings.append(Finding(self.volume, severity, message, node or None))

    @property
    def has_issues(self) -> bool:
        return any(f.severity.is_issue for f in self.findings)

    @property
    def critical_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.CRITICAL)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.WARNING)

    @property
    def info_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.INFO)

    @property
    def active_pod_count(self) -> int:
        return len(self.active_pods)

    @property
    def primary_pod(self) -> PodRecord | None:
        """Active pod used for node attribution: lowest name after sorting."""
        return self.active_pods[0] if self.active_pods else None


# ---------------------------------------------------------------------------
# Aggregation output
# ---------------------------------------------------------------------------


@dataclass
class NodeImpact:
    """CRITICAL/WARNING findings attributed to one node."""

    node: str
    critical: int = 0
    warning: int = 0
    subjects: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UnboundVolume:
    name: str
    phase: str


@dataclass(frozen=True)
class OrphanedAttachment:
    """A VolumeAttachment whose PV does not exist."""

    name: str
    volume_name: str
    node: str


@dataclass
class DiagnosticReport:
    """Full diagnostic report for one run."""

    downstream_context: str
    management_context: str
    management_namespace: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    volumes: list[VolumeAnalysis] = field(default_factory=list)
    unbound: list[UnboundVolume] = field(default_factory=list)
    orphaned: list[OrphanedAttachment] = field(default_factory=list)
    cluster_findings: list[Finding] = field(default_factory=list)
    node_impacts: list[NodeImpact] = field(default_factory=list)

    # Collected object counts
    pv_count: int = 0
    attachment_count: int = 0
    machine_count: int = 0
    instance_count: int = 0

    log_file: str = ""

    @property
    def total_bound(self) -> int:
        return len(self.volumes)

    @property
    def volumes_with_issues(self) -> int:
        return sum(1 for v in self.volumes if v.has_issues)

    @property
    def volumes_ok(self) -> int:
        return self.total_bound - self.volumes_with_issues

    def all_findings(self) -> list[Finding]:
        findings: list[Finding] = []
        for analysis in self.volumes:
            findings.extend(analysis.findings)
        findings.extend(self.cluster_findings)
        return findings

    def _count(self, severity: Severity) -> int:
        return sum(1 for f in self.all_findings() if f.severity == severity)

    @property
    def total_critical(self) -> int:
        return self._count(Severity.CRITICAL)

    @property
    def total_warnings(self) -> int:
        return self._count(Severity.WARNING)

    @property
    def total_info(self) -> int:
        return self._count(Severity.INFO)

    @property
    def total_issues(self) -> int:
        return self.total_critical + self.total_warnings

    @property
    def recommended_node(self) -> NodeImpact | None:
        """Cordon/drain candidate: the top-ranked node when it has CRITICAL findings."""
        if self.node_impacts and self.node_impacts[0].critical > 0:
            return self.node_impacts[0]
        return None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def findings_by_subject(self) -> dict[str, list[Finding]]:
        """Per-volume and orphaned-attachment findings grouped by subject, sorted by subject.

        Unbound-volume notes are excluded: they are listed in their own section.
        """
        unbound_names = {u.name for u in self.unbound}
        grouped: dict[str, list[Finding]] = {}
        for f in self.all_findings():
            if f.subject in unbound_names:
                continue
            grouped.setdefault(f.subject, []).append(f)
        return {subject: grouped[subject] for subject in sorted(grouped)}

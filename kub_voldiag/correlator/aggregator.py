"""Aggregator.

Folds the per-volume analyses into a DiagnosticReport and adds the anomalies
that no single volume can see:

- PersistentVolumes that are not Bound (never run through the analyzer)
- VolumeAttachments whose PersistentVolume does not exist at all

It then builds the node impact tally: CRITICAL/WARNING findings that carry a
node, grouped per node and ranked by critical then warning count.
"""

from __future__ import annotations

from collections import defaultdict

from kub_voldiag.models import (
    ClusterSnapshot,
    DiagnosticReport,
    Finding,
    NodeImpact,
    OrphanedAttachment,
    Severity,
    UnboundVolume,
    VolumeAnalysis,
)


def aggregate(
    report: DiagnosticReport,
    snap: ClusterSnapshot,
    analyses: list[VolumeAnalysis],
) -> DiagnosticReport:
    """Populate `report` from the snapshot and the per-volume analyses."""
    report.volumes = sorted(analyses, key=lambda a: a.volume)
    report.pv_count = len(snap.pvs)
    report.attachment_count = len(snap.attachments)
    report.machine_count = len(snap.machines)
    report.instance_count = len(snap.instances)

    report.unbound, unbound_findings = find_unbound_volumes(snap)
    report.orphaned, orphan_findings = find_orphaned_attachments(snap)
    report.cluster_findings = unbound_findings + orphan_findings

    report.node_impacts = build_node_impacts(report.all_findings())
    return report


def find_unbound_volumes(snap: ClusterSnapshot) -> tuple[list[UnboundVolume], list[Finding]]:
    """List PVs that are not Bound, one INFO finding each."""
    unbound: list[UnboundVolume] = []
    findings: list[Finding] = []
    for pv in snap.unbound_volumes():
        unbound.append(UnboundVolume(pv.name, pv.phase))
        findings.append(
            Finding(pv.name, Severity.INFO, f"PersistentVolume not bound (phase: {pv.phase})")
        )
    return unbound, findings


def find_orphaned_attachments(
    snap: ClusterSnapshot,
) -> tuple[list[OrphanedAttachment], list[Finding]]:
    """VolumeAttachments naming a PV absent from the full PV list."""
    known = snap.volume_names()
    orphaned: list[OrphanedAttachment] = []
    findings: list[Finding] = []
    for va in sorted(snap.attachments, key=lambda a: a.name):
        if va.volume_name in known:
            continue
        orphaned.append(OrphanedAttachment(va.name, va.volume_name, va.node))
        findings.append(
            Finding(
                subject=f"orphaned-va-{va.name}",
                severity=Severity.WARNING,
                message=f"Orphaned VolumeAttachment -> non-existent PV {va.volume_name}",
                node=va.node or None,
            )
        )
    return orphaned, findings


def build_node_impacts(findings: list[Finding]) -> list[NodeImpact]:
    """Group CRITICAL/WARNING findings with a node, sorted by impact."""
    impacts: dict[str, NodeImpact] = {}
    subjects: dict[str, set[str]] = defaultdict(set)

    for f in findings:
        if not f.node or not f.severity.is_issue:
            continue
        impact = impacts.setdefault(f.node, NodeImpact(node=f.node))
        if f.severity == Severity.CRITICAL:
            impact.critical += 1
        else:
            impact.warning += 1
        subjects[f.node].add(f.subject)

    for node, impact in impacts.items():
        impact.subjects = sorted(subjects[node])

    return sorted(impacts.values(), key=lambda i: (-i.critical, -i.warning, i.node))

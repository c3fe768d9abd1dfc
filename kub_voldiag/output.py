"""Rich terminal output and the plain-text log artifact for the diagnostic report.

The same renderables feed both surfaces: the interactive console (summary by
default, per-volume detail with --verbose) and a colourless Console writing to
the log file, which always receives both levels.
"""

from __future__ import annotations

import io
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from kub_voldiag import __version__
from kub_voldiag.models import (
    DiagnosticReport,
    Finding,
    Severity,
    VolumeAnalysis,
)

LOG_WIDTH = 120


def default_log_path(downstream_context: str, now: datetime | None = None) -> Path:
    """./volume-diagnostic-<context>-<YYYYmmdd-HHMMSS>.log"""
    ts = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    # EKS-style ARNs and similar contexts carry path separators
    safe = re.sub(r"[\s/\\]+", "_", downstream_context)
    return Path.cwd() / f"volume-diagnostic-{safe}-{ts}.log"


def plain_console(file: TextIO) -> Console:
    """A Console that writes uncoloured, unwrapped-markup text to `file`."""
    return Console(
        file=file,
        width=LOG_WIDTH,
        no_color=True,
        highlight=False,
        emoji=False,
        force_terminal=False,
        color_system=None,
    )


def render_text(report: DiagnosticReport, detailed: bool = True) -> str:
    """Render the report to plain text (details first when `detailed`, then summary)."""
    buf = io.StringIO()
    console = plain_console(buf)
    if detailed:
        render_details(report, console)
    render_summary(report, console)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Per-volume detail
# ---------------------------------------------------------------------------


def render_details(report: DiagnosticReport, console: Console) -> None:
    for analysis in report.volumes:
        render_volume_detail(analysis, console)


def render_volume_detail(analysis: VolumeAnalysis, console: Console) -> None:
    """Render the seven analysis steps for one volume."""
    color = _analysis_color(analysis)
    tree = Tree(Text.assemble(("PV: ", "bold"), (analysis.volume, "bold cyan")))

    # 1. Claim
    step = tree.add(Text("1. Downstream PVC Info", style="bold"))
    if analysis.aborted:
        step.add(Text("PV has no claimRef (unbound or released)", style="red"))
        _add_findings(tree, analysis.findings)
        console.print(Panel(tree, border_style=color))
        return
    step.add(Text(f"PVC: {analysis.claim_namespace}/{analysis.claim_name}"))
    step.add(Text(f"Access Mode: {analysis.access_mode}"))

    # 2. Pods
    step = tree.add(Text("2. Pod Status", style="bold"))
    if not analysis.active_pods and not analysis.completed_pods:
        step.add(Text("No pod is currently using this PVC", style="blue"))
    for pod in analysis.active_pods:
        step.add(Text(f"Pod: {pod.name}  Node: {pod.node}  Phase: {pod.phase}"))
    for pod in analysis.completed_pods:
        step.add(Text(f"Pod: {pod.name}  Node: {pod.node}  ({pod.phase} - inactive)", style="dim"))
    for name in analysis.pending_pods:
        step.add(Text(f"Pod {name} is Pending - may be waiting for volume", style="yellow"))
    if analysis.completed_pods and not analysis.active_pods:
        step.add(Text(f"No active pods ({len(analysis.completed_pods)} completed)", style="blue"))

    # 3. VolumeAttachments
    step = tree.add(Text("3. VolumeAttachments", style="bold"))
    if not analysis.attachments:
        step.add(Text("(none)", style="dim"))
    for va in analysis.attachments:
        step.add(
            Text.assemble(
                f"VA: {va.name}  Node: {va.node}  Attached: ",
                (str(va.attached).lower(), "green" if va.attached else "yellow"),
            )
        )

    # 4. VM/VMI
    step = tree.add(Text("4. VM/VMI Spec", style="bold"))
    step.add(Text(f"VM: {', '.join(analysis.machines) or '(none)'}"))
    step.add(Text(f"VMI: {', '.join(analysis.instances) or '(none)'}"))

    # 5-6. Block storage
    step = tree.add(Text("5-6. Block-Storage Workloads / Liveness", style="bold"))
    _add_block_storage(step, analysis)

    # 7. Pending requests
    step = tree.add(Text("7. Pending Volume Requests", style="bold"))
    if not analysis.pending_requests:
        step.add(Text("No pending volumeRequests", style="green"))
    for vm, request in analysis.pending_requests:
        step.add(Text(f"Pending {request.action}VolumeRequest on VM: {vm}", style="yellow"))

    _add_findings(tree, analysis.findings)
    tree.add(
        Text("ISSUES DETECTED", style="bold red")
        if analysis.has_issues
        else Text("OK", style="bold green")
    )
    console.print(Panel(tree, border_style=color))


def _add_block_storage(step: Tree, analysis: VolumeAnalysis) -> None:
    identity = analysis.identity
    if identity is None:
        step.add(Text(f"Management PVC not found for {analysis.volume}", style="yellow"))
        step.add(Text("(workload status skipped)", style="dim"))
        return
    step.add(Text(f"Management PVC: {identity.management_pvc}"))
    step.add(Text(f"Block-storage volume: {identity.block_volume}"))

    status = analysis.block_status
    if status is None:
        step.add(Text("Could not retrieve block-storage status", style="yellow"))
        return

    step.add(Text(f"PV: {status.pv_name} ({status.pv_status})  PVC: {status.pvc_name}"))
    step.add(Text(f"lastPVCRefAt: {status.last_pvc_ref_at or '(none)'}"))
    step.add(Text(f"lastPodRefAt: {status.last_pod_ref_at or '(none)'}"))

    if not analysis.workload_liveness:
        note = (
            "No workloadsStatus (expected - no active pods)"
            if not analysis.active_pods
            else "No workloadsStatus (may not be hotplugged)"
        )
        step.add(Text(note, style="dim"))
        return

    ws = step.add(Text("workloadsStatus:", style="bold"))
    for live in analysis.workload_liveness:
        entry = live.entry
        node = ws.add(Text(f"podName: {entry.pod_name}"))
        node.add(Text(f"podStatus: {entry.pod_status}"))
        node.add(Text(f"workloadName: {entry.workload_name}"))
        node.add(Text(f"workloadType: {entry.workload_type}"))
        if live.pod_exists is not None:
            node.add(_liveness_text(entry.pod_name, live.pod_exists, entry.pod_status))
        if live.workload_exists is not None:
            node.add(_liveness_text(entry.workload_name, live.workload_exists, live.workload_phase))


def _liveness_text(name: str, exists: bool, state: str) -> Text:
    if exists:
        return Text.assemble(f"Pod {name} ", (f"(exists, state: {state or 'Unknown'})", "green"))
    return Text.assemble(f"Pod {name} ", ("(DOES NOT EXIST - ghost entry)", "red"))


def _add_findings(tree: Tree, findings: list[Finding]) -> None:
    if not findings:
        return
    branch = tree.add(Text(f"Findings ({len(findings)}):", style="bold"))
    for f in findings:
        branch.add(
            Text.assemble(
                (f"{f.severity.value.upper():<8} ", f"bold {_severity_color(f.severity)}"),
                f.display_text,
            )
        )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def render_summary(report: DiagnosticReport, console: Console) -> None:
    """Render the run summary: timing, results, node impact, anomalies, issues by volume."""
    console.print()
    console.rule("[bold]Summary[/bold]")
    _render_scorecard(report, console)

    if report.node_impacts:
        _render_node_impacts(report, console)

    if report.unbound:
        console.print()
        console.print(Text(f"Unbound PVs ({len(report.unbound)}):", style="bold yellow"))
        for u in report.unbound:
            console.print(Text(f"  • {u.name} ({u.phase})"))

    if report.orphaned:
        console.print()
        console.print(
            Text(f"Orphaned VolumeAttachments ({len(report.orphaned)}):", style="bold red")
        )
        for o in report.orphaned:
            console.print(Text(f"  • {o.name} -> PV: {o.volume_name} (missing) on {o.node}"))

    grouped = report.findings_by_subject()
    if grouped:
        console.print()
        console.print(Text("Issues by PV:", style="bold"))
        for subject, findings in grouped.items():
            _render_subject_issues(subject, findings, console)

    _render_footer(report, console)


def _render_scorecard(report: DiagnosticReport, console: Console) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("metric", style="bold")
    table.add_column("value")

    finished = report.finished_at or datetime.now(timezone.utc)
    minutes, seconds = divmod(int(report.duration_seconds), 60)
    table.add_row("Started", report.started_at.isoformat(timespec="seconds"))
    table.add_row("Finished", finished.isoformat(timespec="seconds"))
    table.add_row("Duration", f"{minutes}m {seconds}s")
    table.add_row("", "")
    table.add_row("Downstream context", Text(report.downstream_context))
    table.add_row("Management context", Text(report.management_context))
    table.add_row("Management namespace", Text(report.management_namespace))
    table.add_row(
        "Collected",
        f"{report.pv_count} PVs, {report.attachment_count} VolumeAttachments, "
        f"{report.machine_count} VMs, {report.instance_count} VMIs",
    )
    table.add_row("", "")

    crit_style = "bold red" if report.total_critical > 0 else "green"
    warn_style = "bold yellow" if report.total_warnings > 0 else "green"

    table.add_row("Bound PVs analyzed", str(report.total_bound))
    table.add_row(
        "PVs with issues",
        Text(str(report.volumes_with_issues), style="red" if report.volumes_with_issues else "green"),
    )
    table.add_row("PVs OK", Text(str(report.volumes_ok), style="green"))
    table.add_row(
        Text("Critical issues", style=crit_style),
        Text(str(report.total_critical), style=crit_style),
    )
    table.add_row(
        Text("Warning issues", style=warn_style),
        Text(str(report.total_warnings), style=warn_style),
    )
    table.add_row(
        Text("Info issues", style="blue"),
        Text(f"{report.total_info} (cosmetic/expected)", style="blue"),
    )

    console.print(Panel(table, title="[bold]Results[/bold]", border_style="dim"))


def _render_node_impacts(report: DiagnosticReport, console: Console) -> None:
    table = Table(
        title="Node Impact Analysis (candidates for cordon/restart)",
        border_style="magenta",
    )
    table.add_column("Node", style="cyan")
    table.add_column("Critical", justify="right")
    table.add_column("Warning", justify="right")
    table.add_column("Affected", max_width=60)

    for impact in report.node_impacts:
        style = "red" if impact.critical else "yellow" if impact.warning else ""
        table.add_row(
            Text(impact.node, style=style),
            Text(str(impact.critical), style=style),
            Text(str(impact.warning), style=style),
            Text(", ".join(impact.subjects), style="dim"),
        )

    console.print()
    console.print(table)

    top = report.recommended_node
    if top is not None:
        console.print(
            Text(
                f"Recommendation: Node '{top.node}' has the most critical issues "
                f"({top.critical} critical, {top.warning} warning).",
                style="yellow",
            )
        )


def _render_subject_issues(subject: str, findings: list[Finding], console: Console) -> None:
    worst = min(findings, key=lambda f: f.severity.sort_order).severity
    console.print()
    console.print(Text(f"  {subject}", style=f"bold {_severity_color(worst)}"))
    for severity in Severity:
        texts = [f.display_text for f in findings if f.severity == severity]
        if texts:
            console.print(
                Text.assemble(
                    (f"     {severity.value.upper()}: ", _severity_color(severity)),
                    "; ".join(texts),
                )
            )


def _render_footer(report: DiagnosticReport, console: Console) -> None:
    console.print()
    console.rule(style="dim")
    if report.log_file:
        console.print(Text(f"Log file: {report.log_file}"))
    console.print(
        "[yellow]Note: this tool does not provide cleanup commands. "
        "Review the output carefully before taking any manual action.[/yellow]"
    )
    console.print()


# ---------------------------------------------------------------------------
# Log artifact
# ---------------------------------------------------------------------------


class ReportLog:
    """Plain-text transcript of a run, flushed as it is written.

    Per-volume detail is appended as each analysis completes so an interrupted
    run still leaves everything analyzed so far on disk.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh: TextIO | None = None
        self._console: Console | None = None

    def open(self) -> ReportLog:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("w", encoding="utf-8")
        self._console = plain_console(self._fh)
        return self

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._console = None

    def __enter__(self) -> ReportLog:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def console(self) -> Console:
        if self._console is None:
            raise RuntimeError("ReportLog is not open")
        return self._console

    def _flush(self) -> None:
        if self._fh is not None:
            self._fh.flush()

    def write_header(self, report: DiagnosticReport, verbose: bool) -> None:
        c = self.console
        c.rule(f"Kubernetes Volume Diagnostic Tool v{__version__}")
        c.print(Text(f"Start time: {report.started_at.isoformat(timespec='seconds')}"))
        c.print(Text(f"Downstream context: {report.downstream_context}"))
        c.print(Text(f"Management context: {report.management_context}"))
        c.print(Text(f"Management namespace: {report.management_namespace}"))
        c.print(Text(f"Verbose mode: {str(verbose).lower()}"))
        c.print()
        self._flush()

    def write_line(self, message: str) -> None:
        self.console.print(Text(message))
        self._flush()

    def write_volume(self, analysis: VolumeAnalysis) -> None:
        render_volume_detail(analysis, self.console)
        self._flush()

    def write_summary(self, report: DiagnosticReport) -> None:
        render_summary(report, self.console)
        self._flush()

    def write_interrupted(self, reason: str) -> None:
        self.console.print()
        self.console.print(Text(f"RUN INTERRUPTED: {reason}. Results above are partial."))
        self._flush()


def _analysis_color(analysis: VolumeAnalysis) -> str:
    if analysis.critical_count:
        return "red"
    if analysis.warning_count:
        return "yellow"
    if analysis.info_count:
        return "blue"
    return "green"


def _severity_color(severity: Severity) -> str:
    return {
        Severity.CRITICAL: "red",
        Severity.WARNING: "yellow",
        Severity.INFO: "blue",
    }[severity]

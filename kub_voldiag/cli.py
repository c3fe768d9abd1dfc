"""CLI entry point for kub-voldiag.

Usage:
    kub-voldiag diagnose -d DOWNSTREAM_CTX -H MANAGEMENT_CTX -n NAMESPACE [-v] [--logfile PATH]
    kub-voldiag status -d DOWNSTREAM_CTX -H MANAGEMENT_CTX -n NAMESPACE
    kub-voldiag init
"""

from __future__ import annotations

import logging
import os
import sys
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from kub_voldiag import __version__
from kub_voldiag.checks.volume import iter_volume_analyses
from kub_voldiag.collector.lookups import ManagementLookups
from kub_voldiag.collector.snapshot import collect_snapshot
from kub_voldiag.config import Config
from kub_voldiag.correlator.aggregator import aggregate
from kub_voldiag.errors import (
    ClusterUnreachableError,
    NamespaceNotFoundError,
    VolDiagError,
)
from kub_voldiag.k8s_client import K8sClient
from kub_voldiag.models import DiagnosticReport, VolumeAnalysis
from kub_voldiag.output import (
    ReportLog,
    default_log_path,
    render_summary,
    render_volume_detail,
)
from kub_voldiag.resolver import IdentityResolver

console = Console()

EXIT_FATAL = 1
EXIT_TIMEOUT = 2
EXIT_INTERRUPTED = 130


@click.group()
@click.version_option(version=__version__, prog_name="kub-voldiag")
def main():
    """Read-only diagnostics for hotplug volume attachments across a downstream
    cluster and its virtualization-management cluster.

    Fetches PVs, VolumeAttachments, pods, VMs and VMIs once, correlates every
    bound volume with its block-storage workload status, and reports
    inconsistencies by severity. Never modifies either cluster.
    """
    pass


def _connect(kubeconfig: str, context: str) -> K8sClient:
    """Connect a client for `context` and verify the API server answers."""
    k8s = K8sClient(kubeconfig=kubeconfig or None, context=context or None)
    try:
        k8s.connect()
    except Exception as exc:
        raise ClusterUnreachableError(context, str(exc)) from exc
    k8s.check_reachable()
    return k8s


def validate_clusters(cfg: Config) -> tuple[K8sClient, K8sClient]:
    """Connect both clusters and check the management namespace, or raise."""
    console.print("[bold]Validating contexts...[/bold]")

    downstream = _connect(cfg.kubeconfig, cfg.downstream_context)
    console.print(f"  Downstream context ({cfg.downstream_context})... [green]OK[/green]")

    management = _connect(cfg.kubeconfig, cfg.management_context)
    console.print(f"  Management context ({cfg.management_context})... [green]OK[/green]")

    if not management.namespace_exists(cfg.management_namespace):
        raise NamespaceNotFoundError(cfg.management_namespace, cfg.management_context)
    console.print(f"  Management namespace ({cfg.management_namespace})... [green]OK[/green]")
    console.print()
    return downstream, management


@main.command()
@click.option("--downstream", "-d", default="", help="kubectl context of the downstream workload cluster")
@click.option("--management", "-H", default="", help="kubectl context of the virtualization-management cluster")
@click.option("--namespace", "-n", default="", help="Management namespace holding the downstream cluster's VMs")
@click.option("--kubeconfig", "-k", default="", help="Path to kubeconfig file")
@click.option("--cluster-name", default="", help="Guest-cluster label value for VM selection (default: downstream context)")
@click.option("--workers", "-w", type=int, default=None, help="Volumes analyzed in parallel")
@click.option("--timeout", type=float, default=None, help="Abort the analysis after this many seconds")
@click.option("--request-timeout", type=float, default=None, help="Timeout in seconds for each management-cluster lookup")
@click.option("--logfile", "log_file", default="", help="Log file path (default: ./volume-diagnostic-<context>-<timestamp>.log)")
@click.option("--config", "config_path", default="", help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Show detailed per-PV analysis (default: summary only)")
def diagnose(
    downstream: str,
    management: str,
    namespace: str,
    kubeconfig: str,
    cluster_name: str,
    workers: int | None,
    timeout: float | None,
    request_timeout: float | None,
    log_file: str,
    config_path: str,
    verbose: bool,
):
    """Diagnose volume attachment consistency for every bound PV."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        # Load config (file -> env -> CLI flags)
        cfg = Config.load(config_path or None)

        # CLI flag overrides
        if downstream:
            cfg.downstream_context = downstream
        if management:
            cfg.management_context = management
        if namespace:
            cfg.management_namespace = namespace
        if kubeconfig:
            cfg.kubeconfig = kubeconfig
        if cluster_name:
            cfg.cluster_name = cluster_name
        if workers is not None:
            cfg.workers = workers
        if timeout is not None:
            cfg.timeout = timeout
        if request_timeout is not None:
            cfg.request_timeout = request_timeout
        if log_file:
            cfg.log_file = log_file
        if verbose:
            cfg.verbose = True

        cfg.validate()
        ds_client, mgmt_client = validate_clusters(cfg)
    except VolDiagError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(EXIT_FATAL)

    report = DiagnosticReport(
        downstream_context=cfg.downstream_context,
        management_context=cfg.management_context,
        management_namespace=cfg.management_namespace,
    )
    log_path = Path(cfg.log_file) if cfg.log_file else default_log_path(cfg.downstream_context)
    report.log_file = str(log_path)

    try:
        log = ReportLog(log_path).open()
    except OSError as exc:
        console.print(
            f"[bold red]Error:[/bold red] cannot write log file "
            f"{escape(str(log_path))}: {escape(str(exc))}"
        )
        sys.exit(EXIT_FATAL)

    try:
        log.write_header(report, cfg.verbose)
        exit_code = _run(cfg, ds_client, mgmt_client, report, log)
    finally:
        log.close()

    if exit_code in (EXIT_TIMEOUT, EXIT_INTERRUPTED):
        _abandon(exit_code)
    sys.exit(exit_code)


def _abandon(exit_code: int) -> None:
    """Exit without joining analysis workers that are still inside API calls."""
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(exit_code)


def _run(
    cfg: Config,
    ds_client: K8sClient,
    mgmt_client: K8sClient,
    report: DiagnosticReport,
    log: ReportLog,
) -> int:
    """Collect, analyze, aggregate and render. Returns the process exit code."""
    # Phase 1: Collect bulk lists from both clusters
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            console=console,
        ) as progress:
            t0 = time.time()
            snap = collect_snapshot(
                ds_client,
                mgmt_client,
                namespace=cfg.management_namespace,
                cluster_label=cfg.cluster_label,
                cluster_name=cfg.effective_cluster_name,
                progress=progress,
            )
            collect_time = time.time() - t0
    except ClusterUnreachableError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        log.write_interrupted(str(exc))
        return EXIT_FATAL

    bound = snap.bound_volumes()
    summary = (
        f"Collected {len(snap.pvs)} PVs ({len(bound)} bound), "
        f"{len(snap.attachments)} VolumeAttachments, {len(snap.pods)} pods, "
        f"{len(snap.machines)} VMs, {len(snap.instances)} VMIs "
        f"for cluster {cfg.effective_cluster_name} in {collect_time:.1f}s"
    )
    console.print(f"[dim]{summary}[/dim]")
    log.write_line(summary)

    # Phase 2: Per-volume analysis
    resolver = IdentityResolver(
        ManagementLookups(mgmt_client, request_timeout=cfg.request_timeout),
        management_namespace=cfg.management_namespace,
        block_storage_namespace=cfg.block_storage_namespace,
    )
    console.print(f"[bold]Analyzing {len(bound)} bound persistent volumes...[/bold]")
    if not cfg.verbose:
        console.print("[dim](Use -v for detailed per-PV output)[/dim]")

    analyses: list[VolumeAnalysis] = []
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
            transient=True,
            disable=cfg.verbose,
        ) as progress:
            task_id = progress.add_task("Analyzing...", total=len(bound))
            for analysis in iter_volume_analyses(
                bound,
                snap,
                resolver,
                workers=cfg.workers,
                timeout=cfg.timeout or None,
                hotplug_prefix=cfg.hotplug_pod_prefix,
                launcher_prefix=cfg.launcher_prefix,
            ):
                analyses.append(analysis)
                log.write_volume(analysis)
                if cfg.verbose:
                    render_volume_detail(analysis, console)
                progress.update(task_id, description=f"Analyzed {analysis.volume}")
                progress.advance(task_id)
    except FuturesTimeoutError:
        reason = f"timeout after {cfg.timeout:g}s ({len(analyses)}/{len(bound)} volumes analyzed)"
        console.print(f"[bold red]Analysis aborted:[/bold red] {reason}")
        log.write_interrupted(reason)
        return EXIT_TIMEOUT
    except KeyboardInterrupt:
        reason = f"interrupted by user ({len(analyses)}/{len(bound)} volumes analyzed)"
        console.print(f"\n[bold red]Analysis aborted:[/bold red] {reason}")
        log.write_interrupted(reason)
        return EXIT_INTERRUPTED

    # Phase 3: Aggregate and render
    aggregate(report, snap, analyses)
    report.finished_at = datetime.now(timezone.utc)

    log.write_summary(report)
    render_summary(report, console)
    return 0


@main.command()
@click.option("--downstream", "-d", required=True, help="kubectl context of the downstream workload cluster")
@click.option("--management", "-H", required=True, help="kubectl context of the virtualization-management cluster")
@click.option("--namespace", "-n", required=True, help="Management namespace holding the downstream cluster's VMs")
@click.option("--kubeconfig", "-k", default="", help="Path to kubeconfig file")
def status(downstream: str, management: str, namespace: str, kubeconfig: str):
    """Check connectivity to both clusters and the management namespace."""
    cfg = Config(
        kubeconfig=kubeconfig,
        downstream_context=downstream,
        management_context=management,
        management_namespace=namespace,
    )
    try:
        ds_client, mgmt_client = validate_clusters(cfg)
    except VolDiagError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(EXIT_FATAL)

    console.print(f"[green]Downstream cluster:[/green] {ds_client.get_cluster_name()}")
    console.print(f"[green]Management cluster:[/green] {mgmt_client.get_cluster_name()}")


@main.command()
def init():
    """Generate a sample configuration file."""
    sample = """\
# kub-voldiag configuration
# Place this file at .kub-voldiag.yaml in your project or home directory.
# CLI flags override values set here.

# Kubernetes connection
# kubeconfig: ~/.kube/config
# downstream_context: my-guest-cluster
# management_context: my-harvester
# management_namespace: my-guest-cluster-vms

# Management-cluster conventions
# cluster_name: ""  # guest-cluster label value; empty = downstream context
cluster_label: guestcluster.harvesterhci.io/name
block_storage_namespace: longhorn-system
hotplug_pod_prefix: hp-volume-
launcher_prefix: virt-launcher-

# Execution
workers: 8
timeout: 0  # seconds; 0 = no limit
request_timeout: 10  # seconds per management-cluster lookup

# Output
verbose: false
# log_file: ./volume-diagnostic.log
"""
    out_path = Path.cwd() / ".kub-voldiag.yaml"
    if out_path.exists():
        console.print(f"[yellow]Config file already exists:[/yellow] {out_path}")
        return

    out_path.write_text(sample)
    console.print(f"[green]Created config file:[/green] {out_path}")
    console.print("[dim]Edit it to set your contexts and namespace.[/dim]")


if __name__ == "__main__":
    main()

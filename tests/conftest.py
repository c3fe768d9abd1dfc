"""Shared fixtures and helpers for kub-voldiag tests.

We build lightweight mock objects that replicate the attribute-access interface
of the kubernetes Python client objects, plus plain dicts for custom objects
(VirtualMachines, VirtualMachineInstances, block-storage volumes) as returned
by CustomObjectsApi.
"""

from __future__ import annotations

from typing import Any

import pytest

from kub_voldiag.models import (
    AttachmentRecord,
    ClusterSnapshot,
    MachineInstanceRecord,
    MachineRecord,
    PersistentVolumeRecord,
    PodRecord,
    VolumeRequest,
)
from kub_voldiag.resolver import IdentityResolver

MGMT_NS = "guest-vms"
BLOCK_NS = "longhorn-system"


# ---------------------------------------------------------------------------
# Generic attribute-bag that behaves like a K8s API object
# ---------------------------------------------------------------------------


class K8sObj:
    """Minimal mock for K8s API objects.  Supports nested attribute access."""

    def __init__(self, **kwargs: Any):
        for k, v in kwargs.items():
            if isinstance(v, dict):
                setattr(self, k, K8sObj(**v))
            else:
                setattr(self, k, v)

    def __getattr__(self, name: str) -> Any:
        # Return None for any attribute not set (mirrors K8s client behaviour)
        return None


# ---------------------------------------------------------------------------
# Raw API object factories (input to the collector converters)
# ---------------------------------------------------------------------------


def make_api_pv(
    name: str,
    phase: str = "Bound",
    claim: tuple[str, str] | None = ("default", "data"),
    access_modes: list[str] | None = None,
) -> K8sObj:
    claim_ref = K8sObj(namespace=claim[0], name=claim[1]) if claim else None
    return K8sObj(
        metadata=K8sObj(name=name),
        spec=K8sObj(
            claim_ref=claim_ref,
            access_modes=access_modes if access_modes is not None else ["ReadWriteOnce"],
        ),
        status=K8sObj(phase=phase),
    )


def make_api_va(
    name: str,
    volume: str | None,
    node: str = "node-1",
    attached: bool | None = True,
) -> K8sObj:
    return K8sObj(
        metadata=K8sObj(name=name),
        spec=K8sObj(
            node_name=node,
            source=K8sObj(persistent_volume_name=volume),
        ),
        status=K8sObj(attached=attached) if attached is not None else None,
    )


def make_api_pod(
    name: str,
    namespace: str = "default",
    node_name: str | None = "node-1",
    phase: str | None = "Running",
    claims: list[str] | None = None,
) -> K8sObj:
    volumes = [K8sObj(name="config", config_map=K8sObj(name="cfg"))]
    for claim in claims or []:
        volumes.append(
            K8sObj(name=f"vol-{claim}", persistent_volume_claim=K8sObj(claim_name=claim))
        )
    return K8sObj(
        metadata=K8sObj(name=name, namespace=namespace),
        spec=K8sObj(node_name=node_name, volumes=volumes),
        status=K8sObj(phase=phase),
    )


def make_vm(
    name: str,
    volumes: list[str] | None = None,
    add_requests: list[str] | None = None,
    remove_requests: list[str] | None = None,
) -> dict[str, Any]:
    requests = [{"addVolumeOptions": {"name": v}} for v in add_requests or []]
    requests += [{"removeVolumeOptions": {"name": v}} for v in remove_requests or []]
    vm: dict[str, Any] = {
        "metadata": {"name": name, "namespace": MGMT_NS},
        "spec": {"template": {"spec": {"volumes": [{"name": v} for v in volumes or []]}}},
    }
    if requests:
        vm["status"] = {"volumeRequests": requests}
    return vm


def make_vmi(name: str, volumes: list[str] | None = None) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": MGMT_NS},
        "spec": {"volumes": [{"name": v} for v in volumes or []]},
    }


def make_block_volume(
    name: str,
    workloads: list[tuple[str, str]] | None = None,
    last_pod_ref_at: str = "",
    last_pvc_ref_at: str = "",
    pv_name: str = "",
) -> dict[str, Any]:
    """A Longhorn volume object; `workloads` is a list of (podName, workloadName)."""
    return {
        "metadata": {"name": name, "namespace": BLOCK_NS},
        "status": {
            "kubernetesStatus": {
                "pvName": pv_name or name,
                "pvStatus": "Bound",
                "pvcName": pv_name,
                "lastPodRefAt": last_pod_ref_at,
                "lastPVCRefAt": last_pvc_ref_at,
                "workloadsStatus": [
                    {
                        "podName": pod,
                        "podStatus": "Running",
                        "workloadName": workload,
                        "workloadType": "Pod",
                    }
                    for pod, workload in workloads or []
                ],
            }
        },
    }


# ---------------------------------------------------------------------------
# Typed record factories (input to the analyzer)
# ---------------------------------------------------------------------------


def make_pv(
    name: str,
    claim: str = "data",
    namespace: str = "default",
    phase: str = "Bound",
    access_mode: str = "ReadWriteOnce",
) -> PersistentVolumeRecord:
    return PersistentVolumeRecord(
        name=name,
        phase=phase,
        claim_namespace=namespace if claim else "",
        claim_name=claim,
        access_mode=access_mode,
    )


def make_pod(
    name: str,
    claim: str = "data",
    namespace: str = "default",
    node: str = "node-1",
    phase: str = "Running",
) -> PodRecord:
    return PodRecord(name=name, namespace=namespace, node=node, phase=phase, claim_names=(claim,))


def make_va(name: str, volume: str, node: str = "node-1", attached: bool = True) -> AttachmentRecord:
    return AttachmentRecord(name=name, node=node, volume_name=volume, attached=attached)


def make_machine(
    name: str,
    volumes: list[str] | None = None,
    requests: list[tuple[str, str]] | None = None,
) -> MachineRecord:
    return MachineRecord(
        name=name,
        volume_names=tuple(volumes or []),
        volume_requests=tuple(VolumeRequest(a, v) for a, v in requests or []),
    )


def make_instance(name: str, volumes: list[str] | None = None) -> MachineInstanceRecord:
    return MachineInstanceRecord(name=name, volume_names=tuple(volumes or []))


# ---------------------------------------------------------------------------
# Fake management-cluster lookups
# ---------------------------------------------------------------------------


class FakeLookups:
    """In-memory Lookups: management PVCs, block-storage volumes and live pods.

    Records every call so tests can assert which lookups a run performed.
    """

    def __init__(
        self,
        pvcs: dict[str, str] | None = None,
        block_volumes: dict[str, dict[str, Any]] | None = None,
        pods: dict[str, str] | None = None,
    ):
        self.pvcs = pvcs or {}
        self.block_volumes = block_volumes or {}
        self.pods = pods or {}
        self.calls: list[tuple[str, str, str]] = []

    def get_pvc_volume_name(self, namespace: str, name: str) -> str | None:
        self.calls.append(("pvc", namespace, name))
        return self.pvcs.get(name)

    def get_block_volume(self, namespace: str, name: str) -> dict[str, Any] | None:
        self.calls.append(("block", namespace, name))
        return self.block_volumes.get(name)

    def pod_phase(self, namespace: str, name: str) -> str | None:
        self.calls.append(("pod", namespace, name))
        return self.pods.get(name)

    def pod_exists(self, namespace: str, name: str) -> bool:
        return self.pod_phase(namespace, name) is not None


def make_resolver(lookups: FakeLookups) -> IdentityResolver:
    return IdentityResolver(lookups, management_namespace=MGMT_NS, block_storage_namespace=BLOCK_NS)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def empty_snapshot() -> ClusterSnapshot:
    return ClusterSnapshot()


@pytest.fixture
def empty_lookups() -> FakeLookups:
    return FakeLookups()


@pytest.fixture
def healthy_setup() -> tuple[ClusterSnapshot, FakeLookups]:
    """One fully consistent hotplugged volume: pod, VA, VM, VMI and block storage agree."""
    snap = ClusterSnapshot(
        pvs=[make_pv("pvc-1")],
        attachments=[make_va("csi-1", "pvc-1", node="node-1")],
        pods=[make_pod("app-0", node="node-1")],
        machines=[make_machine("vm-a", ["pvc-1"])],
        instances=[make_instance("vm-a", ["pvc-1"])],
    )
    lookups = FakeLookups(
        pvcs={"pvc-1": "lh-1"},
        block_volumes={
            "lh-1": make_block_volume(
                "lh-1",
                workloads=[("hp-volume-abc", "virt-launcher-vm-a-x7k2p")],
                last_pvc_ref_at="",
            )
        },
        pods={"hp-volume-abc": "Running", "virt-launcher-vm-a-x7k2p": "Running"},
    )
    return snap, lookups

"""Tests for the snapshot collector, point lookups and identity resolver."""

import pytest
from kubernetes.client.exceptions import ApiException

from kub_voldiag.collector.lookups import ManagementLookups
from kub_voldiag.collector.snapshot import (
    attachment_from_api,
    collect_snapshot,
    instance_from_api,
    machine_from_api,
    pod_from_api,
    pv_from_api,
)
from kub_voldiag.errors import ClusterUnreachableError
from kub_voldiag.models import UNSCHEDULED, VolumeIdentity, VolumeRequest

from tests.conftest import (
    BLOCK_NS,
    MGMT_NS,
    FakeLookups,
    K8sObj,
    make_api_pod,
    make_api_pv,
    make_api_va,
    make_block_volume,
    make_resolver,
    make_vm,
    make_vmi,
)


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


class TestConverters:
    def test_pv(self):
        pv = pv_from_api(make_api_pv("pvc-1", claim=("apps", "data-0"), access_modes=["ReadWriteOncePod"]))
        assert pv.name == "pvc-1"
        assert pv.is_bound
        assert (pv.claim_namespace, pv.claim_name) == ("apps", "data-0")
        assert pv.access_mode == "ReadWriteOncePod"

    def test_pv_without_claim_or_modes(self):
        pv = pv_from_api(make_api_pv("pvc-2", phase="Released", claim=None, access_modes=[]))
        assert not pv.has_claim
        assert pv.access_mode == "Unknown"
        assert pv.phase == "Released"

    def test_attachment(self):
        va = attachment_from_api(make_api_va("csi-1", "pvc-1", node="n2", attached=True))
        assert (va.name, va.node, va.volume_name, va.attached) == ("csi-1", "n2", "pvc-1", True)

    def test_attachment_without_status(self):
        va = attachment_from_api(make_api_va("csi-2", None, attached=None))
        assert va.volume_name == ""
        assert va.attached is False

    def test_pod_collects_claims_only(self):
        pod = pod_from_api(make_api_pod("app-0", namespace="apps", claims=["data-0", "logs-0"]))
        assert pod.namespace == "apps"
        assert pod.claim_names == ("data-0", "logs-0")
        assert pod.node == "node-1"

    def test_unscheduled_pod(self):
        pod = pod_from_api(make_api_pod("app-1", node_name=None, phase=None))
        assert pod.node == UNSCHEDULED
        assert pod.phase == "Unknown"

    def test_machine_with_requests(self):
        vm = machine_from_api(
            make_vm("vm-a", ["rootdisk", "pvc-1"], add_requests=["pvc-2"], remove_requests=["pvc-1"])
        )
        assert vm.name == "vm-a"
        assert vm.volume_names == ("rootdisk", "pvc-1")
        assert vm.volume_requests == (VolumeRequest("add", "pvc-2"), VolumeRequest("remove", "pvc-1"))

    def test_machine_minimal(self):
        vm = machine_from_api({"metadata": {"name": "vm-b"}})
        assert vm.volume_names == ()
        assert vm.volume_requests == ()

    def test_instance(self):
        vmi = instance_from_api(make_vmi("vm-a", ["pvc-1"]))
        assert vmi.volume_names == ("pvc-1",)


# ---------------------------------------------------------------------------
# collect_snapshot
# ---------------------------------------------------------------------------


class FakeCoreV1:
    def __init__(self, pvs=None, pods=None, fail=False):
        self.pvs = pvs or []
        self.pods = pods or []
        self.fail = fail

    def list_persistent_volume(self):
        if self.fail:
            raise ApiException(status=500, reason="Internal Server Error")
        return K8sObj(items=self.pvs)

    def list_pod_for_all_namespaces(self):
        return K8sObj(items=self.pods)


class FakeStorageV1:
    def __init__(self, vas=None):
        self.vas = vas or []

    def list_volume_attachment(self):
        return K8sObj(items=self.vas)


class FakeCustomObjects:
    def __init__(self, objects=None, forbidden=False):
        self.objects = objects or {}
        self.forbidden = forbidden
        self.calls = []

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=""):
        self.calls.append((group, version, namespace, plural, label_selector))
        if self.forbidden:
            raise ApiException(status=403, reason="Forbidden")
        return {"items": self.objects.get(plural, [])}


class FakeClient:
    def __init__(self, context="ctx", core_v1=None, storage_v1=None, custom_objects=None):
        self.context = context
        self.core_v1 = core_v1 or FakeCoreV1()
        self.storage_v1 = storage_v1 or FakeStorageV1()
        self.custom_objects = custom_objects or FakeCustomObjects()

    def get_context_name(self):
        return self.context


class TestCollectSnapshot:
    def test_collects_both_clusters(self):
        downstream = FakeClient(
            core_v1=FakeCoreV1(
                pvs=[make_api_pv("pvc-1"), make_api_pv("pvc-2", phase="Available", claim=None)],
                pods=[make_api_pod("app-0", claims=["data"])],
            ),
            storage_v1=FakeStorageV1(vas=[make_api_va("csi-1", "pvc-1")]),
        )
        custom = FakeCustomObjects(
            objects={
                "virtualmachines": [make_vm("vm-a", ["pvc-1"])],
                "virtualmachineinstances": [make_vmi("vm-a", ["pvc-1"])],
            }
        )
        management = FakeClient(context="mgmt", custom_objects=custom)

        snap = collect_snapshot(
            downstream,
            management,
            namespace=MGMT_NS,
            cluster_label="guestcluster.harvesterhci.io/name",
            cluster_name="guest",
        )

        assert [pv.name for pv in snap.pvs] == ["pvc-1", "pvc-2"]
        assert [pv.name for pv in snap.bound_volumes()] == ["pvc-1"]
        assert snap.attachments[0].volume_name == "pvc-1"
        assert snap.pods[0].claim_names == ("data",)
        assert snap.machines_referencing("pvc-1") == ["vm-a"]
        assert snap.instances_referencing("pvc-1") == ["vm-a"]
        assert custom.calls[0] == (
            "kubevirt.io",
            "v1",
            MGMT_NS,
            "virtualmachines",
            "guestcluster.harvesterhci.io/name=guest",
        )

    def test_downstream_list_failure_is_fatal(self):
        downstream = FakeClient(context="ds", core_v1=FakeCoreV1(fail=True))
        with pytest.raises(ClusterUnreachableError) as exc_info:
            collect_snapshot(downstream, FakeClient(), MGMT_NS, "label", "guest")
        assert exc_info.value.context == "ds"

    def test_forbidden_custom_objects_yield_empty_lists(self):
        management = FakeClient(custom_objects=FakeCustomObjects(forbidden=True))
        snap = collect_snapshot(FakeClient(), management, MGMT_NS, "label", "guest")
        assert snap.machines == []
        assert snap.instances == []


# ---------------------------------------------------------------------------
# ManagementLookups
# ---------------------------------------------------------------------------


class FakeLookupCoreV1:
    def __init__(self, pvcs=None, pods=None):
        self.pvcs = pvcs or {}
        self.pods = pods or {}
        self.request_timeouts = []

    def read_namespaced_persistent_volume_claim(self, name, namespace, _request_timeout=None):
        self.request_timeouts.append(_request_timeout)
        if name not in self.pvcs:
            raise ApiException(status=404, reason="Not Found")
        return K8sObj(spec=K8sObj(volume_name=self.pvcs[name]))

    def read_namespaced_pod(self, name, namespace, _request_timeout=None):
        self.request_timeouts.append(_request_timeout)
        if name not in self.pods:
            raise ApiException(status=404, reason="Not Found")
        return K8sObj(status=K8sObj(phase=self.pods[name]))


class FakeLookupCustomObjects:
    def __init__(self, volumes=None):
        self.volumes = volumes or {}
        self.request_timeouts = []

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, _request_timeout=None):
        self.request_timeouts.append(_request_timeout)
        assert (group, version, plural) == ("longhorn.io", "v1beta2", "volumes")
        if name not in self.volumes:
            raise ApiException(status=404, reason="Not Found")
        return self.volumes[name]


class TestManagementLookups:
    def _lookups(self) -> ManagementLookups:
        k8s = K8sObj(
            core_v1=FakeLookupCoreV1(
                pvcs={"pvc-1": "lh-1", "pvc-pending": None},
                pods={"hp-volume-abc": "Running"},
            ),
            custom_objects=FakeLookupCustomObjects(volumes={"lh-1": make_block_volume("lh-1")}),
        )
        return ManagementLookups(k8s)

    def test_pvc_volume_name(self):
        lookups = self._lookups()
        assert lookups.get_pvc_volume_name(MGMT_NS, "pvc-1") == "lh-1"
        assert lookups.get_pvc_volume_name(MGMT_NS, "pvc-pending") is None
        assert lookups.get_pvc_volume_name(MGMT_NS, "missing") is None

    def test_block_volume(self):
        lookups = self._lookups()
        assert lookups.get_block_volume(BLOCK_NS, "lh-1")["metadata"]["name"] == "lh-1"
        assert lookups.get_block_volume(BLOCK_NS, "lh-missing") is None

    def test_pod_lookups(self):
        lookups = self._lookups()
        assert lookups.pod_exists(MGMT_NS, "hp-volume-abc")
        assert lookups.pod_phase(MGMT_NS, "hp-volume-abc") == "Running"
        assert not lookups.pod_exists(MGMT_NS, "hp-volume-gone")
        assert lookups.pod_phase(MGMT_NS, "hp-volume-gone") is None

    def test_every_call_is_bounded_by_request_timeout(self):
        core_v1 = FakeLookupCoreV1(pvcs={"pvc-1": "lh-1"}, pods={"hp-volume-abc": "Running"})
        custom = FakeLookupCustomObjects(volumes={"lh-1": make_block_volume("lh-1")})
        lookups = ManagementLookups(K8sObj(core_v1=core_v1, custom_objects=custom), request_timeout=3.5)

        lookups.get_pvc_volume_name(MGMT_NS, "pvc-1")
        lookups.get_block_volume(BLOCK_NS, "lh-1")
        lookups.pod_exists(MGMT_NS, "hp-volume-abc")

        assert core_v1.request_timeouts == [3.5, 3.5]
        assert custom.request_timeouts == [3.5]


# ---------------------------------------------------------------------------
# IdentityResolver
# ---------------------------------------------------------------------------


class TestIdentityResolver:
    def test_resolve_hit(self):
        lookups = FakeLookups(pvcs={"pvc-1": "lh-1"})
        identity = make_resolver(lookups).resolve("pvc-1")

        assert identity == VolumeIdentity(volume="pvc-1", management_pvc="pvc-1", block_volume="lh-1")
        assert lookups.calls == [("pvc", MGMT_NS, "pvc-1")]

    def test_resolve_miss(self):
        assert make_resolver(FakeLookups()).resolve("pvc-1") is None

    def test_block_status_uses_block_storage_namespace(self):
        lookups = FakeLookups(block_volumes={"lh-1": make_block_volume("lh-1")})
        resolver = make_resolver(lookups)
        status = resolver.block_status(VolumeIdentity("pvc-1", "pvc-1", "lh-1"))

        assert status.name == "lh-1"
        assert lookups.calls == [("block", BLOCK_NS, "lh-1")]

    def test_block_status_fills_missing_name(self):
        lookups = FakeLookups(block_volumes={"lh-1": {"status": {}}})
        status = make_resolver(lookups).block_status(VolumeIdentity("pvc-1", "pvc-1", "lh-1"))
        assert status.name == "lh-1"

    def test_block_status_missing(self):
        resolver = make_resolver(FakeLookups())
        assert resolver.block_status(VolumeIdentity("pvc-1", "pvc-1", "lh-1")) is None

    def test_pod_lookups_use_management_namespace(self):
        lookups = FakeLookups(pods={"virt-launcher-vm-a-x": "Running"})
        resolver = make_resolver(lookups)
        assert resolver.pod_phase("virt-launcher-vm-a-x") == "Running"
        assert not resolver.pod_exists("hp-volume-gone")
        assert all(ns == MGMT_NS for _, ns, _ in lookups.calls)

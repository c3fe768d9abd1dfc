"""Identity resolver.

Maps a downstream volume name onto the management cluster: the management PVC
carries the same name as the downstream PV, and its bound volume is the
block-storage volume. Misses return None; the analyzer turns them into findings.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from kub_voldiag.collector.lookups import Lookups
from kub_voldiag.models import BlockVolumeStatus, VolumeIdentity

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Resolve downstream volumes to management PVCs and block-storage volumes."""

    def __init__(
        self,
        lookups: Lookups,
        management_namespace: str,
        block_storage_namespace: str = "longhorn-system",
    ):
        self.lookups = lookups
        self.management_namespace = management_namespace
        self.block_storage_namespace = block_storage_namespace

    def resolve(self, volume: str) -> VolumeIdentity | None:
        """Return the management identity of `volume`, or None when it has no mapping."""
        block_volume = self.lookups.get_pvc_volume_name(self.management_namespace, volume)
        if not block_volume:
            logger.debug("No management PVC mapping for %s in %s", volume, self.management_namespace)
            return None
        return VolumeIdentity(volume=volume, management_pvc=volume, block_volume=block_volume)

    def block_status(self, identity: VolumeIdentity) -> BlockVolumeStatus | None:
        """Fetch and parse the block-storage volume behind `identity`."""
        obj = self.lookups.get_block_volume(self.block_storage_namespace, identity.block_volume)
        if obj is None:
            return None
        status = BlockVolumeStatus.from_custom_object(obj)
        if not status.name:
            status = replace(status, name=identity.block_volume)
        return status

    def pod_exists(self, name: str) -> bool:
        return self.lookups.pod_exists(self.management_namespace, name)

    def pod_phase(self, name: str) -> str | None:
        return self.lookups.pod_phase(self.management_namespace, name)

"""
Resource resolution: datastores, datastore clusters and networks.

For a datastore cluster the resolver asks Storage DRS for a recommendation
(``RecommendDatastores``) and falls back to the first member datastore when
no recommendation comes back.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from pyVmomi import vim, vmodl

from vsphere_builder.config import DiskConfig, StorageConfig
from vsphere_builder.driver import devices
from vsphere_builder.driver.datastore import Datastore
from vsphere_builder.errors import DriverError, MultipleNetworkFoundError, NotFoundError, ResolverError, parse_fault

logger = logging.getLogger(__name__)


class SelectionMethod(Enum):
    """How the datastore for a build was chosen."""

    DIRECT = "direct"
    DRS = "storage-drs"
    FALLBACK = "first-available"


@dataclass(frozen=True)
class ResolvedPlacement:
    datastore: Datastore
    method: SelectionMethod


class Resolver:
    """Turns names from the build config into driver handles."""

    def __init__(self, driver: Any):
        self.driver = driver

    def resolve_datastore(
        self,
        datastore: str = "",
        datastore_cluster: str = "",
        host: str = "",
        disk_count: int = 1,
    ) -> Optional[ResolvedPlacement]:
        """Pick the datastore a build uses for the VM home and uploads.

        Returns None when nothing is configured and there is no host to
        infer a datastore from.
        """
        if datastore_cluster:
            datastores, method = self._select_from_cluster(datastore_cluster, [DiskConfig(disk_size=1)])
            ds = datastores[0]
            if disk_count > 1:
                logger.info(
                    f"Selected datastore '{ds.name}' from cluster '{datastore_cluster}' for non-disk operations; "
                    "per-disk placement will be requested at VM creation"
                )
            elif method is SelectionMethod.DRS:
                logger.info(f"Storage DRS selected datastore '{ds.name}' from cluster '{datastore_cluster}'")
            else:
                logger.info(f"Selected datastore '{ds.name}' from cluster '{datastore_cluster}' (first available)")
            return ResolvedPlacement(ds, method)

        if not datastore and not host:
            return None

        if datastore:
            logger.info(f"Using datastore '{datastore}'")
        try:
            ds = self.driver.find_datastore(datastore, host)
        except NotFoundError as e:
            if not datastore and "multiple datastores" in str(e):
                raise ResolverError(str(e)) from e
            raise
        return ResolvedPlacement(ds, SelectionMethod.DIRECT)

    def select_datastores_for_disks(
        self, cluster: str, disks: Sequence[DiskConfig]
    ) -> Tuple[List[Datastore], SelectionMethod]:
        """One datastore per disk from a single Storage DRS request."""
        return self._select_from_cluster(cluster, disks)

    def _select_from_cluster(self, cluster: str, disks: Sequence[DiskConfig]) -> Tuple[List[Datastore], SelectionMethod]:
        pod = self.driver.find_datastore_cluster(cluster)
        members = [self.driver.datastore(ref) for ref in self.driver.list_datastores(pod)]
        if not members:
            raise ResolverError(f"datastore cluster '{cluster}' contains no available datastores")

        try:
            recommended = self._recommend(pod, cluster, disks, members[0])
        except (vmodl.MethodFault, DriverError) as e:
            logger.warning(
                f"Storage DRS failed for cluster '{cluster}': {parse_fault(e)}. Using first-available fallback."
            )
            recommended = None

        if recommended is not None:
            return [recommended] * len(disks), SelectionMethod.DRS
        return [members[0]] * len(disks), SelectionMethod.FALLBACK

    def _recommend(self, pod: Any, cluster: str, disks: Sequence[DiskConfig], first: Datastore) -> Optional[Datastore]:
        """Ask Storage DRS where a VM with ``disks`` should be created."""
        request = StorageConfig(
            disk_controller_type=["pvscsi"],
            disks=[
                DiskConfig(d.disk_size, d.thin_provisioned, d.eagerly_scrub, controller_index=0)
                for d in disks
            ],
        )
        vm_spec = vim.vm.ConfigSpec(
            name=f"vsphere-builder-placement-request-{time.time_ns()}",
            numCPUs=1,
            memoryMB=512,
            files=vim.vm.FileInfo(vmPathName=f"[{cluster}]"),
            deviceChange=devices.storage_device_specs(request),
        )
        placement = vim.storageDrs.StoragePlacementSpec(
            type="create",
            configSpec=vm_spec,
            resourcePool=self._placement_pool(first),
            podSelectionSpec=vim.storageDrs.PodSelectionSpec(storagePod=pod),
        )

        manager = self.driver.content.storageResourceManager
        if manager is None:
            raise DriverError("storage resource manager not available")
        result = manager.RecommendDatastores(storageSpec=placement)
        if not result or not result.recommendations:
            raise DriverError("no storage placement recommendations returned")

        for action in result.recommendations[0].action or []:
            if isinstance(action, vim.storageDrs.StoragePlacementAction):
                return self.driver.datastore(action.destination)
        return None

    def _placement_pool(self, datastore: Datastore) -> Optional[Any]:
        """Resource pool of the first host mounting ``datastore``."""
        mounts = datastore.info("host").get("host") or []
        if not mounts:
            return None
        return mounts[0].key.parent.resourcePool

    def resolve_network(self, name: str = "", host: str = "") -> Any:
        """Find one network by name, path or id, narrowed by host when ambiguous."""
        if not name:
            if not host:
                raise ResolverError("a network name or a host is required")
            networks = self.driver.find_host(host).network
            if not networks:
                raise ResolverError(f"host '{host}' has no networks")
            if len(networks) > 1:
                raise ResolverError("host has multiple networks; specify the network name")
            return networks[0]

        networks = self.driver.find_networks(name)
        if not networks:
            raise NotFoundError(f"network '{name}' not found")
        if len(networks) == 1:
            return networks[0]
        if not host:
            raise MultipleNetworkFoundError(name, "specify the inventory path or id of the network")

        try:
            host_ref = self.driver.find_host(host)
        except NotFoundError as e:
            raise MultipleNetworkFoundError(name, f"unable to find host '{host}': {e}") from e
        for network in networks:
            if host_ref in (network.host or []):
                return network
        raise MultipleNetworkFoundError(name, f"unable to find network accessible to host '{host}'")

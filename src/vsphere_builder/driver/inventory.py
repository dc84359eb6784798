"""
Inventory lookups shared by the driver: folders, hosts, clusters, resource
pools, networks, datastores and datastore clusters.

Names may be plain object names (searched below the datacenter) or inventory
paths relative to the datacenter, e.g. ``host/cluster-1/esx-01``.
"""

import logging
from typing import Any, List, Optional

from pyVmomi import vim, vmodl

from vsphere_builder.errors import DriverError, NotFoundError, parse_fault

logger = logging.getLogger(__name__)


class InventoryMixin:
    """Lookups against ``self.content`` scoped to ``self.datacenter``."""

    content: Any
    datacenter: Any

    def _list_objects(self, vimtype: Any, root: Optional[Any] = None) -> List[Any]:
        view = self.content.viewManager.CreateContainerView(root or self.datacenter, [vimtype], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def _find_objects(self, vimtype: Any, name: str, root: Optional[Any] = None) -> List[Any]:
        """Objects of ``vimtype`` matching a name, an inventory path or a moref id."""
        if "/" in name:
            path = f"{self.datacenter.name}/{name.strip('/')}"
            obj = self.content.searchIndex.FindByInventoryPath(path)
            return [obj] if isinstance(obj, vimtype) else []
        return [obj for obj in self._list_objects(vimtype, root) if obj.name == name or obj._moId == name]

    def _find_one(self, vimtype: Any, name: str, kind: str, root: Optional[Any] = None) -> Any:
        matches = self._find_objects(vimtype, name, root)
        if not matches:
            raise NotFoundError(f"{kind} '{name}' not found")
        if len(matches) > 1:
            raise NotFoundError(f"{kind} '{name}' is ambiguous; specify its inventory path")
        return matches[0]

    def find_host(self, name: str) -> Any:
        return self._find_one(vim.HostSystem, name, "host", self.datacenter.hostFolder)

    def find_cluster(self, name: str) -> Any:
        return self._find_one(vim.ClusterComputeResource, name, "cluster", self.datacenter.hostFolder)

    def find_datastore_cluster(self, name: str) -> Any:
        """Find a storage pod; the error lists the pods that do exist."""
        matches = self._find_objects(vim.StoragePod, name, self.datacenter.datastoreFolder)
        if matches:
            return matches[0]
        available = [pod.name for pod in self._list_objects(vim.StoragePod, self.datacenter.datastoreFolder)]
        if available:
            raise NotFoundError(f"datastore cluster '{name}' not found; available clusters: {', '.join(available)}")
        raise NotFoundError(f"datastore cluster '{name}' not found")

    def find_networks(self, name: str) -> List[Any]:
        return self._find_objects(vim.Network, name, self.datacenter.networkFolder)

    def find_folder(self, path: str) -> Any:
        """Return the VM folder at ``path`` below the datacenter's vm folder.

        Missing intermediate folders are created.
        """
        folder = self.datacenter.vmFolder
        for part in [p for p in path.strip("/").split("/") if p]:
            child = next(
                (c for c in folder.childEntity if isinstance(c, vim.Folder) and c.name == part),
                None,
            )
            if child is None:
                logger.info(f"Creating folder '{part}' in '{folder.name}'")
                try:
                    child = folder.CreateFolder(part)
                except vim.fault.DuplicateName:
                    child = next(c for c in folder.childEntity if isinstance(c, vim.Folder) and c.name == part)
                except vmodl.MethodFault as e:
                    raise DriverError(f"error creating folder '{part}': {parse_fault(e)}") from e
            folder = child
        return folder

    def find_resource_pool(self, cluster: str = "", host: str = "", name: str = "") -> Any:
        """Resolve ``<cluster or host>/Resources/<name>``.

        Falls back to the compute resource's default pool, then to a vApp
        with that name.
        """
        owner_name = cluster or host
        if cluster:
            owner = self.find_cluster(cluster)
        elif host:
            owner = self.find_host(host).parent
        else:
            owners = self._list_objects(vim.ComputeResource, self.datacenter.hostFolder)
            if len(owners) != 1:
                raise NotFoundError("a cluster or host is required to find a resource pool")
            owner = owners[0]

        root_pool = owner.resourcePool
        if not name or name == "Resources":
            return root_pool

        pool = root_pool
        for part in name.strip("/").split("/"):
            pool = next((p for p in pool.resourcePool if p.name == part), None)
            if pool is None:
                break
        if pool is not None:
            return pool

        logger.warning(f"{owner_name}/Resources/{name} not found. Looking for default resource pool.")
        vapps = self._find_objects(vim.VirtualApp, name)
        if vapps:
            return vapps[0]
        return root_pool

    def resource_pool_path(self, pool: Any) -> str:
        """Path of ``pool`` below its compute resource; ``""`` for the root pool."""
        names = []
        while pool is not None and isinstance(pool, vim.ResourcePool):
            parent = pool.parent
            if isinstance(parent, vim.ComputeResource):
                break
            names.append(pool.name)
            pool = parent
        return "/".join(reversed(names))

    def list_datastores(self, pod: Any) -> List[Any]:
        """Member datastores of a storage pod."""
        return [child for child in pod.childEntity if isinstance(child, vim.Datastore)]

"""
vCenter connection and the driver entry point.

The Driver owns the SOAP session (pyVmomi) and, lazily, the content library
REST client. Every other driver object (VirtualMachine, Datastore) holds a
reference back to it.
"""

import logging
import ssl
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vsphere_builder.config import ConnectConfig, NicConfig, StorageConfig
from vsphere_builder.driver import devices
from vsphere_builder.driver.datastore import Datastore
from vsphere_builder.driver.inventory import InventoryMixin
from vsphere_builder.driver.library import ContentLibraryClient
from vsphere_builder.driver.tasks import run_task
from vsphere_builder.driver.vm import VirtualMachine
from vsphere_builder.errors import DriverError, NotFoundError, parse_fault

logger = logging.getLogger(__name__)


class Driver(InventoryMixin):
    """Connected vCenter session scoped to one datacenter."""

    def __init__(self, si: Any, config: ConnectConfig, datacenter: Any = None):
        self.si = si
        self.config = config
        self.content = si.RetrieveContent()
        self.datacenter = datacenter
        self.datacenter_name = datacenter.name if datacenter is not None else ""
        self._library: Optional[ContentLibraryClient] = None

    @classmethod
    def connect(cls, config: ConnectConfig) -> "Driver":
        """Log in to vCenter and select the datacenter."""
        context = ssl.create_default_context()
        if config.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        logger.info(f"Connecting to vCenter at {config.server}")
        try:
            si = SmartConnect(
                host=config.server,
                user=config.username,
                pwd=config.password,
                sslContext=context,
            )
        except vim.fault.InvalidLogin as e:
            raise DriverError(f"login to {config.server} failed: {parse_fault(e)}") from e
        except (vmodl.MethodFault, OSError) as e:
            raise DriverError(f"cannot connect to {config.server}: {parse_fault(e)}") from e

        driver = cls(si, config)
        try:
            driver.datacenter = driver.find_datacenter(config.datacenter)
            driver.datacenter_name = driver.datacenter.name
        except DriverError:
            Disconnect(si)
            raise
        logger.info(f"Connected to {config.server}, datacenter '{driver.datacenter_name}'")
        return driver

    def disconnect(self) -> None:
        """Close the REST session, then the SOAP session. Failures are only logged."""
        if self._library is not None:
            try:
                self._library.close()
            except DriverError as e:
                logger.warning(f"Error closing content library session: {e}")
            self._library = None
        try:
            Disconnect(self.si)
        except (vmodl.MethodFault, OSError) as e:
            logger.warning(f"Error closing vCenter session: {parse_fault(e)}")

    @property
    def library(self) -> ContentLibraryClient:
        if self._library is None:
            self._library = ContentLibraryClient(self.config)
        return self._library

    @property
    def session_cookie(self) -> str:
        cookie = getattr(self.si._stub, "cookie", None)
        if not cookie:
            raise DriverError("no vCenter session cookie available")
        return str(cookie)

    def find_datacenter(self, name: str = "") -> Any:
        view = self.content.viewManager.CreateContainerView(self.content.rootFolder, [vim.Datacenter], True)
        try:
            datacenters = list(view.view)
        finally:
            view.Destroy()
        if name:
            for dc in datacenters:
                if dc.name == name:
                    return dc
            raise NotFoundError(f"datacenter '{name}' not found")
        if len(datacenters) == 1:
            return datacenters[0]
        if not datacenters:
            raise NotFoundError("no datacenter found")
        raise NotFoundError("more than one datacenter found; specify 'datacenter'")

    def properties(self, obj: Any, *paths: str) -> Dict[str, Any]:
        """Read properties of one managed object in a single round trip.

        No paths means every property.
        """
        prop_spec = vmodl.query.PropertyCollector.PropertySpec(
            type=type(obj),
            all=not paths,
            pathSet=list(paths),
        )
        obj_spec = vmodl.query.PropertyCollector.ObjectSpec(obj=obj, skip=False)
        filter_spec = vmodl.query.PropertyCollector.FilterSpec(objectSet=[obj_spec], propSet=[prop_spec])
        try:
            result = self.content.propertyCollector.RetrievePropertiesEx(
                specSet=[filter_spec],
                options=vmodl.query.PropertyCollector.RetrieveOptions(),
            )
        except vmodl.MethodFault as e:
            raise DriverError(f"error reading properties {list(paths)}: {parse_fault(e)}") from e
        if result is None or not result.objects:
            return {}
        return {prop.name: prop.val for prop in result.objects[0].propSet or []}

    def vm(self, ref: Any) -> VirtualMachine:
        return VirtualMachine(ref, self)

    def datastore(self, ref: Any) -> Datastore:
        return Datastore(ref, self)

    def datastore_name(self, moid: str) -> str:
        """Name of a datastore given its managed object id, or the id itself."""
        try:
            return vim.Datastore(moid, self.si._stub).name
        except vmodl.MethodFault as e:
            logger.warning(f"Cannot read name of datastore {moid}: {parse_fault(e)}")
            return moid

    def find_vm(self, path: str) -> VirtualMachine:
        """Find a VM by name, moref id or ``folder/name`` path below the vm folder."""
        if "/" in path:
            ref = self.content.searchIndex.FindByInventoryPath(f"{self.datacenter.name}/vm/{path.strip('/')}")
            if not isinstance(ref, vim.VirtualMachine):
                raise NotFoundError(f"vm '{path}' not found")
            return self.vm(ref)
        return self.vm(self._find_one(vim.VirtualMachine, path, "vm", self.datacenter.vmFolder))

    def find_vm_or_none(self, path: str) -> Optional[VirtualMachine]:
        try:
            return self.find_vm(path)
        except NotFoundError:
            return None

    def find_datastore(self, name: str = "", host: str = "") -> Datastore:
        """Find a datastore by name; with no name use the host's only datastore."""
        if not name:
            if not host:
                raise NotFoundError("a datastore name or a host is required")
            host_datastores = self.find_host(host).datastore
            if not host_datastores:
                raise NotFoundError(f"host '{host}' has no datastores")
            if len(host_datastores) > 1:
                raise NotFoundError("host has multiple datastores; specify the datastore name")
            return self.datastore(host_datastores[0])
        try:
            ref = self._find_one(vim.Datastore, name, "datastore", self.datacenter.datastoreFolder)
        except NotFoundError as e:
            raise NotFoundError(f"error finding datastore with name {name}: {e}") from e
        return self.datastore(ref)

    def pre_clean_vm(self, path: str, force: bool, cluster: str = "", host: str = "", resource_pool: str = "") -> None:
        """Refuse to overwrite an existing VM unless ``force``; with it, delete the VM."""
        existing = self.find_vm_or_none(path)
        if existing is None:
            return
        if not force:
            raise DriverError(f"{path} already exists, you can use the force option to destroy it")

        logger.info(f"Removing the existing virtual machine at {path} based on use of the force option")
        existing.power_off()
        if existing.is_template():
            logger.info(f"Converting the template at {path} to a virtual machine")
            existing.convert_to_vm(cluster, host, resource_pool)
        existing.destroy()

    def create_vm(
        self,
        name: str,
        datastore: Datastore,
        folder: str = "",
        cluster: str = "",
        host: str = "",
        resource_pool: str = "",
        guest_os_type: str = "otherGuest",
        vm_version: int = 0,
        annotation: str = "",
        storage: Optional[StorageConfig] = None,
        disk_datastores: Optional[Sequence[Datastore]] = None,
        networks: Sequence[Tuple[NicConfig, Any]] = (),
        usb_controller: Sequence[str] = (),
        ctx: Any = None,
    ) -> VirtualMachine:
        """Create an empty VM with its disks, NICs and USB controllers."""
        spec = vim.vm.ConfigSpec(name=name, annotation=annotation, guestId=guest_os_type)
        if vm_version:
            spec.version = f"vmx-{vm_version}"

        vm_folder = self.find_folder(folder)
        pool = self.find_resource_pool(cluster, host, resource_pool)
        host_ref = self.find_host(host) if cluster and host else None

        keys = devices.KeyAllocator()
        changes: List[Any] = []
        if storage is not None:
            changes += devices.storage_device_specs(storage, disk_datastores=disk_datastores, keys=keys)
        for nic, network in networks:
            card = devices.new_network_card(nic.network_card, network, keys(), nic.mac_address, nic.passthrough)
            changes.append(devices.add_spec(card))
        for controller in devices.usb_controllers(usb_controller, keys):
            changes.append(devices.add_spec(controller))
        spec.deviceChange = changes
        spec.files = vim.vm.FileInfo(vmPathName=f"[{datastore.name}]")

        logger.info(f"Creating VM '{name}' on datastore '{datastore.name}'")
        ref = run_task(vm_folder.CreateVM_Task, config=spec, pool=pool, host=host_ref, ctx=ctx)
        return self.vm(ref)

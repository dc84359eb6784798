"""
VirtualMachine facade over ``vim.VirtualMachine``.

One method per remote operation. Mutating calls go through ``run_task``;
reads go through ``info`` so that a single round trip fetches exactly the
properties a caller needs.
"""

import ipaddress
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from pyVmomi import vim, vmodl

from vsphere_builder.driver import devices
from vsphere_builder.driver.datastore import remove_datastore_prefix
from vsphere_builder.driver.tasks import run_task
from vsphere_builder.errors import (
    DriverError,
    IPWaitTimeoutError,
    NotFoundError,
    ShutdownTimeoutError,
    TaskError,
    VAppConfigError,
    parse_fault,
)

logger = logging.getLogger(__name__)

POWERED_OFF = "poweredOff"
POWERED_ON = "poweredOn"

# Boot order names accepted by set_boot_order
BOOT_DEVICES = ("disk", "cdrom", "floppy", "ethernet")


class VirtualMachine:
    """A VM bound to the driver that found or created it."""

    def __init__(self, ref: Any, driver: Any):
        self.ref = ref
        self.driver = driver

    def __repr__(self) -> str:
        return f"<VirtualMachine {getattr(self.ref, '_moId', self.ref)}>"

    @property
    def name(self) -> str:
        return self.info("name")["name"]

    def info(self, *paths: str) -> Dict[str, Any]:
        """Property values keyed by path; no paths reads everything."""
        return self.driver.properties(self.ref, *paths)

    def devices(self) -> List[Any]:
        return list(self.info("config.hardware.device").get("config.hardware.device") or [])

    def _call(self, method: Any, *args: Any, **kwargs: Any) -> Any:
        """Synchronous (non-task) call with faults mapped to DriverError."""
        try:
            return method(*args, **kwargs)
        except vmodl.MethodFault as e:
            raise DriverError(f"{getattr(method, '__name__', 'call')} failed: {parse_fault(e)}") from e

    # Power

    def power_state(self) -> str:
        return str(self.info("runtime.powerState").get("runtime.powerState"))

    def is_powered_off(self) -> bool:
        return self.power_state() == POWERED_OFF

    def power_on(self, ctx: Any = None) -> None:
        logger.info("Powering on VM")
        run_task(self.ref.PowerOnVM_Task, ctx=ctx)

    def power_off(self) -> None:
        """Hard power off; a VM that is already off is left alone."""
        if self.is_powered_off():
            return
        logger.info("Powering off VM")
        run_task(self.ref.PowerOffVM_Task)

    def start_shutdown(self) -> None:
        """Ask VMware Tools for a guest shutdown. Returns immediately."""
        logger.info("Requesting guest shutdown")
        self._call(self.ref.ShutdownGuest)

    def wait_for_shutdown(self, ctx: Any, timeout: float, poll_interval: float = 1.0) -> bool:
        """Block until the VM is powered off.

        Returns:
            True once powered off, False if ``ctx`` was cancelled first.

        Raises:
            ValueError: ``poll_interval`` is not in ``(0, timeout]``.
            ShutdownTimeoutError: ``timeout`` elapsed.
        """
        if poll_interval <= 0:
            raise ValueError(f"poll interval must be positive, got {poll_interval}")
        if poll_interval > timeout:
            raise ValueError(f"poll interval {poll_interval}s exceeds shutdown timeout {timeout}s")

        start = time.time()
        while True:
            if self.is_powered_off():
                return True
            if time.time() - start >= timeout:
                raise ShutdownTimeoutError(f"timeout while waiting for machine to shut down after {timeout:g}s")
            if ctx.wait(poll_interval):
                return False

    # Lifecycle

    def destroy(self) -> None:
        logger.info("Destroying VM")
        run_task(self.ref.Destroy_Task)

    def is_template(self) -> bool:
        return bool(self.info("config.template").get("config.template"))

    def convert_to_template(self) -> None:
        logger.info("Converting VM to template")
        self._call(self.ref.MarkAsTemplate)

    def convert_to_vm(self, cluster: str = "", host: str = "", resource_pool: str = "") -> None:
        pool = self.driver.find_resource_pool(cluster, host, resource_pool)
        host_ref = self.driver.find_host(host) if cluster and host else None
        self._call(self.ref.MarkAsVirtualMachine, pool=pool, host=host_ref)

    def create_snapshot(self, name: str) -> None:
        logger.info(f"Creating snapshot '{name}'")
        run_task(self.ref.CreateSnapshot_Task, name=name, description="", memory=False, quiesce=False)

    def delete_snapshot(self, name: str) -> None:
        """Remove the snapshot called ``name``; its children are kept."""
        snapshot = self.info("snapshot").get("snapshot")
        pending = list(snapshot.rootSnapshotList) if snapshot is not None else []
        while pending:
            tree = pending.pop()
            if tree.name == name:
                logger.info(f"Removing snapshot '{name}'")
                run_task(tree.snapshot.RemoveSnapshot_Task, removeChildren=False)
                return
            pending.extend(tree.childSnapshotList or [])
        raise NotFoundError(f"snapshot '{name}' not found")

    def customize(self, spec: Any) -> None:
        """Apply a guest customization spec; the VM must be powered off."""
        logger.info("Customizing VM")
        run_task(self.ref.CustomizeVM_Task, spec=spec)

    def get_dir(self) -> str:
        """Datastore directory of the VM (no ``[ds]`` prefix)."""
        props = self.info("name", "layoutEx.file")
        name = props["name"]
        vmx_name = f"/{name}.vmx"
        layout = props.get("layoutEx.file") or []
        for f in layout:
            if f.name.endswith(vmx_name):
                return remove_datastore_prefix(f.name[: -len(vmx_name)])
        raise DriverError(f"cannot find '{vmx_name}'")

    # Reconfiguration

    def reconfigure(self, spec: Any, ctx: Any = None) -> None:
        run_task(self.ref.ReconfigVM_Task, spec=spec, ctx=ctx)

    def add_device(self, device: Any) -> None:
        self.reconfigure(vim.vm.ConfigSpec(deviceChange=[devices.add_spec(device)]))

    def remove_device(self, *items: Any, keep_files: bool = True) -> None:
        if not items:
            return
        changes = [devices.remove_spec(d, destroy_file=not keep_files) for d in items]
        self.reconfigure(vim.vm.ConfigSpec(deviceChange=changes))

    def configure(self, hw: Any) -> None:
        """Apply HardwareConfig, then reconcile the vTPM and precision clock."""
        spec = vim.vm.ConfigSpec()
        if hw.cpus:
            spec.numCPUs = hw.cpus
        if hw.cpu_cores:
            spec.numCoresPerSocket = hw.cpu_cores
        if hw.ram:
            spec.memoryMB = hw.ram

        cpu_alloc = vim.ResourceAllocationInfo(reservation=hw.cpu_reservation)
        if hw.cpu_limit:
            cpu_alloc.limit = hw.cpu_limit
        spec.cpuAllocation = cpu_alloc
        spec.memoryAllocation = vim.ResourceAllocationInfo(reservation=hw.ram_reservation)
        spec.memoryReservationLockedToMax = hw.ram_reserve_all
        spec.nestedHVEnabled = hw.nested_hv
        spec.cpuHotAddEnabled = hw.cpu_hot_plug
        spec.memoryHotAddEnabled = hw.memory_hot_plug

        current = self.devices()
        changes = []
        cards = devices.of_type(current, vim.vm.device.VirtualVideoCard)
        if len(cards) == 1:
            card = cards[0]
            if hw.video_ram:
                card.videoRamSizeInKB = hw.video_ram
            card.numDisplays = hw.displays or 1
            changes.append(devices.edit_spec(card))

        if hw.vgpu_profile:
            passthrough = devices.of_type(current, vim.vm.device.VirtualPCIPassthrough)
            vgpus = [
                d for d in passthrough
                if isinstance(d.backing, vim.vm.device.VirtualPCIPassthrough.VmiopBackingInfo)
            ]
            if len(vgpus) > 1:
                raise DriverError("more than one vGPU device found")
            vgpu = devices.new_vgpu(-200, hw.vgpu_profile)
            if len(passthrough) == 1:
                vgpu.key = passthrough[0].key
                changes.append(devices.edit_spec(vgpu))
            else:
                changes.append(devices.add_spec(vgpu))
            logger.info(f"Adding vGPU device with profile '{hw.vgpu_profile}'")
        spec.deviceChange = changes

        firmware = hw.firmware
        secure_boot = firmware == "efi-secure"
        if secure_boot:
            firmware = "efi"
        if firmware:
            spec.firmware = firmware
        spec.bootOptions = vim.vm.BootOptions(enterBIOSSetup=hw.force_bios_setup, efiSecureBootEnabled=secure_boot)

        self.reconfigure(spec)

        tpms = devices.of_type(self.devices(), vim.vm.device.VirtualTPM)
        if hw.vtpm and not tpms:
            self.add_device(vim.vm.device.VirtualTPM(key=-1))
        elif not hw.vtpm and tpms:
            self.remove_device(*tpms, keep_files=False)

        if hw.precision_clock and hw.precision_clock != "none":
            self.add_device(devices.new_precision_clock(-1, hw.precision_clock))

    def resize_disk(self, size_mb: int) -> List[Any]:
        """Edit spec growing the VM's only disk to ``size_mb``. Not applied."""
        disks = devices.of_type(self.devices(), vim.vm.device.VirtualDisk)
        if not disks:
            raise DriverError("no disks found")
        if len(disks) > 1:
            raise DriverError("more than one disk found, only a single disk is allowed")
        disk = disks[0]
        disk.capacityInKB = size_mb * 1024
        disk.capacityInBytes = disk.capacityInKB * 1024
        return [devices.edit_spec(disk)]

    def update_vapp_config(self, props: Dict[str, str]) -> Optional[Any]:
        """Build a vApp spec that sets ``props``; nothing is sent.

        Every key must be declared by the VM and user configurable, otherwise
        VAppConfigError is raised and no spec is built.
        """
        if not props:
            return None
        vapp = self.info("config.vAppConfig").get("config.vAppConfig")
        if vapp is None:
            raise VAppConfigError("this VM lacks a vApp configuration and cannot have vApp properties set on it")

        declared = {p.id: p for p in vapp.property or []}
        unsupported = sorted(set(props) - set(declared))
        if unsupported:
            raise VAppConfigError(f"unsupported vApp properties in vapp.properties: {unsupported}")
        locked = sorted(k for k in props if not declared[k].userConfigurable)
        if locked:
            raise VAppConfigError(f"vApp property with userConfigurable=false specified in vapp.properties: {locked}")

        specs = []
        for key, value in props.items():
            p = declared[key]
            info = vim.vApp.PropertyInfo(key=p.key, id=p.id, value=value, userConfigurable=True)
            specs.append(vim.vApp.PropertySpec(operation="edit", info=info))
        return vim.vApp.VmConfigSpec(property=specs)

    def add_public_keys(self, public_keys: str) -> None:
        try:
            vapp = self.update_vapp_config({"public-keys": public_keys})
        except VAppConfigError as e:
            raise VAppConfigError(f"not possible to save temporary public key: {e}") from e
        self.reconfigure(vim.vm.ConfigSpec(vAppConfig=vapp))

    def add_config_params(self, params: Dict[str, str], tools: Optional[Any] = None) -> None:
        if not params and tools is None:
            return
        spec = vim.vm.ConfigSpec()
        spec.extraConfig = [vim.option.OptionValue(key=k, value=v) for k, v in params.items()]
        if tools is not None:
            spec.tools = tools
        self.reconfigure(spec)

    def add_flag(self, flags: Any) -> None:
        self.reconfigure(vim.vm.ConfigSpec(flags=flags))

    def set_boot_order(self, order: Sequence[str]) -> None:
        """Set the boot order from ``disk``/``cdrom``/``floppy``/``ethernet``.

        ``["-"]`` or an empty list clears it.
        """
        boot_devices = []
        if list(order) not in ([], ["-"]):
            current = self.devices()
            for name in order:
                if name == "disk":
                    boot_devices += [
                        vim.vm.BootOptions.BootableDiskDevice(deviceKey=d.key)
                        for d in devices.of_type(current, vim.vm.device.VirtualDisk)
                    ]
                elif name == "cdrom":
                    if devices.of_type(current, vim.vm.device.VirtualCdrom):
                        boot_devices.append(vim.vm.BootOptions.BootableCdromDevice())
                elif name == "floppy":
                    if devices.of_type(current, vim.vm.device.VirtualFloppy):
                        boot_devices.append(vim.vm.BootOptions.BootableFloppyDevice())
                elif name == "ethernet":
                    boot_devices += [
                        vim.vm.BootOptions.BootableEthernetDevice(deviceKey=d.key)
                        for d in devices.of_type(current, vim.vm.device.VirtualEthernetCard)
                    ]
                else:
                    raise DriverError(f"unknown boot device '{name}', expected one of {', '.join(BOOT_DEVICES)}")
        self.reconfigure(vim.vm.ConfigSpec(bootOptions=vim.vm.BootOptions(bootOrder=boot_devices)))

    def remove_network_adapters(self) -> None:
        adapters = devices.of_type(self.devices(), vim.vm.device.VirtualEthernetCard)
        for adapter in adapters:
            logger.info(f"Removing network adapter {devices.device_label(adapter)}")
            self.remove_device(adapter)

    # Removable media

    def cdroms(self) -> List[Any]:
        return devices.of_type(self.devices(), vim.vm.device.VirtualCdrom)

    def find_sata_controller(self) -> Optional[Any]:
        found = devices.of_type(self.devices(), vim.vm.device.VirtualAHCIController)
        return found[0] if found else None

    def add_sata_controller(self) -> None:
        logger.info("Adding SATA controller")
        self.add_device(vim.vm.device.VirtualAHCIController(key=-1))

    def add_cdrom(self, cdrom_type: str = "ide", iso_path: str = "") -> None:
        """Attach a CD-ROM on a free IDE/SATA slot, empty when no ISO is given."""
        current = self.devices()
        controller = devices.free_controller(current, cdrom_type)
        cdrom = devices.new_cdrom(controller, current, -1, iso_path)
        logger.info(f"Creating CD-ROM on controller '{devices.device_label(controller)}' with iso '{iso_path}'")
        self.add_device(cdrom)

    def eject_cdroms(self) -> None:
        """Empty every CD-ROM drive; drives stay attached."""
        for cdrom in self.cdroms():
            devices.set_cdrom_media(cdrom)
            self.reconfigure(vim.vm.ConfigSpec(deviceChange=[devices.edit_spec(cdrom)]))

    def remove_cdroms(self) -> None:
        """Remove every CD-ROM drive, then the SATA controllers."""
        current = self.devices()
        self.remove_device(*devices.of_type(current, vim.vm.device.VirtualCdrom))
        self.remove_device(*devices.of_type(current, vim.vm.device.VirtualAHCIController))

    def floppies(self) -> List[Any]:
        return devices.of_type(self.devices(), vim.vm.device.VirtualFloppy)

    def add_floppy(self, image_path: str = "") -> None:
        self.add_device(devices.new_floppy(-1, image_path))

    def remove_floppy(self) -> None:
        self.remove_device(*self.floppies())

    # Guest

    def guest_ips(self) -> List[str]:
        """Addresses reported by VMware Tools, NIC addresses first."""
        props = self.info("guest.net", "guest.ipAddress")
        ips = []
        for nic in props.get("guest.net") or []:
            ips.extend(nic.ipAddress or [])
        primary = props.get("guest.ipAddress")
        if primary and primary not in ips:
            ips.append(primary)
        return ips

    def wait_for_ip(self, ctx: Any, timeout: float, network: Optional[str] = None, poll_interval: float = 1.0) -> Optional[str]:
        """Poll until the guest reports an IPv4 address (inside ``network`` when given).

        Returns None if ``ctx`` is cancelled first.
        """
        ip_net = ipaddress.ip_network(network, strict=False) if network else None
        deadline = time.time() + timeout
        while True:
            for ip in self.guest_ips():
                try:
                    addr = ipaddress.ip_address(ip)
                except ValueError:
                    continue
                if ip_net is not None and addr not in ip_net:
                    continue
                if ip_net is None and addr.version != 4:
                    continue
                return ip
            if time.time() >= deadline:
                raise IPWaitTimeoutError(f"timeout waiting for IP address after {timeout:g}s")
            if ctx.wait(poll_interval):
                return None

    def type_on_keyboard(self, key_events: Sequence[Any]) -> int:
        spec = vim.UsbScanCodeSpec(keyEvents=list(key_events))
        return self._call(self.ref.PutUsbScanCodes, spec)

    # Clone and export

    def clone(
        self,
        name: str,
        datastore: Any,
        folder: str = "",
        cluster: str = "",
        host: str = "",
        resource_pool: str = "",
        linked_clone: bool = False,
        disk_size: int = 0,
        notes: str = "",
        storage: Optional[Any] = None,
        disk_datastores: Optional[Sequence[Any]] = None,
        network: Optional[Any] = None,
        mac_address: str = "",
        vapp_properties: Optional[Dict[str, str]] = None,
        ctx: Any = None,
    ) -> "VirtualMachine":
        """Clone this VM or template into ``folder/name``."""
        vm_folder = self.driver.find_folder(folder)
        relocate = vim.vm.RelocateSpec(
            pool=self.driver.find_resource_pool(cluster, host, resource_pool),
            datastore=datastore.ref,
        )
        if cluster and host:
            relocate.host = self.driver.find_host(host)

        clone_spec = vim.vm.CloneSpec(location=relocate, powerOn=False, template=False)
        if linked_clone:
            relocate.diskMoveType = "createNewChildDiskBacking"
            snapshot = self.info("snapshot").get("snapshot")
            if snapshot is None or snapshot.currentSnapshot is None:
                raise DriverError("linked_clone=true, but template has no snapshots")
            clone_spec.snapshot = snapshot.currentSnapshot

        config = vim.vm.ConfigSpec()
        if notes:
            config.annotation = notes

        changes: List[Any] = []
        if disk_size > 0:
            changes += self.resize_disk(disk_size)

        current = self.devices()
        if storage is not None and storage.disks:
            existing = devices.of_type(current, vim.vm.device.VirtualDisk, vim.vm.device.VirtualController)
            changes += devices.storage_device_specs(storage, existing, disk_datastores)

        if network is not None:
            adapters = devices.of_type(current, vim.vm.device.VirtualEthernetCard)
            if not adapters:
                raise DriverError("no network adapter device found")
            adapter = adapters[0]
            adapter.backing = devices.network_backing(network)
            if mac_address:
                adapter.addressType = "manual"
                adapter.macAddress = mac_address
            changes.append(devices.edit_spec(adapter))
        config.deviceChange = changes

        vapp = self.update_vapp_config(dict(vapp_properties or {}))
        if vapp is not None:
            config.vAppConfig = vapp
        clone_spec.config = config

        logger.info(f"Cloning to '{name}'")
        try:
            ref = run_task(self.ref.CloneVM_Task, folder=vm_folder, name=name, spec=clone_spec, ctx=ctx)
        except TaskError as e:
            raise TaskError(f"error waiting for vm clone to complete: {e}", fault=e.fault) from e
        return VirtualMachine(ref, self.driver)

    def export_lease(self) -> Any:
        """Start an OVF export; the caller drives the returned HttpNfcLease."""
        return self._call(self.ref.ExportVm)

    def ovf_export_options(self) -> List[str]:
        manager = self.driver.content.ovfManager
        return [o.option for o in manager.ovfExportOption or []]

    def create_descriptor(self, name: str, files: Sequence[Any], options: Sequence[str] = ()) -> str:
        """OVF descriptor for the exported ``files`` (``vim.OvfManager.OvfFile``)."""
        params = vim.OvfManager.CreateDescriptorParams(name=name, ovfFiles=list(files))
        if options:
            params.exportOption = list(options)
        result = self._call(self.driver.content.ovfManager.CreateDescriptor, obj=self.ref, cdp=params)
        if result.error:
            raise DriverError(f"unable to create descriptor: {parse_fault(result.error[0])}")
        return result.ovfDescriptor

    # Content library

    def import_ovf_to_content_library(self, cfg: Any, ctx: Any = None) -> None:
        """Publish this VM as an OVF item, updating an existing item of the same name."""
        self.driver.library.import_ovf(
            self.ref._moId,
            cfg.library,
            cfg.name,
            cfg.description,
            cfg.ovf_flags,
            timeout=cfg.publish_timeout,
            ctx=ctx,
        )

    def import_to_content_library(self, cfg: Any, ctx: Any = None) -> None:
        """Publish this VM as a VM template item; placement names become moref ids."""
        placement: Dict[str, str] = {}
        if cfg.resource_pool:
            placement["resource_pool"] = self.driver.find_resource_pool(cfg.cluster, cfg.host, cfg.resource_pool)._moId
        if cfg.cluster:
            placement["cluster"] = self.driver.find_cluster(cfg.cluster)._moId
        if cfg.folder:
            placement["folder"] = self.driver.find_folder(cfg.folder)._moId
        if cfg.host:
            placement["host"] = self.driver.find_host(cfg.host)._moId
        datastore_id = ""
        if cfg.datastore:
            datastore_id = self.driver.find_datastore(cfg.datastore, cfg.host).ref._moId
        self.driver.library.import_template(
            self.ref._moId,
            cfg.library,
            cfg.name,
            cfg.description,
            placement,
            datastore_id,
            timeout=cfg.publish_timeout,
            ctx=ctx,
        )

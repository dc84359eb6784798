"""
Builders for ``vim.vm.device.VirtualDeviceSpec`` lists.

These functions only assemble data objects; nothing here talks to vCenter.
Temporary keys for new devices are negative so that vCenter assigns the
real ones.
"""

from typing import Any, Iterable, List, Optional, Sequence

from pyVmomi import vim

from vsphere_builder.errors import DriverError

DeviceSpec = vim.vm.device.VirtualDeviceSpec

SCSI_CONTROLLERS = {
    "": vim.vm.device.VirtualLsiLogicController,
    "scsi": vim.vm.device.VirtualLsiLogicController,
    "lsilogic": vim.vm.device.VirtualLsiLogicController,
    "lsilogic-sas": vim.vm.device.VirtualLsiLogicSASController,
    "pvscsi": vim.vm.device.ParaVirtualSCSIController,
}

NETWORK_CARDS = {
    "e1000": vim.vm.device.VirtualE1000,
    "e1000e": vim.vm.device.VirtualE1000e,
    "pcnet32": vim.vm.device.VirtualPCNet32,
    "vmxnet2": vim.vm.device.VirtualVmxnet2,
    "vmxnet3": vim.vm.device.VirtualVmxnet3,
    "sriov": vim.vm.device.VirtualSriovEthernetCard,
}

# Unit numbers available on each controller family
_MAX_UNITS = {
    vim.vm.device.VirtualIDEController: 2,
    vim.vm.device.VirtualAHCIController: 30,
    vim.vm.device.VirtualNVMEController: 15,
    vim.vm.device.VirtualSCSIController: 16,
}
_SCSI_RESERVED_UNIT = 7


class KeyAllocator:
    """Hands out negative temporary device keys."""

    def __init__(self, start: int = -100):
        self._next = start

    def __call__(self) -> int:
        key = self._next
        self._next -= 1
        return key


def of_type(devices: Iterable[Any], *types: Any) -> List[Any]:
    return [d for d in devices or [] if isinstance(d, types)]


def add_spec(device: Any, create_file: bool = False) -> Any:
    spec = DeviceSpec(operation=DeviceSpec.Operation.add, device=device)
    if create_file:
        spec.fileOperation = DeviceSpec.FileOperation.create
    return spec


def edit_spec(device: Any) -> Any:
    return DeviceSpec(operation=DeviceSpec.Operation.edit, device=device)


def remove_spec(device: Any, destroy_file: bool = False) -> Any:
    spec = DeviceSpec(operation=DeviceSpec.Operation.remove, device=device)
    if destroy_file:
        spec.fileOperation = DeviceSpec.FileOperation.destroy
    return spec


def next_unit_number(devices: Sequence[Any], controller: Any) -> int:
    """Lowest free unit number on ``controller`` given the known devices."""
    used = {d.unitNumber for d in devices if getattr(d, "controllerKey", None) == controller.key}
    limit = 16
    for ctrl_type, max_units in _MAX_UNITS.items():
        if isinstance(controller, ctrl_type):
            limit = max_units
            break
    for unit in range(limit):
        if isinstance(controller, vim.vm.device.VirtualSCSIController) and unit == _SCSI_RESERVED_UNIT:
            continue
        if unit not in used:
            return unit
    raise DriverError(f"controller '{controller.deviceInfo.label if controller.deviceInfo else controller.key}' has no free slots")


def new_controller(controller_type: str, devices: Sequence[Any], key: int) -> Any:
    """Create a disk controller on the next free bus of its family."""
    if controller_type == "nvme":
        cls, family = vim.vm.device.VirtualNVMEController, vim.vm.device.VirtualNVMEController
    elif controller_type == "sata":
        cls, family = vim.vm.device.VirtualAHCIController, vim.vm.device.VirtualAHCIController
    elif controller_type in SCSI_CONTROLLERS:
        cls, family = SCSI_CONTROLLERS[controller_type], vim.vm.device.VirtualSCSIController
    else:
        raise DriverError(f"unknown disk controller type '{controller_type}'")

    buses = {c.busNumber for c in of_type(devices, family)}
    bus = next(b for b in range(len(buses) + 1) if b not in buses)
    controller = cls(key=key, busNumber=bus)
    if family is vim.vm.device.VirtualSCSIController:
        controller.sharedBus = vim.vm.device.VirtualSCSIController.Sharing.noSharing
    return controller


def new_disk(
    key: int,
    controller: Any,
    unit_number: int,
    size_mb: int,
    thin_provisioned: bool = False,
    eagerly_scrub: bool = False,
    datastore: Optional[Any] = None,
) -> Any:
    backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
        diskMode="persistent",
        thinProvisioned=thin_provisioned,
        eagerlyScrub=eagerly_scrub,
        fileName="",
    )
    if datastore is not None:
        backing.datastore = datastore.ref
        backing.fileName = f"[{datastore.name}]"
    return vim.vm.device.VirtualDisk(
        key=key,
        controllerKey=controller.key,
        unitNumber=unit_number,
        capacityInKB=size_mb * 1024,
        backing=backing,
    )


def storage_device_specs(
    storage: Any,
    existing: Sequence[Any] = (),
    disk_datastores: Optional[Sequence[Any]] = None,
    keys: Optional[KeyAllocator] = None,
) -> List[Any]:
    """Controllers and disks for a StorageConfig.

    ``disk_datastores`` optionally places disk ``i`` on datastore ``i``.
    """
    keys = keys or KeyAllocator()
    devices = list(existing)
    specs = []
    controllers = []
    for controller_type in storage.disk_controller_type or [""]:
        controller = new_controller(controller_type, devices, keys())
        devices.append(controller)
        controllers.append(controller)
        specs.append(add_spec(controller))

    for i, disk_cfg in enumerate(storage.disks):
        try:
            controller = controllers[disk_cfg.controller_index]
        except IndexError:
            raise DriverError(f"disk {i} references missing controller {disk_cfg.controller_index}")
        datastore = disk_datastores[i] if disk_datastores and i < len(disk_datastores) else None
        disk = new_disk(
            keys(),
            controller,
            next_unit_number(devices, controller),
            disk_cfg.disk_size,
            disk_cfg.thin_provisioned,
            disk_cfg.eagerly_scrub,
            datastore,
        )
        devices.append(disk)
        specs.append(add_spec(disk, create_file=True))
    return specs


def network_backing(network: Any) -> Any:
    """Ethernet card backing for a standard, distributed or opaque network."""
    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        port = vim.dvs.PortConnection(
            portgroupKey=network.key,
            switchUuid=network.config.distributedVirtualSwitch.uuid,
        )
        return vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(port=port)
    if isinstance(network, vim.OpaqueNetwork):
        return vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo(
            opaqueNetworkId=network.summary.opaqueNetworkId,
            opaqueNetworkType=network.summary.opaqueNetworkType,
        )
    return vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(deviceName=network.name, network=network)


def new_network_card(card_type: str, network: Any, key: int, mac_address: str = "", passthrough: Optional[bool] = None) -> Any:
    try:
        cls = NETWORK_CARDS[card_type]
    except KeyError:
        raise DriverError(f"unknown network card type '{card_type}'")
    card = cls(key=key, backing=network_backing(network))
    card.connectable = vim.vm.device.VirtualDevice.ConnectInfo(startConnected=True, allowGuestControl=True, connected=True)
    if mac_address:
        card.addressType = "manual"
        card.macAddress = mac_address
    else:
        card.addressType = "generated"
    if passthrough is not None:
        card.uptCompatibilityEnabled = passthrough
    return card


def usb_controllers(kinds: Iterable[str], keys: KeyAllocator) -> List[Any]:
    controllers = []
    for kind in kinds:
        if kind in ("usb", "true", "1"):
            controllers.append(vim.vm.device.VirtualUSBController(key=keys(), ehciEnabled=True))
        elif kind == "xhci":
            controllers.append(vim.vm.device.VirtualUSBXHCIController(key=keys()))
    return controllers


def connect_info(connected: bool = False, start_connected: bool = True) -> Any:
    return vim.vm.device.VirtualDevice.ConnectInfo(
        startConnected=start_connected,
        allowGuestControl=True,
        connected=connected,
    )


def new_cdrom(controller: Any, devices: Sequence[Any], key: int, iso_path: str = "") -> Any:
    cdrom = vim.vm.device.VirtualCdrom(
        key=key,
        controllerKey=controller.key,
        unitNumber=next_unit_number(devices, controller),
    )
    set_cdrom_media(cdrom, iso_path)
    return cdrom


def set_cdrom_media(cdrom: Any, iso_path: str = "") -> None:
    """Point a CD-ROM at an ISO, or leave it empty when no path is given."""
    if iso_path:
        cdrom.backing = vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName=iso_path)
        cdrom.connectable = connect_info(start_connected=True)
    else:
        cdrom.backing = vim.vm.device.VirtualCdrom.RemotePassthroughBackingInfo(deviceName="", exclusive=False)
        cdrom.connectable = vim.vm.device.VirtualDevice.ConnectInfo()


def free_controller(devices: Sequence[Any], cdrom_type: str) -> Any:
    """An IDE or SATA controller with a free slot for a CD-ROM."""
    family = vim.vm.device.VirtualAHCIController if cdrom_type == "sata" else vim.vm.device.VirtualIDEController
    for controller in of_type(devices, family):
        try:
            next_unit_number(devices, controller)
        except DriverError:
            continue
        return controller
    raise DriverError(f"no free {cdrom_type.upper()} controller found for the CD-ROM")


def new_floppy(key: int, image_path: str = "") -> Any:
    """Floppy drive holding ``image_path``, or an empty drive."""
    if image_path:
        backing = vim.vm.device.VirtualFloppy.ImageBackingInfo(fileName=image_path)
    else:
        backing = vim.vm.device.VirtualFloppy.RemoteDeviceBackingInfo(deviceName="")
    return vim.vm.device.VirtualFloppy(key=key, backing=backing, connectable=connect_info(start_connected=True))


def new_vgpu(key: int, profile: str) -> Any:
    backing = vim.vm.device.VirtualPCIPassthrough.VmiopBackingInfo(vgpu=profile)
    return vim.vm.device.VirtualPCIPassthrough(key=key, backing=backing)


def new_precision_clock(key: int, protocol: str) -> Any:
    backing = vim.vm.device.VirtualPrecisionClock.SystemClockBackingInfo(protocol=protocol)
    return vim.vm.device.VirtualPrecisionClock(key=key, backing=backing)


def device_label(device: Any) -> str:
    info = getattr(device, "deviceInfo", None)
    if info is not None and info.label:
        return info.label
    return f"{type(device).__name__}-{device.key}"

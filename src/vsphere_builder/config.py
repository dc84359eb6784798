"""
Build configuration.

A build is described by a YAML file whose top-level sections map onto the
dataclasses below. Connection settings fall back to environment variables
(optionally loaded from a ``.env`` file) so that credentials can stay out of
the build file.
"""

import ipaddress
import os
import re
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from vsphere_builder.errors import ConfigError

DEFAULT_REMOTE_CACHE_PATH = "vsphere_builder_cache"
DEFAULT_LOCAL_CACHE_DIR = "vsphere_builder_cache"
DEFAULT_SNAPSHOT_NAME = "Created by vsphere-builder"
DEFAULT_FLOPPY_LABEL = "packer"

FIRMWARE_TYPES = ("", "bios", "efi", "efi-secure")
PRECISION_CLOCK_TYPES = ("", "none", "ntp", "ptp")
DISK_CONTROLLER_TYPES = ("", "scsi", "lsilogic", "lsilogic-sas", "pvscsi", "nvme", "sata")
CDROM_TYPES = ("ide", "sata")
COMMUNICATOR_TYPES = ("ssh", "none")
EXPORT_FORMATS = ("ovf", "ova")
EXPORT_MANIFESTS = ("none", "sha1", "sha256", "sha512")
SOURCES = ("iso", "clone")

Duration = Union[int, float, str]

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Duration) -> float:
    """Convert ``30``, ``"30"``, ``"45s"``, ``"5m"`` or ``"1h30m"`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


def _duration(value: Duration, name: str, errors: List[str]) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        errors.append(f"'{name}': {e}")
        return 0.0


@dataclass
class ConnectConfig:
    """vCenter endpoint and credentials."""

    server: str = ""
    username: str = ""
    password: str = ""
    insecure: bool = False
    datacenter: str = ""

    @classmethod
    def from_environment(cls) -> "ConnectConfig":
        """Load connection defaults from environment variables."""
        load_dotenv()
        return cls(
            server=os.getenv("VSPHERE_SERVER", ""),
            username=os.getenv("VSPHERE_USERNAME", ""),
            password=os.getenv("VSPHERE_PASSWORD", ""),
            insecure=os.getenv("VSPHERE_INSECURE", "false").lower() == "true",
            datacenter=os.getenv("VSPHERE_DATACENTER", ""),
        )

    def prepare(self) -> List[str]:
        errors = []
        if not self.server:
            errors.append("'vcenter.server' is required")
        if not self.username:
            errors.append("'vcenter.username' is required")
        if not self.password:
            errors.append("'vcenter.password' is required")
        return errors


@dataclass
class LocationConfig:
    """Where the VM is created in the inventory."""

    vm_name: str = ""
    folder: str = ""
    cluster: str = ""
    host: str = ""
    resource_pool: str = ""
    datastore: str = ""
    datastore_cluster: str = ""
    set_host_for_datastore_uploads: bool = False

    def prepare(self) -> List[str]:
        errors = []
        if not self.vm_name:
            errors.append("'location.vm_name' is required")
        if not self.cluster and not self.host:
            errors.append("'location.host' or 'location.cluster' is required")
        if self.datastore and self.datastore_cluster:
            errors.append("'location.datastore' and 'location.datastore_cluster' are mutually exclusive")
        self.folder = self.folder.strip("/")
        return errors


@dataclass
class HardwareConfig:
    """CPU, memory, display and firmware settings applied after creation."""

    cpus: int = 0
    cpu_cores: int = 0
    cpu_reservation: int = 0
    cpu_limit: int = 0
    cpu_hot_plug: bool = False
    ram: int = 0
    ram_reservation: int = 0
    ram_reserve_all: bool = False
    memory_hot_plug: bool = False
    video_ram: int = 0
    displays: int = 0
    vgpu_profile: str = ""
    nested_hv: bool = False
    firmware: str = ""
    force_bios_setup: bool = False
    vtpm: bool = False
    precision_clock: str = ""

    def prepare(self) -> List[str]:
        errors = []
        if self.ram_reservation > 0 and self.ram_reserve_all:
            errors.append("'hardware.ram_reservation' and 'hardware.ram_reserve_all' are mutually exclusive")
        if self.firmware not in FIRMWARE_TYPES:
            errors.append(f"'hardware.firmware' must be one of 'bios', 'efi' or 'efi-secure', got '{self.firmware}'")
        if self.vtpm and self.firmware not in ("efi", "efi-secure"):
            errors.append("'hardware.vtpm' requires 'efi' or 'efi-secure' firmware")
        if self.precision_clock not in PRECISION_CLOCK_TYPES:
            errors.append(f"'hardware.precision_clock' must be one of 'none', 'ntp' or 'ptp', got '{self.precision_clock}'")
        return errors

    @property
    def is_set(self) -> bool:
        return self != HardwareConfig()


@dataclass
class FlagConfig:
    """Virtualization based security flags."""

    vbs_enabled: bool = False
    vvtd_enabled: bool = False

    def prepare(self, hardware: HardwareConfig) -> List[str]:
        errors = []
        if self.vbs_enabled:
            if not self.vvtd_enabled:
                errors.append("'flags.vvtd_enabled' must be true when 'flags.vbs_enabled' is set")
            if not hardware.nested_hv:
                errors.append("'hardware.nested_hv' must be true when 'flags.vbs_enabled' is set")
            if hardware.firmware != "efi-secure":
                errors.append("'hardware.firmware' must be 'efi-secure' when 'flags.vbs_enabled' is set")
        return errors


@dataclass
class ConfigParamsConfig:
    """Advanced VMX parameters and VMware Tools settings."""

    configuration_parameters: Dict[str, str] = field(default_factory=dict)
    tools_sync_time: bool = False
    tools_upgrade_policy: bool = False


@dataclass
class DiskConfig:
    """A virtual disk; ``disk_size`` is in MB."""

    disk_size: int = 0
    thin_provisioned: bool = False
    eagerly_scrub: bool = False
    controller_index: int = 0


@dataclass
class StorageConfig:
    disk_controller_type: List[str] = field(default_factory=list)
    disks: List[DiskConfig] = field(default_factory=list)

    def prepare(self) -> List[str]:
        errors = []
        if not self.disk_controller_type:
            self.disk_controller_type = [""]
        for i, kind in enumerate(self.disk_controller_type):
            if kind not in DISK_CONTROLLER_TYPES:
                errors.append(f"storage.disk_controller_type[{i}] '{kind}' is not a supported controller")
        for i, disk in enumerate(self.disks):
            if disk.disk_size <= 0:
                errors.append(f"storage.disks[{i}].'disk_size' is required")
            if disk.controller_index >= len(self.disk_controller_type) or disk.controller_index < 0:
                errors.append(f"storage.disks[{i}].'controller_index' references an unknown disk controller")
            if disk.thin_provisioned and disk.eagerly_scrub:
                errors.append(f"storage.disks[{i}]: 'thin_provisioned' and 'eagerly_scrub' cannot both be true")
        return errors


@dataclass
class NicConfig:
    network: str = ""
    network_card: str = ""
    mac_address: str = ""
    passthrough: Optional[bool] = None


@dataclass
class CreateConfig:
    """Settings for creating a VM from scratch (``source: iso``)."""

    vm_version: int = 0
    guest_os_type: str = ""
    network_adapters: List[NicConfig] = field(default_factory=list)
    usb_controller: List[str] = field(default_factory=list)
    notes: str = ""
    destroy: bool = False

    def prepare(self) -> List[str]:
        errors = []
        if not self.guest_os_type:
            self.guest_os_type = "otherGuest"
        for i, nic in enumerate(self.network_adapters):
            if not nic.network_card:
                errors.append(f"create.network_adapters[{i}].'network_card' is required")
        usb_count = 0
        xhci_count = 0
        for i, kind in enumerate(self.usb_controller):
            if kind in ("usb", "1", "true"):
                usb_count += 1
            elif kind == "xhci":
                xhci_count += 1
            elif kind not in ("false", "0"):
                errors.append(f"create.usb_controller[{i}] references an unknown usb controller")
        if usb_count > 1 or xhci_count > 1:
            errors.append("there can only be one usb controller and one xhci controller")
        return errors


@dataclass
class CloneConfig:
    """Settings for cloning an existing VM or template (``source: clone``)."""

    template: str = ""
    disk_size: int = 0
    linked_clone: bool = False
    network: str = ""
    mac_address: str = ""
    notes: str = ""
    destroy: bool = False
    vapp_properties: Dict[str, str] = field(default_factory=dict)

    def prepare(self) -> List[str]:
        errors = []
        if not self.template:
            errors.append("'clone.template' is required")
        if self.linked_clone and self.disk_size:
            errors.append("'clone.linked_clone' and 'clone.disk_size' cannot be used together")
        if self.mac_address and not self.network:
            errors.append("'clone.network' is required when 'clone.mac_address' is specified")
        return errors


@dataclass
class LinuxOptions:
    host_name: str = ""
    domain: str = ""
    hw_clock_utc: bool = True
    time_zone: str = "UTC"

    def prepare(self) -> List[str]:
        errors = []
        if not self.host_name:
            errors.append("customize.linux_options: 'host_name' is required")
        if not self.domain:
            errors.append("customize.linux_options: 'domain' is required")
        return errors


@dataclass
class WindowsOptions:
    run_once_command_list: List[str] = field(default_factory=list)
    auto_logon: bool = False
    auto_logon_count: int = 1
    admin_password: Optional[str] = None
    time_zone: int = 85
    workgroup: str = ""
    computer_name: str = ""
    full_name: str = "Administrator"
    organization_name: str = "Built by vsphere-builder"
    product_key: str = ""

    def prepare(self) -> List[str]:
        if not self.computer_name:
            return ["customize.windows_options: 'computer_name' is required"]
        return []


@dataclass
class NetworkInterfaceConfig:
    """IP settings for one NIC; no address means DHCP (IPv4) or autoconfiguration (IPv6)."""

    dns_server_list: List[str] = field(default_factory=list)
    dns_domain: str = ""
    ipv4_address: str = ""
    ipv4_netmask: int = 0
    ipv6_address: str = ""
    ipv6_netmask: int = 0


@dataclass
class CustomizeConfig:
    """Guest customization applied to a clone before first boot."""

    linux_options: Optional[LinuxOptions] = None
    windows_options: Optional[WindowsOptions] = None
    windows_sysprep_file: str = ""
    windows_sysprep_text: str = ""
    network_interface: List[NetworkInterfaceConfig] = field(default_factory=list)
    ipv4_gateway: str = ""
    ipv6_gateway: str = ""
    dns_server_list: List[str] = field(default_factory=list)
    dns_suffix_list: List[str] = field(default_factory=list)

    def prepare(self) -> List[str]:
        errors = []
        if not self.network_interface:
            errors.append("'customize.network_interface' requires at least one entry")

        chosen = [
            name
            for name, value in (
                ("linux_options", self.linux_options),
                ("windows_options", self.windows_options),
                ("windows_sysprep_file", self.windows_sysprep_file),
                ("windows_sysprep_text", self.windows_sysprep_text),
            )
            if value
        ]
        if len(chosen) > 1:
            errors.append(f"only one of 'customize.{chosen[0]}' and 'customize.{chosen[1]}' can be set")
        elif not chosen:
            errors.append(
                "one of 'customize.linux_options', 'customize.windows_options', "
                "'customize.windows_sysprep_file' or 'customize.windows_sysprep_text' is required"
            )

        if self.linux_options is not None:
            errors += self.linux_options.prepare()
        if self.windows_options is not None:
            errors += self.windows_options.prepare()

        for i, nic in enumerate(self.network_interface):
            name = f"customize.network_interface[{i}]"
            if nic.ipv4_address:
                try:
                    ipaddress.IPv4Interface(f"{nic.ipv4_address}/{nic.ipv4_netmask}")
                except ValueError:
                    errors.append(f"{name}: '{nic.ipv4_address}/{nic.ipv4_netmask}' is not a valid IPv4 address and netmask")
            if nic.ipv6_address:
                try:
                    ipaddress.IPv6Interface(f"{nic.ipv6_address}/{nic.ipv6_netmask}")
                except ValueError:
                    errors.append(f"{name}: '{nic.ipv6_address}/{nic.ipv6_netmask}' is not a valid IPv6 address and netmask")
        return errors


@dataclass
class IsoConfig:
    """Boot media download and the local and remote caches."""

    iso_urls: List[str] = field(default_factory=list)
    iso_checksum: str = "none"
    local_cache_dir: str = DEFAULT_LOCAL_CACHE_DIR
    local_cache_overwrite: bool = False
    remote_cache_datastore: str = ""
    remote_cache_path: str = DEFAULT_REMOTE_CACHE_PATH
    remote_cache_overwrite: bool = False
    remote_cache_cleanup: bool = False

    def prepare(self) -> List[str]:
        errors = []
        if self.iso_urls and not self.iso_checksum:
            errors.append("'iso.iso_checksum' is required when 'iso.iso_urls' is set; use 'none' to skip")
        if not self.remote_cache_path:
            self.remote_cache_path = DEFAULT_REMOTE_CACHE_PATH
        self.remote_cache_path = self.remote_cache_path.strip("/")
        return errors


@dataclass
class CDConfig:
    """Files packed into an ISO image and attached as an extra CD-ROM."""

    files: List[str] = field(default_factory=list)
    label: str = ""


@dataclass
class CDRomConfig:
    cdrom_type: str = "ide"
    iso_paths: List[str] = field(default_factory=list)
    remove_cdrom: bool = False
    reattach_cdroms: int = 0

    def prepare(self) -> List[str]:
        errors = []
        if self.cdrom_type not in CDROM_TYPES:
            errors.append("'cdrom.cdrom_type' must be 'ide' or 'sata'")
        if self.reattach_cdroms < 0 or self.reattach_cdroms > 4:
            errors.append("'cdrom.reattach_cdroms' should be between 1 and 4; 0 skips reattaching")
        return errors


@dataclass
class FloppyConfig:
    """A floppy image from the datastore, a local image, or one built from local files.

    ``content`` maps paths on the floppy to file contents and wins over
    ``files`` and ``dirs`` for the same path.
    """

    img_path: str = ""
    local_path: str = ""
    files: List[str] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)
    content: Dict[str, str] = field(default_factory=dict)
    label: str = DEFAULT_FLOPPY_LABEL

    @property
    def has_files(self) -> bool:
        return bool(self.files or self.dirs or self.content)

    def prepare(self) -> List[str]:
        errors = []
        if not self.label:
            self.label = DEFAULT_FLOPPY_LABEL
        if len(self.label) > 11:
            errors.append("'floppy.label' must be at most 11 characters")
        if self.local_path and self.has_files:
            errors.append("'floppy.local_path' cannot be used with 'floppy.files', 'floppy.dirs' or 'floppy.content'")
        return errors


@dataclass
class BootConfig:
    boot_order: str = ""
    boot_command: List[str] = field(default_factory=list)
    boot_wait: Duration = "10s"
    boot_key_interval: Duration = "100ms"

    def prepare(self) -> List[str]:
        errors = []
        self.boot_wait = _duration(self.boot_wait, "boot.boot_wait", errors)
        self.boot_key_interval = _duration(self.boot_key_interval, "boot.boot_key_interval", errors)
        return errors


@dataclass
class WaitIPConfig:
    ip_wait_timeout: Duration = "30m"
    ip_settle_timeout: Duration = "5s"
    ip_wait_address: str = ""

    def prepare(self) -> List[str]:
        errors = []
        self.ip_wait_timeout = _duration(self.ip_wait_timeout, "wait_ip.ip_wait_timeout", errors)
        self.ip_settle_timeout = _duration(self.ip_settle_timeout, "wait_ip.ip_settle_timeout", errors)
        if self.ip_wait_address:
            try:
                ipaddress.ip_network(self.ip_wait_address, strict=False)
            except ValueError:
                errors.append(f"'wait_ip.ip_wait_address' is not a valid CIDR: '{self.ip_wait_address}'")
        return errors


@dataclass
class CommunicatorConfig:
    type: str = "ssh"
    ssh_host: str = ""
    ssh_port: int = 22
    ssh_username: str = ""
    ssh_password: str = ""
    ssh_private_key_file: str = ""
    ssh_timeout: Duration = "5m"

    def prepare(self) -> List[str]:
        errors = []
        if self.type not in COMMUNICATOR_TYPES:
            errors.append("'communicator.type' must be 'ssh' or 'none'")
        if self.type == "ssh" and not self.ssh_username:
            errors.append("'communicator.ssh_username' is required for the ssh communicator")
        if self.ssh_private_key_file:
            self.ssh_private_key_file = os.path.expanduser(self.ssh_private_key_file)
        self.ssh_timeout = _duration(self.ssh_timeout, "communicator.ssh_timeout", errors)
        return errors


@dataclass
class ProvisionConfig:
    inline: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass
class ShutdownConfig:
    shutdown_command: str = ""
    shutdown_timeout: Duration = "5m"
    shutdown_poll_interval: Duration = "1s"
    disable_shutdown: bool = False

    def prepare(self) -> List[str]:
        errors = []
        self.shutdown_timeout = _duration(self.shutdown_timeout, "shutdown.shutdown_timeout", errors)
        self.shutdown_poll_interval = _duration(self.shutdown_poll_interval, "shutdown.shutdown_poll_interval", errors)
        if self.shutdown_poll_interval <= 0:
            errors.append("'shutdown.shutdown_poll_interval' must be greater than zero")
        elif self.shutdown_poll_interval > self.shutdown_timeout:
            errors.append("'shutdown.shutdown_poll_interval' must not exceed 'shutdown.shutdown_timeout'")
        return errors


@dataclass
class TemplateConfig:
    """What happens to the VM once the guest is shut down."""

    create_snapshot: bool = False
    snapshot_name: str = ""
    convert_to_template: bool = False
    remove_network_adapter: bool = False

    def prepare(self) -> List[str]:
        if not self.snapshot_name:
            self.snapshot_name = DEFAULT_SNAPSHOT_NAME
        return []


@dataclass
class ContentLibraryConfig:
    library: str = ""
    name: str = ""
    description: str = ""
    cluster: str = ""
    folder: str = ""
    host: str = ""
    resource_pool: str = ""
    datastore: str = ""
    destroy: bool = False
    ovf: bool = False
    ovf_flags: List[str] = field(default_factory=list)
    skip_import: bool = False
    publish_timeout: Duration = "30m"

    def prepare(self, location: LocationConfig) -> List[str]:
        errors = []
        if not self.library:
            errors.append("'content_library.library' is required")
        if self.ovf:
            if not self.name:
                self.name = location.vm_name
        else:
            if self.name and self.name == location.vm_name:
                errors.append("the content library destination name must be different from the VM name")
            if not self.name:
                self.name = f"{location.vm_name}-{int(time.time())}"
            self.cluster = self.cluster or location.cluster
            self.host = self.host or location.host
            self.resource_pool = self.resource_pool or location.resource_pool
        if not self.description:
            self.description = f"vsphere-builder imported {location.vm_name} VM template"
        self.publish_timeout = _duration(self.publish_timeout, "content_library.publish_timeout", errors)
        return errors


@dataclass
class ExportConfig:
    name: str = ""
    force: bool = False
    image_files: bool = False
    manifest: str = "sha256"
    output_directory: str = ""
    options: List[str] = field(default_factory=list)
    format: str = "ovf"

    def prepare(self, default_name: str) -> List[str]:
        errors = []
        if not self.name:
            self.name = default_name
        if not self.output_directory:
            self.output_directory = f"output-{default_name}"
        if self.format not in EXPORT_FORMATS:
            errors.append("'export.format' must be 'ovf' or 'ova'")
        if self.manifest not in EXPORT_MANIFESTS:
            errors.append("'export.manifest' must be one of 'none', 'sha1', 'sha256' or 'sha512'")
        return errors


_SECTIONS = {
    "location": LocationConfig,
    "hardware": HardwareConfig,
    "flags": FlagConfig,
    "config_params": ConfigParamsConfig,
    "create": CreateConfig,
    "clone": CloneConfig,
    "iso": IsoConfig,
    "cd": CDConfig,
    "cdrom": CDRomConfig,
    "floppy": FloppyConfig,
    "boot": BootConfig,
    "wait_ip": WaitIPConfig,
    "communicator": CommunicatorConfig,
    "provision": ProvisionConfig,
    "shutdown": ShutdownConfig,
    "template": TemplateConfig,
}


def _build(cls, data: Any, name: str, errors: List[str]):
    """Instantiate a section dataclass, reporting unknown keys instead of failing."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        errors.append(f"'{name}' must be a mapping")
        return cls()
    known = {f.name for f in fields(cls)}
    for key in sorted(set(data) - known):
        errors.append(f"{name}: unknown key '{key}'")
    return cls(**{k: v for k, v in data.items() if k in known})


def _build_list(cls, items: Any, name: str, errors: List[str]) -> list:
    if items is None:
        return []
    if not isinstance(items, list):
        errors.append(f"'{name}' must be a list")
        return []
    return [_build(cls, item, f"{name}[{i}]", errors) for i, item in enumerate(items)]


def _build_customize(data: Any, errors: List[str]) -> CustomizeConfig:
    customize = _build(CustomizeConfig, data, "customize", errors)
    if customize.linux_options is not None:
        customize.linux_options = _build(LinuxOptions, customize.linux_options, "customize.linux_options", errors)
    if customize.windows_options is not None:
        customize.windows_options = _build(WindowsOptions, customize.windows_options, "customize.windows_options", errors)
    customize.network_interface = _build_list(
        NetworkInterfaceConfig, customize.network_interface or None, "customize.network_interface", errors
    )
    return customize


@dataclass
class BuildConfig:
    """Complete build description."""

    source: str = "iso"
    build_name: str = ""
    force: bool = False
    vcenter: ConnectConfig = field(default_factory=ConnectConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    hardware: HardwareConfig = field(default_factory=HardwareConfig)
    flags: FlagConfig = field(default_factory=FlagConfig)
    config_params: ConfigParamsConfig = field(default_factory=ConfigParamsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    create: CreateConfig = field(default_factory=CreateConfig)
    clone: CloneConfig = field(default_factory=CloneConfig)
    iso: IsoConfig = field(default_factory=IsoConfig)
    cd: CDConfig = field(default_factory=CDConfig)
    cdrom: CDRomConfig = field(default_factory=CDRomConfig)
    floppy: FloppyConfig = field(default_factory=FloppyConfig)
    boot: BootConfig = field(default_factory=BootConfig)
    wait_ip: WaitIPConfig = field(default_factory=WaitIPConfig)
    communicator: CommunicatorConfig = field(default_factory=CommunicatorConfig)
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    customize: Optional[CustomizeConfig] = None
    content_library: Optional[ContentLibraryConfig] = None
    export: Optional[ExportConfig] = None

    # Problems found while reading the file, reported by prepare()
    load_errors: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        """Build a config from parsed YAML, merging connection env defaults."""
        errors: List[str] = []
        data = dict(data or {})

        env_vcenter = asdict(ConnectConfig.from_environment())
        file_vcenter = data.pop("vcenter", None) or {}
        if not isinstance(file_vcenter, dict):
            errors.append("'vcenter' must be a mapping")
            file_vcenter = {}
        vcenter = _build(ConnectConfig, {**env_vcenter, **file_vcenter}, "vcenter", errors)

        kwargs: Dict[str, Any] = {"vcenter": vcenter}
        for name, section_cls in _SECTIONS.items():
            kwargs[name] = _build(section_cls, data.pop(name, None), name, errors)

        storage_data = data.pop("storage", None) or {}
        storage = _build(StorageConfig, storage_data, "storage", errors)
        storage.disks = _build_list(DiskConfig, storage_data.get("disks") if isinstance(storage_data, dict) else None, "storage.disks", errors)
        kwargs["storage"] = storage

        create = kwargs["create"]
        create.network_adapters = _build_list(NicConfig, create.network_adapters or None, "create.network_adapters", errors)

        if "customize" in data:
            kwargs["customize"] = _build_customize(data.pop("customize"), errors)
        if "content_library" in data:
            kwargs["content_library"] = _build(ContentLibraryConfig, data.pop("content_library"), "content_library", errors)
        if "export" in data:
            kwargs["export"] = _build(ExportConfig, data.pop("export"), "export", errors)

        for key in ("source", "build_name", "force"):
            if key in data:
                kwargs[key] = data.pop(key)
        for key in sorted(data):
            errors.append(f"unknown top-level key '{key}'")

        return cls(load_errors=errors, **kwargs)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "BuildConfig":
        """Load a build configuration from a YAML file."""
        with open(config_path) as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ConfigError([f"{config_path}: top level must be a mapping"])
        return cls.from_dict(data or {})

    @property
    def name(self) -> str:
        return self.build_name or self.location.vm_name

    @property
    def uses_communicator(self) -> bool:
        return self.communicator.type != "none"

    def prepare(self) -> List[str]:
        """Fill defaults and return every validation problem found."""
        errors = list(self.load_errors)
        if self.source not in SOURCES:
            errors.append(f"'source' must be 'iso' or 'clone', got '{self.source}'")

        errors += self.vcenter.prepare()
        errors += self.location.prepare()
        errors += self.hardware.prepare()
        errors += self.flags.prepare(self.hardware)
        errors += self.storage.prepare()
        errors += self.iso.prepare()
        errors += self.cdrom.prepare()
        errors += self.floppy.prepare()
        errors += self.boot.prepare()
        errors += self.wait_ip.prepare()
        errors += self.communicator.prepare()
        errors += self.shutdown.prepare()
        errors += self.template.prepare()

        if self.source == "iso":
            errors += self.create.prepare()
            if not self.storage.disks:
                errors.append("no storage devices have been defined")
        elif self.source == "clone":
            errors += self.clone.prepare()

        if self.customize is not None:
            if self.source != "clone":
                errors.append("'customize' can only be used with source 'clone'")
            errors += self.customize.prepare()

        if self.content_library is not None:
            errors += self.content_library.prepare(self.location)
            if self.template.convert_to_template and not self.content_library.ovf:
                errors.append("'template.convert_to_template' cannot be used with a content library VM template import")
        if self.export is not None:
            errors += self.export.prepare(self.name)
        return errors

    def validate(self) -> None:
        """Prepare the config and raise ConfigError listing every problem."""
        errors = self.prepare()
        if errors:
            raise ConfigError(errors)

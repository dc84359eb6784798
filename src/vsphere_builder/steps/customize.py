"""Guest customization of a cloned VM before its first boot."""

import ipaddress
import logging
from typing import Any, List, Tuple

from pyVmomi import vim

from vsphere_builder.config import CustomizeConfig, LinuxOptions, NetworkInterfaceConfig, WindowsOptions
from vsphere_builder.errors import BuildError
from vsphere_builder.pipeline import STATE_VM, BuildContext, StateBag, Step, StepAction

logger = logging.getLogger(__name__)


def gateway_reachable(address: str, prefix: int, gateway: str) -> bool:
    """True when ``gateway`` lies in the network of ``address``/``prefix``."""
    try:
        return ipaddress.ip_address(gateway) in ipaddress.ip_interface(f"{address}/{prefix}").network
    except ValueError:
        return False


def linux_prep(options: LinuxOptions) -> Any:
    return vim.vm.customization.LinuxPrep(
        hostName=vim.vm.customization.FixedName(name=options.host_name),
        domain=options.domain,
        timeZone=options.time_zone,
        hwClockUTC=options.hw_clock_utc,
    )


def sysprep(options: WindowsOptions) -> Any:
    password = None
    if options.admin_password is not None:
        password = vim.vm.customization.Password(value=options.admin_password, plainText=True)
    return vim.vm.customization.Sysprep(
        guiUnattended=vim.vm.customization.GuiUnattended(
            autoLogon=options.auto_logon,
            autoLogonCount=options.auto_logon_count,
            password=password,
            timeZone=options.time_zone,
        ),
        userData=vim.vm.customization.UserData(
            fullName=options.full_name,
            orgName=options.organization_name,
            computerName=vim.vm.customization.FixedName(name=options.computer_name),
            productId=options.product_key,
        ),
        guiRunOnce=vim.vm.customization.GuiRunOnce(commandList=options.run_once_command_list or [""]),
        identification=vim.vm.customization.Identification(joinWorkgroup=options.workgroup),
    )


class StepCustomize(Step):
    """Apply hostname, identity and per-NIC IP settings through VMware guest customization."""

    name = "customize"

    def __init__(self, config: CustomizeConfig):
        self.config = config

    def identity(self) -> Any:
        c = self.config
        if c.linux_options is not None:
            return linux_prep(c.linux_options)
        if c.windows_options is not None:
            return sysprep(c.windows_options)
        if c.windows_sysprep_file:
            try:
                with open(c.windows_sysprep_file) as f:
                    return vim.vm.customization.SysprepText(value=f.read())
            except OSError as e:
                raise BuildError(f"error reading {c.windows_sysprep_file}: {e}") from e
        if c.windows_sysprep_text:
            return vim.vm.customization.SysprepText(value=c.windows_sysprep_text)
        raise BuildError("no customization identity found")

    def ip_settings(self, nic: NetworkInterfaceConfig, want_v4_gw: bool, want_v6_gw: bool) -> Tuple[Any, bool, bool]:
        """Settings for one NIC, and whether each gateway was placed on it."""
        settings = vim.vm.customization.IPSettings(
            dnsServerList=nic.dns_server_list,
            dnsDomain=nic.dns_domain or None,
        )
        v4_gw = v6_gw = False

        if nic.ipv4_address:
            settings.ip = vim.vm.customization.FixedIp(ipAddress=nic.ipv4_address)
            settings.subnetMask = str(ipaddress.IPv4Network(f"0.0.0.0/{nic.ipv4_netmask}").netmask)
            gw = self.config.ipv4_gateway
            if want_v4_gw and gw and gateway_reachable(nic.ipv4_address, nic.ipv4_netmask, gw):
                settings.gateway = [gw]
                v4_gw = True
        else:
            settings.ip = vim.vm.customization.DhcpIpGenerator()

        if nic.ipv6_address:
            spec = vim.vm.customization.IPSettings.IpV6AddressSpec(
                ip=[vim.vm.customization.FixedIpV6(ipAddress=nic.ipv6_address, subnetMask=nic.ipv6_netmask)]
            )
            gw = self.config.ipv6_gateway
            if want_v6_gw and gw and gateway_reachable(nic.ipv6_address, nic.ipv6_netmask, gw):
                spec.gateway = [gw]
                v6_gw = True
            settings.ipV6Spec = spec
        return settings, v4_gw, v6_gw

    def nic_setting_map(self) -> List[Any]:
        # Each gateway goes on the first NIC whose network contains it
        mappings = []
        v4_placed = v6_placed = False
        for nic in self.config.network_interface:
            settings, v4_gw, v6_gw = self.ip_settings(nic, not v4_placed, not v6_placed)
            v4_placed = v4_placed or v4_gw
            v6_placed = v6_placed or v6_gw
            mappings.append(vim.vm.customization.AdapterMapping(adapter=settings))
        return mappings

    def spec(self) -> Any:
        return vim.vm.customization.Specification(
            identity=self.identity(),
            nicSettingMap=self.nic_setting_map(),
            globalIPSettings=vim.vm.customization.GlobalIPSettings(
                dnsServerList=self.config.dns_server_list,
                dnsSuffixList=self.config.dns_suffix_list,
            ),
        )

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        spec = self.spec()
        logger.info("Customizing VM...")
        vm.customize(spec)
        return StepAction.CONTINUE

"""Tests for guest customization of cloned VMs."""

import pytest
from pyVmomi import vim

from vsphere_builder.config import CustomizeConfig, LinuxOptions, NetworkInterfaceConfig, WindowsOptions
from vsphere_builder.errors import BuildError
from vsphere_builder.steps.customize import StepCustomize, gateway_reachable


def nic(**kwargs):
    return NetworkInterfaceConfig(**kwargs)


def linux(**kwargs):
    return CustomizeConfig(linux_options=LinuxOptions(host_name="web01", domain="example.com"), **kwargs)


@pytest.mark.parametrize(
    "address, prefix, gateway, expected",
    [
        ("10.0.0.5", 24, "10.0.0.1", True),
        ("10.0.0.5", 24, "10.0.1.1", False),
        ("2001:db8::5", 64, "2001:db8::1", True),
        ("10.0.0.5", 24, "not-an-ip", False),
    ],
)
def test_gateway_reachable(address, prefix, gateway, expected):
    assert gateway_reachable(address, prefix, gateway) is expected


def test_linux_identity():
    identity = StepCustomize(linux(network_interface=[nic()])).identity()

    assert isinstance(identity, vim.vm.customization.LinuxPrep)
    assert identity.hostName.name == "web01"
    assert identity.domain == "example.com"
    assert identity.timeZone == "UTC"
    assert identity.hwClockUTC is True


def test_windows_identity():
    options = WindowsOptions(computer_name="win01", admin_password="s3cret", workgroup="LAB", auto_logon=True)

    identity = StepCustomize(CustomizeConfig(windows_options=options)).identity()

    assert isinstance(identity, vim.vm.customization.Sysprep)
    assert identity.userData.computerName.name == "win01"
    assert identity.userData.orgName == "Built by vsphere-builder"
    assert identity.guiUnattended.password.value == "s3cret"
    assert identity.guiUnattended.password.plainText is True
    assert identity.guiUnattended.timeZone == 85
    assert list(identity.guiRunOnce.commandList) == [""]
    assert identity.identification.joinWorkgroup == "LAB"


def test_sysprep_file_identity(tmp_path):
    answer = tmp_path / "unattend.xml"
    answer.write_text("<unattend/>")

    identity = StepCustomize(CustomizeConfig(windows_sysprep_file=str(answer))).identity()

    assert isinstance(identity, vim.vm.customization.SysprepText)
    assert identity.value == "<unattend/>"

    with pytest.raises(BuildError, match="error reading"):
        StepCustomize(CustomizeConfig(windows_sysprep_file=str(tmp_path / "missing.xml"))).identity()


def test_nic_settings_static_and_dhcp():
    config = linux(
        network_interface=[
            nic(ipv4_address="192.168.1.10", ipv4_netmask=24, dns_server_list=["192.168.1.2"], dns_domain="lab"),
            nic(),
        ],
        ipv4_gateway="192.168.1.1",
    )

    static, dhcp = (m.adapter for m in StepCustomize(config).nic_setting_map())

    assert static.ip.ipAddress == "192.168.1.10"
    assert static.subnetMask == "255.255.255.0"
    assert list(static.gateway) == ["192.168.1.1"]
    assert list(static.dnsServerList) == ["192.168.1.2"]
    assert static.dnsDomain == "lab"
    assert isinstance(dhcp.ip, vim.vm.customization.DhcpIpGenerator)
    assert not dhcp.gateway


def test_gateway_goes_on_first_matching_nic():
    """A NIC outside the gateway's network is skipped; later matches do not get a second gateway."""
    config = linux(
        network_interface=[
            nic(ipv4_address="172.16.0.10", ipv4_netmask=16),
            nic(ipv4_address="10.0.0.10", ipv4_netmask=24, ipv6_address="2001:db8::10", ipv6_netmask=64),
            nic(ipv4_address="10.0.0.11", ipv4_netmask=24, ipv6_address="2001:db8::11", ipv6_netmask=64),
        ],
        ipv4_gateway="10.0.0.1",
        ipv6_gateway="2001:db8::1",
    )

    first, second, third = (m.adapter for m in StepCustomize(config).nic_setting_map())

    assert not first.gateway
    assert list(second.gateway) == ["10.0.0.1"]
    assert list(second.ipV6Spec.gateway) == ["2001:db8::1"]
    assert second.ipV6Spec.ip[0].subnetMask == 64
    assert not third.gateway
    assert not third.ipV6Spec.gateway


def test_run_applies_spec(ctx, state, mock_vm):
    config = linux(network_interface=[nic()], dns_server_list=["1.1.1.1"], dns_suffix_list=["example.com"])

    StepCustomize(config).run(ctx, state)

    spec = mock_vm.customize.call_args.args[0]
    assert isinstance(spec, vim.vm.customization.Specification)
    assert len(spec.nicSettingMap) == 1
    assert list(spec.globalIPSettings.dnsServerList) == ["1.1.1.1"]
    assert list(spec.globalIPSettings.dnsSuffixList) == ["example.com"]

"""Tests for build configuration loading and validation."""

import pytest

from vsphere_builder.config import (
    DEFAULT_REMOTE_CACHE_PATH,
    DEFAULT_SNAPSHOT_NAME,
    BuildConfig,
    ConnectConfig,
    parse_duration,
)
from vsphere_builder.errors import ConfigError


def errors_for(data):
    return BuildConfig.from_dict(data).prepare()


@pytest.mark.parametrize(
    "value, seconds",
    [
        (30, 30.0),
        ("30", 30.0),
        ("45s", 45.0),
        ("5m", 300.0),
        ("1h30m", 5400.0),
        ("100ms", 0.1),
        (1.5, 1.5),
    ],
)
def test_parse_duration(value, seconds):
    assert parse_duration(value) == pytest.approx(seconds)


@pytest.mark.parametrize("value", ["", "soon", "5x", "5m foo", True])
def test_parse_duration_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_connect_config_from_environment(mock_env):
    """Test loading vCenter settings from environment variables."""
    config = ConnectConfig.from_environment()

    assert config.server == "vcenter.example.com"
    assert config.username == "administrator@vsphere.local"
    assert config.password == "secret"
    assert config.insecure is True
    assert config.datacenter == "dc1"


def test_file_overrides_environment(mock_env, iso_build_data):
    """Values in the build file win over environment defaults."""
    config = BuildConfig.from_dict(iso_build_data)

    assert config.vcenter.server == "vcenter.example.com"
    assert config.vcenter.username == "admin"
    # not set in the file, taken from the environment
    assert config.vcenter.datacenter == "dc1"
    assert config.vcenter.insecure is True


def test_valid_iso_config(iso_config):
    assert iso_config.location.folder == "templates"
    assert iso_config.storage.disks[0].disk_size == 20480
    assert iso_config.create.network_adapters[0].network_card == "vmxnet3"
    assert iso_config.template.snapshot_name == DEFAULT_SNAPSHOT_NAME
    assert iso_config.iso.remote_cache_path == DEFAULT_REMOTE_CACHE_PATH
    assert iso_config.boot.boot_wait == 10.0
    assert iso_config.communicator.ssh_timeout == 300.0
    assert iso_config.name == "ubuntu-2404"


def test_missing_credentials(no_env, iso_build_data):
    del iso_build_data["vcenter"]

    errors = errors_for(iso_build_data)

    assert "'vcenter.server' is required" in errors
    assert "'vcenter.username' is required" in errors
    assert "'vcenter.password' is required" in errors


def test_all_errors_reported_together(no_env, iso_build_data):
    """Validation collects every problem instead of stopping at the first."""
    iso_build_data["location"] = {"datastore": "a", "datastore_cluster": "b"}
    iso_build_data["hardware"] = {"firmware": "uefi"}

    with pytest.raises(ConfigError) as exc:
        BuildConfig.from_dict(iso_build_data).validate()

    errors = exc.value.errors
    assert "'location.vm_name' is required" in errors
    assert "'location.host' or 'location.cluster' is required" in errors
    assert any("mutually exclusive" in e for e in errors)
    assert any("'hardware.firmware'" in e for e in errors)


def test_unknown_keys_are_reported(no_env, iso_build_data):
    iso_build_data["location"]["vm_nmae"] = "typo"
    iso_build_data["bogus"] = 1

    errors = errors_for(iso_build_data)

    assert "location: unknown key 'vm_nmae'" in errors
    assert "unknown top-level key 'bogus'" in errors


def test_invalid_source(no_env, iso_build_data):
    iso_build_data["source"] = "ovf"
    assert "'source' must be 'iso' or 'clone', got 'ovf'" in errors_for(iso_build_data)


def test_iso_source_requires_disks(no_env, iso_build_data):
    iso_build_data["storage"] = {"disk_controller_type": ["pvscsi"]}
    assert "no storage devices have been defined" in errors_for(iso_build_data)


def test_disk_controller_index_out_of_range(no_env, iso_build_data):
    iso_build_data["storage"]["disks"].append({"disk_size": 1024, "controller_index": 1})
    errors = errors_for(iso_build_data)
    assert "storage.disks[1].'controller_index' references an unknown disk controller" in errors


def test_thin_and_eager_scrub_conflict(no_env, iso_build_data):
    iso_build_data["storage"]["disks"][0]["eagerly_scrub"] = True
    errors = errors_for(iso_build_data)
    assert any("cannot both be true" in e for e in errors)


def test_network_card_required(no_env, iso_build_data):
    iso_build_data["create"]["network_adapters"] = [{"network": "VM Network"}]
    assert "create.network_adapters[0].'network_card' is required" in errors_for(iso_build_data)


def test_usb_controllers(no_env, iso_build_data):
    iso_build_data["create"]["usb_controller"] = ["usb", "true", "xhci", "firewire"]
    errors = errors_for(iso_build_data)
    assert "create.usb_controller[3] references an unknown usb controller" in errors
    assert "there can only be one usb controller and one xhci controller" in errors


def test_default_guest_os_type(no_env, iso_build_data):
    del iso_build_data["create"]["guest_os_type"]
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()
    assert config.create.guest_os_type == "otherGuest"


def test_ram_reservation_conflict(no_env, iso_build_data):
    iso_build_data["hardware"] = {"ram_reservation": 1024, "ram_reserve_all": True}
    assert any("mutually exclusive" in e for e in errors_for(iso_build_data))


def test_vtpm_requires_efi(no_env, iso_build_data):
    iso_build_data["hardware"] = {"vtpm": True, "firmware": "bios"}
    assert "'hardware.vtpm' requires 'efi' or 'efi-secure' firmware" in errors_for(iso_build_data)


def test_vbs_requirements(no_env, iso_build_data):
    iso_build_data["flags"] = {"vbs_enabled": True}
    errors = errors_for(iso_build_data)
    assert "'flags.vvtd_enabled' must be true when 'flags.vbs_enabled' is set" in errors
    assert "'hardware.nested_hv' must be true when 'flags.vbs_enabled' is set" in errors
    assert "'hardware.firmware' must be 'efi-secure' when 'flags.vbs_enabled' is set" in errors


def test_invalid_duration(no_env, iso_build_data):
    iso_build_data["boot"] = {"boot_wait": "later"}
    assert any(e.startswith("'boot.boot_wait'") for e in errors_for(iso_build_data))


def test_shutdown_poll_interval_bounds(no_env, iso_build_data):
    iso_build_data["shutdown"] = {"shutdown_timeout": "10s", "shutdown_poll_interval": "1m"}
    errors = errors_for(iso_build_data)
    assert "'shutdown.shutdown_poll_interval' must not exceed 'shutdown.shutdown_timeout'" in errors

    iso_build_data["shutdown"] = {"shutdown_poll_interval": 0}
    assert "'shutdown.shutdown_poll_interval' must be greater than zero" in errors_for(iso_build_data)


def test_ip_wait_address_must_be_cidr(no_env, iso_build_data):
    iso_build_data["wait_ip"] = {"ip_wait_address": "10.0.0.0/33"}
    assert any("not a valid CIDR" in e for e in errors_for(iso_build_data))


def test_reattach_cdroms_range(no_env, iso_build_data):
    iso_build_data["cdrom"] = {"reattach_cdroms": 5}
    assert any("between 1 and 4" in e for e in errors_for(iso_build_data))


def test_ssh_username_required(no_env, iso_build_data):
    iso_build_data["communicator"] = {"type": "ssh"}
    assert "'communicator.ssh_username' is required for the ssh communicator" in errors_for(iso_build_data)


def test_clone_requirements(no_env, iso_build_data):
    iso_build_data["source"] = "clone"
    iso_build_data["clone"] = {"linked_clone": True, "disk_size": 40960, "mac_address": "00:50:56:00:00:01"}

    errors = errors_for(iso_build_data)

    assert "'clone.template' is required" in errors
    assert "'clone.linked_clone' and 'clone.disk_size' cannot be used together" in errors
    assert "'clone.network' is required when 'clone.mac_address' is specified" in errors
    assert "no storage devices have been defined" not in errors


def test_floppy_label_and_sources(no_env, iso_build_data):
    iso_build_data["floppy"] = {"label": "", "dirs": ["./floppy"]}
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()
    assert config.floppy.label == "packer"

    iso_build_data["floppy"] = {"label": "TWELVE_CHARS", "local_path": "a.flp", "content": {"ks.cfg": ""}}
    errors = errors_for(iso_build_data)
    assert "'floppy.label' must be at most 11 characters" in errors
    assert any("'floppy.local_path' cannot be used with" in e for e in errors)


def customize_data(iso_build_data, customize):
    iso_build_data["source"] = "clone"
    iso_build_data["clone"] = {"template": "base"}
    iso_build_data["customize"] = customize
    return iso_build_data


def test_customize_parses_nested_sections(no_env, iso_build_data):
    customize_data(
        iso_build_data,
        {
            "linux_options": {"host_name": "web01", "domain": "example.com"},
            "network_interface": [{"ipv4_address": "10.0.0.5", "ipv4_netmask": 24}],
            "ipv4_gateway": "10.0.0.1",
        },
    )
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()

    assert config.customize.linux_options.time_zone == "UTC"
    assert config.customize.linux_options.hw_clock_utc is True
    assert config.customize.network_interface[0].ipv4_netmask == 24


def test_customize_requirements(no_env, iso_build_data):
    customize_data(
        iso_build_data,
        {
            "linux_options": {"domain": "example.com"},
            "windows_sysprep_text": "<unattend/>",
            "network_interface": [{"ipv4_address": "10.0.0.5", "ipv4_netmask": 33, "bogus": 1}],
        },
    )

    errors = errors_for(iso_build_data)

    assert "customize.linux_options: 'host_name' is required" in errors
    assert "only one of 'customize.linux_options' and 'customize.windows_sysprep_text' can be set" in errors
    assert "customize.network_interface[0]: unknown key 'bogus'" in errors
    assert any("is not a valid IPv4 address and netmask" in e for e in errors)


def test_customize_needs_identity_and_nic(no_env, iso_build_data):
    customize_data(iso_build_data, {"windows_options": {}})
    errors = errors_for(iso_build_data)

    assert "'customize.network_interface' requires at least one entry" in errors
    assert "customize.windows_options: 'computer_name' is required" in errors

    customize_data(iso_build_data, {"network_interface": [{}]})
    assert any(e.startswith("one of 'customize.linux_options'") for e in errors_for(iso_build_data))


def test_customize_only_for_clones(no_env, iso_build_data):
    iso_build_data["customize"] = {"windows_sysprep_text": "<unattend/>", "network_interface": [{}]}
    assert "'customize' can only be used with source 'clone'" in errors_for(iso_build_data)


def test_content_library_template_defaults(no_env, iso_build_data):
    """A VM template import inherits placement from the location."""
    iso_build_data["content_library"] = {"library": "templates"}
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()

    cl = config.content_library
    assert cl.name.startswith("ubuntu-2404-")
    assert cl.cluster == "cluster1"
    assert cl.description == "vsphere-builder imported ubuntu-2404 VM template"
    assert cl.publish_timeout == 1800.0


def test_content_library_ovf_keeps_vm_name(no_env, iso_build_data):
    iso_build_data["content_library"] = {"library": "templates", "ovf": True}
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()
    assert config.content_library.name == "ubuntu-2404"
    assert config.content_library.cluster == ""


def test_content_library_name_must_differ_from_vm(no_env, iso_build_data):
    iso_build_data["content_library"] = {"library": "templates", "name": "ubuntu-2404"}
    errors = errors_for(iso_build_data)
    assert "the content library destination name must be different from the VM name" in errors


def test_convert_to_template_with_vm_template_import(no_env, iso_build_data):
    iso_build_data["content_library"] = {"library": "templates"}
    iso_build_data["template"] = {"convert_to_template": True}
    errors = errors_for(iso_build_data)
    assert "'template.convert_to_template' cannot be used with a content library VM template import" in errors


def test_content_library_requires_library(no_env, iso_build_data):
    iso_build_data["content_library"] = {}
    assert "'content_library.library' is required" in errors_for(iso_build_data)


def test_export_defaults(no_env, iso_build_data):
    iso_build_data["build_name"] = "golden"
    iso_build_data["export"] = {}
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()

    assert config.export.name == "golden"
    assert config.export.output_directory == "output-golden"
    assert config.export.format == "ovf"


def test_export_invalid_format(no_env, iso_build_data):
    iso_build_data["export"] = {"format": "vmx", "manifest": "md5"}
    errors = errors_for(iso_build_data)
    assert "'export.format' must be 'ovf' or 'ova'" in errors
    assert any("'export.manifest'" in e for e in errors)


def test_from_yaml(no_env, tmp_path):
    """Test loading a build file from YAML."""
    path = tmp_path / "build.yaml"
    path.write_text(
        "source: clone\n"
        "vcenter:\n"
        "  server: vc\n"
        "  username: u\n"
        "  password: p\n"
        "location:\n"
        "  vm_name: web\n"
        "  host: esxi1\n"
        "clone:\n"
        "  template: base\n"
        "communicator:\n"
        "  type: none\n"
    )

    config = BuildConfig.from_yaml(path)
    config.validate()

    assert config.source == "clone"
    assert config.clone.template == "base"
    assert config.uses_communicator is False


def test_from_yaml_rejects_non_mapping(no_env, tmp_path):
    path = tmp_path / "build.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ConfigError, match="top level must be a mapping"):
        BuildConfig.from_yaml(path)

"""Shared test fixtures for vsphere-builder tests."""

from typing import Any, Dict
from unittest import mock

import pytest

from vsphere_builder.config import BuildConfig
from vsphere_builder.pipeline import STATE_DRIVER, STATE_VM, BuildContext, StateBag


@pytest.fixture
def mock_env(monkeypatch):
    """Set vCenter connection variables the way a .env file would."""
    env_vars = {
        "VSPHERE_SERVER": "vcenter.example.com",
        "VSPHERE_USERNAME": "administrator@vsphere.local",
        "VSPHERE_PASSWORD": "secret",
        "VSPHERE_INSECURE": "true",
        "VSPHERE_DATACENTER": "dc1",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    # keep a developer's local .env out of the tests
    monkeypatch.setattr("vsphere_builder.config.load_dotenv", lambda: None)
    return env_vars


@pytest.fixture
def no_env(monkeypatch):
    """Clear every vCenter variable."""
    for key in ("VSPHERE_SERVER", "VSPHERE_USERNAME", "VSPHERE_PASSWORD", "VSPHERE_INSECURE", "VSPHERE_DATACENTER"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("vsphere_builder.config.load_dotenv", lambda: None)


@pytest.fixture
def iso_build_data() -> Dict[str, Any]:
    """Minimal valid build file for an ISO build."""
    return {
        "source": "iso",
        "vcenter": {
            "server": "vcenter.example.com",
            "username": "admin",
            "password": "secret",
        },
        "location": {
            "vm_name": "ubuntu-2404",
            "cluster": "cluster1",
            "datastore": "datastore1",
            "folder": "/templates/",
        },
        "storage": {
            "disk_controller_type": ["pvscsi"],
            "disks": [{"disk_size": 20480, "thin_provisioned": True}],
        },
        "create": {
            "guest_os_type": "ubuntu64Guest",
            "network_adapters": [{"network": "VM Network", "network_card": "vmxnet3"}],
        },
        "communicator": {"type": "ssh", "ssh_username": "ubuntu", "ssh_password": "ubuntu"},
    }


@pytest.fixture
def iso_config(no_env, iso_build_data) -> BuildConfig:
    config = BuildConfig.from_dict(iso_build_data)
    config.validate()
    return config


@pytest.fixture
def ctx() -> BuildContext:
    return BuildContext()


@pytest.fixture
def mock_driver():
    """Driver stand-in with a content library client."""
    driver = mock.MagicMock()
    driver.datacenter_name = "dc1"
    driver.config.server = "vcenter.example.com"
    driver.config.insecure = True
    driver.session_cookie = 'vmware_soap_session="abc"'
    return driver


@pytest.fixture
def mock_vm():
    vm = mock.MagicMock()
    vm.name = "ubuntu-2404"
    return vm


@pytest.fixture
def state(mock_driver, mock_vm) -> StateBag:
    """State bag as it looks once the VM exists."""
    bag = StateBag()
    bag.put(STATE_DRIVER, mock_driver)
    bag.put(STATE_VM, mock_vm)
    return bag


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for testing remote operations."""
    with mock.patch('paramiko.SSHClient') as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        # Mock successful command execution
        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value = b"command output"
        stderr.read.return_value = b""
        stdout.channel.recv_exit_status.return_value = 0

        client.exec_command.return_value = (None, stdout, stderr)

        yield client

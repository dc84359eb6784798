"""Tests for datastore paths, browsing and uploads."""

from unittest import mock

import pytest
from pyVmomi import vim

from vsphere_builder.driver.datastore import (
    Datastore,
    is_valid_iso_path,
    remove_datastore_prefix,
    split_datastore_path,
)
from vsphere_builder.errors import DriverError, TaskError


@pytest.fixture
def datastore(mock_driver):
    ref = mock.MagicMock()
    ref.name = "datastore1"
    return Datastore(ref, mock_driver)


def search_result(*names):
    return mock.MagicMock(file=[mock.MagicMock(path=n) for n in names])


@pytest.mark.parametrize(
    "path, expected",
    [
        ("[ds1] iso/ubuntu.iso", ("ds1", "iso/ubuntu.iso")),
        ("[ds1]", ("ds1", "")),
        ("iso/ubuntu.iso", ("", "iso/ubuntu.iso")),
    ],
)
def test_split_datastore_path(path, expected):
    assert split_datastore_path(path) == expected


def test_remove_datastore_prefix():
    assert remove_datastore_prefix("[ds1] a/b.iso") == "a/b.iso"


@pytest.mark.parametrize(
    "path, valid",
    [
        ("[ds1] iso/ubuntu.iso", True),
        ("iso/ubuntu.iso", True),
        ("[ds1/x] ubuntu.iso", False),
        ("[ds1] [ds2] ubuntu.iso", False),
    ],
)
def test_is_valid_iso_path(path, valid):
    assert is_valid_iso_path(path) is valid


def test_resolve_path(datastore):
    assert datastore.resolve_path("[other] iso/a.iso") == "[datastore1] iso/a.iso"
    assert datastore.resolve_path("") == "[datastore1]"


@mock.patch("vsphere_builder.driver.datastore.run_task")
def test_file_exists(mock_run_task, datastore):
    """The directory is searched for the file name."""
    mock_run_task.return_value = search_result("a.iso")

    assert datastore.file_exists("iso/a.iso") is True
    assert mock_run_task.call_args.kwargs["datastorePath"] == "[datastore1] iso"
    assert mock_run_task.call_args.kwargs["searchSpec"].matchPattern == ["a.iso"]

    mock_run_task.return_value = search_result()
    assert datastore.file_exists("iso/a.iso") is False


@mock.patch("vsphere_builder.driver.datastore.run_task")
def test_missing_directory_means_missing_file(mock_run_task, datastore):
    mock_run_task.side_effect = TaskError("not found", fault=vim.fault.FileNotFound(file="iso"))

    assert datastore.file_exists("iso/a.iso") is False
    assert datastore.dir_exists("iso") is False


@mock.patch("vsphere_builder.driver.datastore.run_task")
def test_search_other_errors_propagate(mock_run_task, datastore):
    mock_run_task.side_effect = TaskError("no permission", fault=vim.fault.NoPermission())

    with pytest.raises(TaskError):
        datastore.dir_exists("iso")


def test_make_directory_already_exists(datastore, mock_driver):
    mock_driver.content.fileManager.MakeDirectory.side_effect = vim.fault.FileAlreadyExists(file="iso")

    datastore.make_directory("iso")

    mock_driver.content.fileManager.MakeDirectory.assert_called_once_with(
        name="[datastore1] iso",
        datacenter=mock_driver.datacenter,
        createParentDirectories=True,
    )


def test_make_directory_failure(datastore, mock_driver):
    mock_driver.content.fileManager.MakeDirectory.side_effect = vim.fault.NoPermission(msg="denied")

    with pytest.raises(DriverError, match="denied"):
        datastore.make_directory("iso")


@mock.patch("vsphere_builder.driver.datastore.requests.put")
def test_upload_through_vcenter(mock_put, datastore, mock_driver, tmp_path):
    """Uploads go to /folder with the session cookie and datacenter path."""
    src = tmp_path / "a.iso"
    src.write_bytes(b"data")
    mock_put.return_value.status_code = 201

    datastore.upload_file(str(src), "[datastore1] cache/a.iso")

    url = mock_put.call_args.args[0]
    kwargs = mock_put.call_args.kwargs
    assert url == "https://vcenter.example.com/folder/cache/a.iso"
    assert kwargs["params"] == {"dcPath": "dc1", "dsName": "datastore1"}
    assert kwargs["headers"]["Cookie"] == mock_driver.session_cookie
    assert kwargs["verify"] is False


@mock.patch("vsphere_builder.driver.datastore.requests.put")
def test_upload_direct_to_host(mock_put, datastore, mock_driver, tmp_path):
    src = tmp_path / "a.iso"
    src.write_bytes(b"data")
    mock_put.return_value.status_code = 200
    mock_driver.content.sessionManager.AcquireGenericServiceTicket.return_value.id = "ticket-1"

    datastore.upload_file(str(src), "cache/a.iso", host="esxi1", set_host=True)

    assert mock_put.call_args.args[0] == "https://esxi1/folder/cache/a.iso"
    assert mock_put.call_args.kwargs["headers"]["Cookie"] == "vmware_cgi_ticket=ticket-1"


@mock.patch("vsphere_builder.driver.datastore.requests.put")
def test_upload_http_error(mock_put, datastore, tmp_path):
    src = tmp_path / "a.iso"
    src.write_bytes(b"data")
    mock_put.return_value.status_code = 403
    mock_put.return_value.text = "forbidden"

    with pytest.raises(DriverError, match="HTTP 403 forbidden"):
        datastore.upload_file(str(src), "cache/a.iso")

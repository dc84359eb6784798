"""Tests for datastore and network resolution."""

from unittest import mock

import pytest
from pyVmomi import vim

from vsphere_builder.config import DiskConfig
from vsphere_builder.errors import MultipleNetworkFoundError, NotFoundError, ResolverError
from vsphere_builder.resolver import Resolver, SelectionMethod


def fake_datastore(name):
    ds = mock.MagicMock()
    ds.name = name
    ds.info.return_value = {"host": []}
    return ds


@pytest.fixture
def cluster_driver():
    """Driver with a storage pod holding datastore-1 and datastore-2."""
    driver = mock.MagicMock()
    members = {"datastore-1": fake_datastore("ds-a"), "datastore-2": fake_datastore("ds-b")}
    driver.find_datastore_cluster.return_value = vim.StoragePod("group-p1")
    driver.list_datastores.return_value = [vim.Datastore(moid) for moid in members]
    driver.datastore.side_effect = lambda ref: members[ref._moId]
    driver.members = members
    return driver


def recommend(driver, moid):
    action = vim.storageDrs.StoragePlacementAction(destination=vim.Datastore(moid))
    result = mock.MagicMock()
    result.recommendations = [mock.MagicMock(action=[action])]
    driver.content.storageResourceManager.RecommendDatastores.return_value = result


def test_nothing_configured():
    assert Resolver(mock.MagicMock()).resolve_datastore() is None


def test_direct_datastore():
    driver = mock.MagicMock()
    placement = Resolver(driver).resolve_datastore(datastore="ds1", host="esxi1")

    driver.find_datastore.assert_called_once_with("ds1", "esxi1")
    assert placement.datastore is driver.find_datastore.return_value
    assert placement.method is SelectionMethod.DIRECT


def test_host_with_several_datastores():
    driver = mock.MagicMock()
    driver.find_datastore.side_effect = NotFoundError("host has multiple datastores; specify the datastore name")

    with pytest.raises(ResolverError, match="multiple datastores"):
        Resolver(driver).resolve_datastore(host="esxi1")


def test_cluster_uses_storage_drs(cluster_driver):
    recommend(cluster_driver, "datastore-2")

    placement = Resolver(cluster_driver).resolve_datastore(datastore_cluster="pod1")

    assert placement.datastore is cluster_driver.members["datastore-2"]
    assert placement.method is SelectionMethod.DRS
    spec = cluster_driver.content.storageResourceManager.RecommendDatastores.call_args.kwargs["storageSpec"]
    assert spec.type == "create"
    assert spec.podSelectionSpec.storagePod._moId == "group-p1"


def test_cluster_falls_back_to_first_member(cluster_driver):
    """Without a recommendation the first datastore of the pod is used."""
    cluster_driver.content.storageResourceManager.RecommendDatastores.return_value = mock.MagicMock(recommendations=[])

    placement = Resolver(cluster_driver).resolve_datastore(datastore_cluster="pod1")

    assert placement.datastore is cluster_driver.members["datastore-1"]
    assert placement.method is SelectionMethod.FALLBACK


def test_cluster_drs_fault_falls_back(cluster_driver):
    cluster_driver.content.storageResourceManager.RecommendDatastores.side_effect = vim.fault.InvalidDatastore(
        msg="not supported"
    )

    placement = Resolver(cluster_driver).resolve_datastore(datastore_cluster="pod1")

    assert placement.method is SelectionMethod.FALLBACK


def test_empty_cluster(cluster_driver):
    cluster_driver.list_datastores.return_value = []

    with pytest.raises(ResolverError, match="contains no available datastores"):
        Resolver(cluster_driver).resolve_datastore(datastore_cluster="pod1")


def test_one_datastore_per_disk(cluster_driver):
    recommend(cluster_driver, "datastore-1")
    disks = [DiskConfig(disk_size=1024), DiskConfig(disk_size=2048)]

    datastores, method = Resolver(cluster_driver).select_datastores_for_disks("pod1", disks)

    assert datastores == [cluster_driver.members["datastore-1"]] * 2
    assert method is SelectionMethod.DRS


# -- networks --

def network(name, hosts=()):
    net = mock.MagicMock()
    net.name = name
    net.host = list(hosts)
    return net


def test_network_requires_name_or_host():
    with pytest.raises(ResolverError):
        Resolver(mock.MagicMock()).resolve_network()


def test_network_from_host():
    driver = mock.MagicMock()
    only = network("VM Network")
    driver.find_host.return_value.network = [only]

    assert Resolver(driver).resolve_network(host="esxi1") is only


def test_network_single_match():
    driver = mock.MagicMock()
    net = network("VM Network")
    driver.find_networks.return_value = [net]

    assert Resolver(driver).resolve_network("VM Network") is net


def test_network_not_found():
    driver = mock.MagicMock()
    driver.find_networks.return_value = []

    with pytest.raises(NotFoundError):
        Resolver(driver).resolve_network("missing")


def test_ambiguous_network_without_host():
    driver = mock.MagicMock()
    driver.find_networks.return_value = [network("dvpg"), network("dvpg")]

    with pytest.raises(MultipleNetworkFoundError, match="inventory path"):
        Resolver(driver).resolve_network("dvpg")


def test_ambiguous_network_narrowed_by_host():
    """The network attached to the build host wins."""
    driver = mock.MagicMock()
    host = object()
    other, attached = network("dvpg", [object()]), network("dvpg", [host])
    driver.find_networks.return_value = [other, attached]
    driver.find_host.return_value = host

    assert Resolver(driver).resolve_network("dvpg", host="esxi1") is attached


def test_ambiguous_network_unknown_host():
    driver = mock.MagicMock()
    driver.find_networks.return_value = [network("dvpg"), network("dvpg")]
    driver.find_host.side_effect = NotFoundError("host 'esxi9' not found")

    with pytest.raises(MultipleNetworkFoundError, match="unable to find host 'esxi9'"):
        Resolver(driver).resolve_network("dvpg", host="esxi9")


def test_ambiguous_network_not_on_host():
    driver = mock.MagicMock()
    driver.find_networks.return_value = [network("dvpg", [object()]), network("dvpg")]

    with pytest.raises(MultipleNetworkFoundError, match="accessible to host"):
        Resolver(driver).resolve_network("dvpg", host="esxi1")

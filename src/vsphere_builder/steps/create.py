"""Create a new VM, or clone one from a template."""

import logging
import posixpath
from dataclasses import replace
from typing import Any, List, Optional

from vsphere_builder.config import CloneConfig, CreateConfig, LocationConfig, StorageConfig
from vsphere_builder.driver.datastore import Datastore
from vsphere_builder.errors import BuildError, DriverError, ResolverError
from vsphere_builder.pipeline import (
    STATE_DATASTORE,
    STATE_DESTROY_VM,
    STATE_DRIVER,
    STATE_SOURCE_TEMPLATE,
    STATE_VM,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)
from vsphere_builder.resolver import Resolver, SelectionMethod
from vsphere_builder.steps.common import cleanup_vm

logger = logging.getLogger(__name__)


def _placement(state: StateBag, location: LocationConfig, storage: StorageConfig):
    """Primary datastore plus, for a datastore cluster and several disks, one datastore per disk."""
    driver = state.require(STATE_DRIVER)
    primary: Optional[Datastore] = state.get(STATE_DATASTORE)
    if primary is None:
        if not location.datastore:
            raise BuildError("no datastore specified and no datastore resolved from cluster")
        primary = driver.find_datastore(location.datastore, location.host)

    disks = storage.disks
    if not location.datastore_cluster or len(disks) <= 1:
        return primary, None

    logger.info(f"Requesting Storage DRS recommendations for {len(disks)} disks...")
    try:
        per_disk, method = Resolver(driver).select_datastores_for_disks(location.datastore_cluster, disks)
    except (DriverError, ResolverError) as e:
        logger.warning(f"Failed to get Storage DRS recommendations: {e}. Using primary datastore.")
        return primary, [primary] * len(disks)

    for i, ds in enumerate(per_disk, start=1):
        if method is SelectionMethod.DRS:
            logger.info(f"Disk {i}: Storage DRS selected datastore '{ds.name}'")
        else:
            logger.info(f"Disk {i}: Using first available datastore '{ds.name}'")
    return per_disk[0], per_disk


class StepCreateVM(Step):
    name = "create-vm"

    def __init__(self, config: CreateConfig, storage: StorageConfig, location: LocationConfig, force: bool = False):
        self.config = config
        self.storage = storage
        self.location = location
        self.force = force

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        driver = state.require(STATE_DRIVER)
        loc = self.location
        vm_path = posixpath.join(loc.folder, loc.vm_name)
        driver.pre_clean_vm(vm_path, self.force, loc.cluster, loc.host, loc.resource_pool)

        datastore, disk_datastores = _placement(state, loc, self.storage)

        resolver = Resolver(driver)
        networks: List[Any] = []
        for nic in self.config.network_adapters:
            network = resolver.resolve_network(nic.network, loc.host)
            networks.append((replace(nic, mac_address=nic.mac_address.lower()), network))

        logger.info("Creating virtual machine...")
        vm = driver.create_vm(
            loc.vm_name,
            datastore,
            folder=loc.folder,
            cluster=loc.cluster,
            host=loc.host,
            resource_pool=loc.resource_pool,
            guest_os_type=self.config.guest_os_type,
            vm_version=self.config.vm_version,
            annotation=self.config.notes,
            storage=self.storage,
            disk_datastores=disk_datastores,
            networks=networks,
            usb_controller=self.config.usb_controller,
            ctx=ctx,
        )
        if self.config.destroy:
            state.put(STATE_DESTROY_VM, True)
        state.put(STATE_VM, vm)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        cleanup_vm(state)


class StepCloneVM(Step):
    name = "clone-vm"

    def __init__(self, config: CloneConfig, storage: StorageConfig, location: LocationConfig, force: bool = False):
        self.config = config
        self.storage = storage
        self.location = location
        self.force = force

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        driver = state.require(STATE_DRIVER)
        loc = self.location

        logger.info("Finding virtual machine to clone...")
        template = driver.find_vm(self.config.template)

        vm_path = posixpath.join(loc.folder, loc.vm_name)
        driver.pre_clean_vm(vm_path, self.force, loc.cluster, loc.host, loc.resource_pool)

        datastore, disk_datastores = _placement(state, loc, self.storage)
        network = None
        if self.config.network:
            network = Resolver(driver).resolve_network(self.config.network, loc.host)

        logger.info("Cloning virtual machine...")
        vm = template.clone(
            loc.vm_name,
            datastore,
            folder=loc.folder,
            cluster=loc.cluster,
            host=loc.host,
            resource_pool=loc.resource_pool,
            linked_clone=self.config.linked_clone,
            disk_size=self.config.disk_size,
            notes=self.config.notes,
            storage=self.storage,
            disk_datastores=disk_datastores,
            network=network,
            mac_address=self.config.mac_address.lower(),
            vapp_properties=self.config.vapp_properties,
            ctx=ctx,
        )
        if self.config.destroy:
            state.put(STATE_DESTROY_VM, True)
        state.put(STATE_VM, vm)
        state.put(STATE_SOURCE_TEMPLATE, self.config.template)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        cleanup_vm(state)

"""Helpers shared by several steps."""

import logging

from pyVmomi import vmodl

from vsphere_builder.driver.datastore import Datastore
from vsphere_builder.errors import DriverError, parse_fault
from vsphere_builder.metadata import vm_metadata
from vsphere_builder.pipeline import (
    STATE_DATASTORE,
    STATE_DESTROY_VM,
    STATE_DRIVER,
    STATE_LIBRARY_DATASTORE,
    STATE_METADATA,
    STATE_VM,
    StateBag,
)

logger = logging.getLogger(__name__)


def cleanup_vm(state: StateBag) -> None:
    """Record VM metadata, then destroy the VM if the run failed or asked for it."""
    vm = state.get(STATE_VM)
    if vm is None:
        return

    try:
        state.put(STATE_METADATA, vm_metadata(vm, state.get(STATE_LIBRARY_DATASTORE) or ()))
    except (DriverError, vmodl.MethodFault) as e:
        logger.warning(f"Error recording VM metadata: {parse_fault(e)}")

    if not state.interrupted and not state.get(STATE_DESTROY_VM):
        return

    logger.info("Destroying VM...")
    try:
        vm.destroy()
    except DriverError as e:
        logger.error(f"Error destroying VM: {e}")


def target_datastore(state: StateBag, name: str = "", host: str = "", location_datastore: str = "") -> Datastore:
    """The resolved build datastore, unless ``name`` points somewhere else."""
    resolved = state.get(STATE_DATASTORE)
    if resolved is not None and (not name or name == location_datastore):
        return resolved
    driver = state.require(STATE_DRIVER)
    return driver.find_datastore(name or location_datastore, host)

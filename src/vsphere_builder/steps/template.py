"""Finish the VM: strip NICs, snapshot, convert to a template and publish it."""

import logging

from vsphere_builder.config import ContentLibraryConfig, TemplateConfig
from vsphere_builder.errors import DriverError
from vsphere_builder.pipeline import (
    STATE_DESTROY_VM,
    STATE_DRIVER,
    STATE_LIBRARY_DATASTORE,
    STATE_LIBRARY_ITEM_UUID,
    STATE_VM,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)

logger = logging.getLogger(__name__)


class StepRemoveNetworkAdapter(Step):
    name = "remove-network-adapter"

    def __init__(self, config: TemplateConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.remove_network_adapter:
            return StepAction.CONTINUE
        logger.info("Removing network adapters...")
        state.require(STATE_VM).remove_network_adapters()
        return StepAction.CONTINUE


class StepCreateSnapshot(Step):
    name = "create-snapshot"

    def __init__(self, config: TemplateConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.create_snapshot:
            return StepAction.CONTINUE
        logger.info("Creating snapshot...")
        state.require(STATE_VM).create_snapshot(self.config.snapshot_name)
        return StepAction.CONTINUE


class StepConvertToTemplate(Step):
    name = "convert-to-template"

    def __init__(self, config: TemplateConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.convert_to_template:
            return StepAction.CONTINUE
        logger.info("Converting VM to template...")
        state.require(STATE_VM).convert_to_template()
        return StepAction.CONTINUE


class StepImportToContentLibrary(Step):
    """Publish the VM to a content library as an OVF or a VM template item."""

    name = "import-to-content-library"

    def __init__(self, config: ContentLibraryConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if self.config.skip_import:
            logger.info("Skipping import to content library")
            return StepAction.CONTINUE

        vm = state.require(STATE_VM)
        driver = state.require(STATE_DRIVER)

        logger.info("Clearing boot order...")
        vm.set_boot_order(["-"])

        if self.config.ovf:
            logger.info(f"Importing VM OVF template {self.config.name} to content library {self.config.library}...")
            vm.import_ovf_to_content_library(self.config, ctx)
        else:
            logger.info(f"Importing VM template {self.config.name} to content library {self.config.library}...")
            vm.import_to_content_library(self.config, ctx)

        if self.config.destroy:
            state.put(STATE_DESTROY_VM, True)

        state.put(STATE_LIBRARY_ITEM_UUID, driver.library.item_uuid(self.config.library, self.config.name))

        names = []
        for moid in driver.library.datastore_ids(self.config.library):
            try:
                names.append(driver.datastore_name(moid))
            except DriverError as e:
                logger.warning(f"Cannot resolve content library datastore {moid}: {e}")
        state.put(STATE_LIBRARY_DATASTORE, names)
        return StepAction.CONTINUE

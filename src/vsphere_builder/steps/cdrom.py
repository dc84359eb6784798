"""CD-ROM drives: mount install media, then eject, remove or reattach them."""

import logging
from typing import List

from vsphere_builder.config import CDRomConfig
from vsphere_builder.driver.datastore import is_valid_iso_path, split_datastore_path
from vsphere_builder.errors import BuildError
from vsphere_builder.pipeline import (
    STATE_CD_PATH,
    STATE_DRIVER,
    STATE_ISO_REMOTE_PATH,
    STATE_VM,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)

logger = logging.getLogger(__name__)


def _ensure_sata_controller(vm) -> None:
    if vm.find_sata_controller() is None:
        vm.add_sata_controller()


def resolve_iso_path(driver, path: str) -> str:
    """Datastore path for ``path``; content library paths ``library/item/file`` are looked up."""
    if not path.strip():
        raise BuildError("ISO path cannot be empty or whitespace-only")
    if not path.lstrip().startswith("["):
        resolved = driver.library.iso_datastore_path(path, driver.datastore_name)
        if resolved:
            logger.info(f"Content library path {path} resolved to {resolved}")
            return resolved
    if not is_valid_iso_path(path):
        raise BuildError(f"invalid datastore path format: '{path}'")
    ds_name, file_path = split_datastore_path(path)
    if ds_name and not driver.find_datastore(ds_name).file_exists(file_path):
        raise BuildError(f"ISO file not found: '{path}'")
    return path


class StepAddCDRom(Step):
    name = "add-cdrom"

    def __init__(self, config: CDRomConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        driver = state.require(STATE_DRIVER)

        paths: List[str] = [resolve_iso_path(driver, p) for p in self.config.iso_paths]
        remote_iso = state.get(STATE_ISO_REMOTE_PATH)
        if remote_iso:
            paths.insert(0, remote_iso)
        cd_path = state.get(STATE_CD_PATH)
        if cd_path:
            paths.append(cd_path)

        if self.config.cdrom_type == "sata":
            _ensure_sata_controller(vm)

        if paths:
            logger.info("Mounting ISO images...")
        for path in paths:
            vm.add_cdrom(self.config.cdrom_type, path)
        return StepAction.CONTINUE


class StepRemoveCDRom(Step):
    """Eject every drive; with ``remove_cdrom`` remove the drives too."""

    name = "remove-cdrom"

    def __init__(self, config: CDRomConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        logger.info("Ejecting CD-ROM media...")
        vm.eject_cdroms()
        if self.config.remove_cdrom:
            logger.info("Removing CD-ROM devices...")
            vm.remove_cdroms()
        return StepAction.CONTINUE


class StepReattachCDRom(Step):
    """Leave ``reattach_cdroms`` empty drives on the template."""

    name = "reattach-cdrom"

    def __init__(self, config: CDRomConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        count = self.config.reattach_cdroms
        if count == 0:
            return StepAction.CONTINUE
        if count < 1 or count > 4:
            raise BuildError("'reattach_cdroms' should be between 1 and 4; 0 skips reattaching")

        vm = state.require(STATE_VM)
        logger.info("Reattaching CD-ROM devices...")
        vm.remove_cdroms()
        if self.config.cdrom_type == "sata":
            _ensure_sata_controller(vm)
        for _ in range(count):
            vm.add_cdrom(self.config.cdrom_type)
        logger.info("Ejecting CD-ROM media...")
        vm.eject_cdroms()
        return StepAction.CONTINUE

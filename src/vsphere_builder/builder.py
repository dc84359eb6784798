"""
Assemble the step list for an ``iso`` or ``clone`` build, run it and turn
the final state into an Artifact.
"""

import logging
from typing import List, Optional

from vsphere_builder.artifact import Artifact, OutputConfig
from vsphere_builder.config import BuildConfig
from vsphere_builder.errors import BuildError, StepError, TaskCancelledError
from vsphere_builder.pipeline import (
    STATE_DRIVER,
    STATE_FAILED_STEP,
    STATE_VM,
    BuildContext,
    Runner,
    StateBag,
    Step,
)
from vsphere_builder.steps.boot import StepBootCommand, StepRun
from vsphere_builder.steps.cdrom import StepAddCDRom, StepReattachCDRom, StepRemoveCDRom
from vsphere_builder.steps.connect import StepConnect, StepResolveDatastore
from vsphere_builder.steps.create import StepCloneVM, StepCreateVM
from vsphere_builder.steps.customize import StepCustomize
from vsphere_builder.steps.export import StepExport
from vsphere_builder.steps.floppy import StepAddFloppy, StepCreateFloppy, StepRemoveFloppy
from vsphere_builder.steps.guest import StepProvision, StepShutdown, StepSSHKeyPair, StepWaitForIP
from vsphere_builder.steps.hardware import StepAddFlag, StepConfigParams, StepConfigureHardware
from vsphere_builder.steps.media import StepCreateCD, StepDownload, StepRemoteUpload
from vsphere_builder.steps.template import (
    StepConvertToTemplate,
    StepCreateSnapshot,
    StepImportToContentLibrary,
    StepRemoveNetworkAdapter,
)

logger = logging.getLogger(__name__)


class Builder:
    """Runs one build described by a validated BuildConfig."""

    def __init__(self, config: BuildConfig):
        self.config = config

    def _disk_count(self) -> int:
        return max(len(self.config.storage.disks), 1)

    def _iso_steps(self) -> List[Step]:
        c = self.config
        steps: List[Step] = [
            StepConnect(c.vcenter),
            StepResolveDatastore(c.location, self._disk_count()),
        ]
        if c.iso.iso_urls:
            steps.append(StepDownload(c.iso, c.location))
        if c.cd.files:
            steps.append(StepCreateCD(c.cd))
        if c.floppy.has_files:
            steps.append(StepCreateFloppy(c.floppy))
        steps += [
            StepRemoteUpload(c.iso, c.location),
            StepCreateVM(c.create, c.storage, c.location, c.force),
            StepConfigureHardware(c.hardware),
            StepAddFlag(c.flags),
            StepAddCDRom(c.cdrom),
            StepConfigParams(c.config_params),
            StepAddFloppy(c.floppy, c.location),
            StepRun(c.boot, set_order=True),
            StepBootCommand(c.boot),
        ]
        if c.communicator.type == "ssh":
            steps += [
                StepWaitForIP(c.wait_ip),
                StepProvision(c.communicator, c.provision),
            ]
        steps += [
            StepShutdown(c.shutdown, c.communicator),
            StepRemoveFloppy(c.location),
            StepRemoveCDRom(c.cdrom),
            StepReattachCDRom(c.cdrom),
            StepRemoveNetworkAdapter(c.template),
            StepCreateSnapshot(c.template),
            StepConvertToTemplate(c.template),
        ]
        return steps

    def _clone_steps(self) -> List[Step]:
        c = self.config
        steps: List[Step] = [
            StepConnect(c.vcenter),
            StepResolveDatastore(c.location, self._disk_count()),
            StepCreateCD(c.cd),
            StepRemoteUpload(c.iso, c.location),
            StepCloneVM(c.clone, c.storage, c.location, c.force),
            StepConfigureHardware(c.hardware),
            StepAddFlag(c.flags),
            StepAddCDRom(c.cdrom),
            StepConfigParams(c.config_params),
        ]
        if c.customize is not None:
            steps.append(StepCustomize(c.customize))
        if c.uses_communicator:
            if c.floppy.has_files:
                steps.append(StepCreateFloppy(c.floppy))
            steps += [
                StepAddFloppy(c.floppy, c.location),
                StepSSHKeyPair(c.communicator),
                StepRun(c.boot, set_order=False),
                StepBootCommand(c.boot),
                StepWaitForIP(c.wait_ip),
                StepProvision(c.communicator, c.provision),
                StepShutdown(c.shutdown, c.communicator),
                StepRemoveFloppy(c.location),
            ]
        steps += [
            StepRemoveCDRom(c.cdrom),
            StepReattachCDRom(c.cdrom),
            StepCreateSnapshot(c.template),
            StepRemoveNetworkAdapter(c.template),
            StepConvertToTemplate(c.template),
        ]
        return steps

    def steps(self) -> List[Step]:
        steps = self._iso_steps() if self.config.source == "iso" else self._clone_steps()
        if self.config.content_library is not None:
            steps.append(StepImportToContentLibrary(self.config.content_library))
        if self.config.export is not None:
            steps.append(StepExport(self.config.export))
        return steps

    def run(self, ctx: Optional[BuildContext] = None) -> Optional[Artifact]:
        """Run the build.

        Returns:
            The Artifact, or None when no VM was produced.

        Raises:
            StepError: A step failed; wraps the original error.
            TaskCancelledError: The build was cancelled.
            BuildError: A step halted without recording an error.
        """
        ctx = ctx or BuildContext()
        state = StateBag()
        Runner(self.steps()).run(ctx, state)

        error = state.error
        if error is not None:
            raise StepError(state.get(STATE_FAILED_STEP) or "unknown", error) from error
        if state.cancelled or ctx.cancelled:
            raise TaskCancelledError("build was cancelled")
        if state.halted:
            raise BuildError(f"build halted at step '{state.get(STATE_FAILED_STEP)}'")

        vm = state.get(STATE_VM)
        if vm is None:
            return None

        driver = state.get(STATE_DRIVER)
        output = OutputConfig(self.config.export.output_directory) if self.config.export is not None else None
        artifact = Artifact.from_state(
            name=self.config.location.vm_name,
            datacenter=driver.datacenter_name if driver is not None else "",
            location=self.config.location,
            vm=vm,
            state_data=state.as_dict(),
            content_library=self.config.content_library,
            output=output,
        )
        logger.info(f"Build '{self.config.name}' finished: {artifact}")
        return artifact

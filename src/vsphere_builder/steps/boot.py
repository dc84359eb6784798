"""Power the VM on and type the boot command."""

import logging
from typing import List

from vsphere_builder.config import BootConfig
from vsphere_builder.driver.keyboard import parse_boot_command, type_boot_command
from vsphere_builder.errors import DriverError
from vsphere_builder.pipeline import STATE_VM, BuildContext, StateBag, Step, StepAction

logger = logging.getLogger(__name__)

TEMPORARY_BOOT_ORDER = ["disk", "cdrom"]


class StepRun(Step):
    """Set the boot order and power on. ``set_order`` adds a temporary disk,cdrom order."""

    name = "run"

    def __init__(self, config: BootConfig, set_order: bool = False):
        self.config = config
        self.set_order = set_order
        self._temporary_order = False

    def _boot_order(self) -> List[str]:
        if self.config.boot_order:
            return [item.strip() for item in self.config.boot_order.split(",") if item.strip()]
        if self.set_order:
            return list(TEMPORARY_BOOT_ORDER)
        return []

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        order = self._boot_order()
        if order:
            logger.info(f"Setting boot order to {','.join(order)}")
            vm.set_boot_order(order)
            self._temporary_order = not self.config.boot_order

        logger.info("Powering on VM...")
        vm.power_on(ctx)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        vm = state.get(STATE_VM)
        if vm is None:
            return

        # Only the temporary order is cleared; a configured one stays on the template
        if self._temporary_order:
            logger.info("Clearing boot order...")
            try:
                vm.set_boot_order(["-"])
            except DriverError as e:
                logger.error(f"Error clearing boot order: {e}")

        if not state.interrupted:
            return
        logger.info("Powering off VM...")
        try:
            vm.power_off()
        except DriverError as e:
            logger.error(f"Error powering off VM: {e}")


class StepBootCommand(Step):
    name = "boot-command"

    def __init__(self, config: BootConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.boot_command:
            return StepAction.CONTINUE
        vm = state.require(STATE_VM)
        actions = parse_boot_command("".join(self.config.boot_command))

        if self.config.boot_wait:
            logger.info(f"Waiting {self.config.boot_wait:g}s for boot...")
            if ctx.wait(self.config.boot_wait):
                return StepAction.HALT

        logger.info("Typing boot command...")
        if not type_boot_command(vm, actions, ctx, self.config.boot_key_interval):
            return StepAction.HALT
        return StepAction.CONTINUE

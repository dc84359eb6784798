"""Hardware, VM flags and advanced configuration parameters."""

import logging

from pyVmomi import vim

from vsphere_builder.config import ConfigParamsConfig, FlagConfig, HardwareConfig
from vsphere_builder.pipeline import STATE_VM, BuildContext, StateBag, Step, StepAction

logger = logging.getLogger(__name__)


class StepConfigureHardware(Step):
    name = "configure-hardware"

    def __init__(self, config: HardwareConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.is_set:
            return StepAction.CONTINUE
        vm = state.require(STATE_VM)
        logger.info("Customizing hardware...")
        vm.configure(self.config)
        return StepAction.CONTINUE


class StepAddFlag(Step):
    name = "add-flag"

    def __init__(self, config: FlagConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.vbs_enabled and not self.config.vvtd_enabled:
            return StepAction.CONTINUE
        flags = vim.vm.FlagInfo()
        if self.config.vbs_enabled:
            flags.vbsEnabled = True
        if self.config.vvtd_enabled:
            flags.vvtdEnabled = True
        logger.info("Adding virtual machine flags...")
        state.require(STATE_VM).add_flag(flags)
        return StepAction.CONTINUE


class StepConfigParams(Step):
    name = "config-params"

    def __init__(self, config: ConfigParamsConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        params = {k: str(v) for k, v in (self.config.configuration_parameters or {}).items()}
        tools = None
        if self.config.tools_sync_time or self.config.tools_upgrade_policy:
            tools = vim.vm.ToolsConfigInfo()
            if self.config.tools_sync_time:
                tools.syncTimeWithHost = True
            if self.config.tools_upgrade_policy:
                tools.toolsUpgradePolicy = "upgradeAtPowerCycle"

        if not params and tools is None:
            return StepAction.CONTINUE
        logger.info("Adding configuration parameters...")
        for key, value in params.items():
            logger.debug(f"Adding: {key} = {value}")
        state.require(STATE_VM).add_config_params(params, tools)
        return StepAction.CONTINUE

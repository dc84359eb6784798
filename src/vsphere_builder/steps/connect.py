"""Connect to vCenter and settle on the build datastore."""

import logging

from vsphere_builder.config import ConnectConfig, LocationConfig
from vsphere_builder.driver.connection import Driver
from vsphere_builder.pipeline import (
    STATE_DATASTORE,
    STATE_DATASTORE_METHOD,
    STATE_DRIVER,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)
from vsphere_builder.resolver import Resolver

logger = logging.getLogger(__name__)


class StepConnect(Step):
    name = "connect"

    def __init__(self, config: ConnectConfig):
        self.config = config

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        state.put(STATE_DRIVER, Driver.connect(self.config))
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        driver = state.get(STATE_DRIVER)
        if driver is not None:
            driver.disconnect()


class StepResolveDatastore(Step):
    name = "resolve-datastore"

    def __init__(self, location: LocationConfig, disk_count: int = 1):
        self.location = location
        self.disk_count = disk_count

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        driver = state.require(STATE_DRIVER)
        placement = Resolver(driver).resolve_datastore(
            self.location.datastore,
            self.location.datastore_cluster,
            self.location.host,
            self.disk_count,
        )
        if placement is None:
            logger.debug("No datastore configured; leaving the choice to vCenter")
            return StepAction.CONTINUE
        state.put(STATE_DATASTORE, placement.datastore)
        state.put(STATE_DATASTORE_METHOD, placement.method.value)
        return StepAction.CONTINUE

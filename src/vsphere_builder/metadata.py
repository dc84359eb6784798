"""VM metadata labels, recorded at VM cleanup and attached to the artifact."""

import logging
from typing import Any, Dict, Sequence

from pyVmomi import vmodl

from vsphere_builder.errors import DriverError, parse_fault

logger = logging.getLogger(__name__)


def _indexed(labels: Dict[str, str], prefix: str, values: Sequence[str]) -> None:
    for i, value in enumerate(values):
        labels[prefix if i == 0 else f"{prefix}_{i}"] = value


def _names(vm: Any, refs: Sequence[Any], kind: str) -> list:
    names = []
    for ref in refs or []:
        try:
            name = vm.driver.properties(ref, "name").get("name")
        except (DriverError, vmodl.MethodFault) as e:
            logger.warning(f"Cannot read {kind} name for metadata: {parse_fault(e)}")
            continue
        if name:
            names.append(name)
    return names


def vm_metadata(vm: Any, template_datastores: Sequence[str] = ()) -> Dict[str, str]:
    """Describe ``vm`` as a flat dict of string labels.

    Reads everything in one property collector call. Failures are logged and
    never raised; a failed read gives an empty dict.
    """
    labels: Dict[str, str] = {}
    try:
        info = vm.info("config.uuid", "config.annotation", "config.hardware", "resourcePool", "datastore", "network")
    except (DriverError, vmodl.MethodFault) as e:
        logger.warning(f"Error extracting VM metadata: {parse_fault(e)}")
        return labels
    if not info:
        return labels

    if info.get("config.uuid"):
        labels["vsphere_uuid"] = info["config.uuid"]
    if info.get("config.annotation"):
        labels["annotation"] = info["config.annotation"]
    hardware = info.get("config.hardware")
    if hardware is not None:
        labels["num_cpu"] = str(hardware.numCPU)
        labels["memory_mb"] = str(hardware.memoryMB)

    pool = info.get("resourcePool")
    if pool is not None:
        try:
            pool_path = vm.driver.resource_pool_path(pool)
        except (DriverError, vmodl.MethodFault) as e:
            logger.warning(f"Cannot read resource pool path for metadata: {parse_fault(e)}")
            pool_path = ""
        if pool_path:
            labels["resource_pool"] = pool_path

    _indexed(labels, "datastore", _names(vm, info.get("datastore"), "datastore"))
    _indexed(labels, "network", _names(vm, info.get("network"), "network"))
    _indexed(labels, "template_datastore", list(template_datastores or ()))
    return labels

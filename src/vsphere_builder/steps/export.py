"""
Export the finished VM to OVF (optionally packed as OVA) through an
HttpNfcLease: download the disks, ask vCenter for the descriptor and write
a manifest of the file digests.
"""

import hashlib
import logging
import os
import posixpath
import shutil
import tarfile
from typing import Any, List
from urllib.parse import urlparse

import requests
from pyVmomi import vim, vmodl

from vsphere_builder.cache import CHUNK_SIZE
from vsphere_builder.config import ExportConfig
from vsphere_builder.errors import BuildError, DriverError, TaskCancelledError, parse_fault
from vsphere_builder.pipeline import STATE_DRIVER, STATE_VM, BuildContext, StateBag, Step, StepAction

logger = logging.getLogger(__name__)

LEASE_POLL_INTERVAL = 1.0
INTERMEDIATE_SUFFIXES = (".mf", ".ovf", ".nvram", ".log")


def wait_for_lease(lease: Any, ctx: BuildContext) -> Any:
    """Block until the lease leaves ``initializing``; returns ``lease.info``."""
    while lease.state == vim.HttpNfcLease.State.initializing:
        if ctx.wait(LEASE_POLL_INTERVAL):
            raise TaskCancelledError("export cancelled while waiting for the lease")
    if lease.state != vim.HttpNfcLease.State.ready:
        error = lease.error
        raise DriverError(f"export lease failed: {parse_fault(error) if error else lease.state}")
    return lease.info


def device_file_name(device_url: Any) -> str:
    return device_url.targetId or posixpath.basename(urlparse(device_url.url).path)


class StepExport(Step):
    name = "export"

    def __init__(self, config: ExportConfig):
        self.config = config
        self._created = False
        self._manifest: List[str] = []

    @property
    def output_directory(self) -> str:
        return self.config.output_directory

    def _target(self, ext: str) -> str:
        return os.path.join(self.output_directory, self.config.name + ext)

    def _new_hash(self):
        if self.config.manifest == "none":
            return None
        return hashlib.new(self.config.manifest)

    def _add_hash(self, path: str, digest: Any) -> None:
        self._manifest.append(f"{self.config.manifest.upper()}({path})= {digest.hexdigest()}\n")

    def _include(self, path: str) -> bool:
        return self.config.image_files or path.endswith(".vmdk")

    def _prepare_output(self) -> None:
        target = self._target(".ova" if self.config.format == "ova" else ".ovf")
        if os.path.exists(target):
            if not self.config.force:
                raise BuildError(f"force export disabled, file already exists: {target}")
            logger.info(f"Force export enabled; removing existing {os.path.basename(target)}")
            os.remove(target)
        if not os.path.isdir(self.output_directory):
            os.makedirs(self.output_directory)
            self._created = True

    def _download(self, driver: Any, url: str, path: str, ctx: BuildContext) -> int:
        digest = self._new_hash()
        size = 0
        headers = {"Cookie": driver.session_cookie}
        try:
            with requests.get(url, headers=headers, stream=True, verify=not driver.config.insecure, timeout=60) as r:
                r.raise_for_status()
                with open(os.path.join(self.output_directory, path), "wb") as f:
                    for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                        if ctx.cancelled:
                            raise TaskCancelledError(f"export cancelled while downloading {path}")
                        f.write(chunk)
                        size += len(chunk)
                        if digest is not None:
                            digest.update(chunk)
        except requests.RequestException as e:
            raise BuildError(f"error downloading {path}: {e}") from e
        if digest is not None:
            self._add_hash(path, digest)
        return size

    def _export_files(self, driver: Any, lease: Any, info: Any, ctx: BuildContext) -> List[Any]:
        host = urlparse(f"https://{driver.config.server}").hostname
        ovf_files = []
        for device_url in info.deviceUrl:
            path = device_file_name(device_url)
            if not self._include(path):
                continue
            if not path.startswith(self.config.name):
                path = f"{self.config.name}-{path}"

            logger.info(f"Downloading {path}...")
            url = device_url.url.replace("*", host)
            size = self._download(driver, url, path, ctx)
            ovf_files.append(vim.OvfManager.OvfFile(deviceId=device_url.key, path=path, size=size))
            lease.HttpNfcLeaseProgress(int(100 * len(ovf_files) / max(len(info.deviceUrl), 1)))
        return ovf_files

    def _check_options(self, vm: Any) -> None:
        if not self.config.options:
            return
        known = vm.ovf_export_options()
        unknown = [o for o in self.config.options if o not in known]
        if unknown:
            logger.error(f"unknown export options {','.join(unknown)}")

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        driver = state.require(STATE_DRIVER)
        self._manifest = []
        self._prepare_output()

        logger.info("Exporting to Open Virtualization Format (OVF)...")
        self._check_options(vm)
        lease = vm.export_lease()
        try:
            info = wait_for_lease(lease, ctx)
            ovf_files = self._export_files(driver, lease, info, ctx)
            lease.HttpNfcLeaseComplete()
        except (BuildError, OSError, vmodl.MethodFault) as e:
            self._abort(lease, e)
            raise

        descriptor = vm.create_descriptor(self.config.name, ovf_files, self.config.options)
        ovf_name = self.config.name + ".ovf"
        logger.info(f"Writing OVF descriptor {ovf_name}...")
        with open(self._target(".ovf"), "w") as f:
            f.write(descriptor)

        if self.config.manifest != "none":
            digest = self._new_hash()
            digest.update(descriptor.encode())
            self._add_hash(ovf_name, digest)
            logger.info(f"Writing {self.config.manifest.upper()} manifest {self.config.name}.mf...")
            with open(self._target(".mf"), "w") as f:
                f.writelines(self._manifest)

        if self.config.format == "ova":
            self._pack_ova([f.path for f in ovf_files])
            logger.info(f"Completed export to Open Virtualization Archive (OVA): {self.config.name}.ova")
        else:
            logger.info(f"Completed export to Open Virtualization Format (OVF): {ovf_name}")
        return StepAction.CONTINUE

    @staticmethod
    def _abort(lease: Any, error: BaseException) -> None:
        try:
            lease.HttpNfcLeaseAbort(fault=vmodl.fault.SystemError(reason=str(error)))
        except vmodl.MethodFault as e:
            logger.warning(f"Unable to abort export lease: {parse_fault(e)}")

    def _pack_ova(self, disk_paths: List[str]) -> None:
        """Tar the descriptor, the manifest and the disks, in that order, then drop the loose files."""
        logger.info("Converting to Open Virtualization Archive (OVA)...")
        members = [self.config.name + ".ovf"]
        if os.path.exists(self._target(".mf")):
            members.append(self.config.name + ".mf")
        members += disk_paths

        with tarfile.open(self._target(".ova"), "w") as tar:
            for member in members:
                tar.add(os.path.join(self.output_directory, member), arcname=member)

        logger.info("Removing intermediate files...")
        for path in disk_paths + [self.config.name + s for s in INTERMEDIATE_SUFFIXES]:
            try:
                os.remove(os.path.join(self.output_directory, path))
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Unable to remove file {path}: {e}")

    def cleanup(self, state: StateBag) -> None:
        if not state.interrupted or not self._created:
            return
        logger.info(f"Removing partial export {self.output_directory}...")
        shutil.rmtree(self.output_directory, ignore_errors=True)

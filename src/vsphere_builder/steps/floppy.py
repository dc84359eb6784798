"""Floppy images: build from local files, upload next to the VM, attach, and remove after provisioning."""

import glob
import logging
import os
import random
import shutil
import subprocess
import tempfile
from typing import List, Optional, Tuple

from vsphere_builder.config import FloppyConfig, LocationConfig
from vsphere_builder.errors import BuildError, DriverError
from vsphere_builder.pipeline import (
    STATE_FLOPPY_PATH,
    STATE_UPLOADED_FLOPPY_PATH,
    STATE_VM,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)
from vsphere_builder.steps.common import target_datastore

logger = logging.getLogger(__name__)

MKFS_TOOLS = ("mkfs.fat", "mkfs.vfat", "mkdosfs")


def floppy_upload_name() -> str:
    return f"vsphere-builder-{random.randint(1000000000, 9999999999)}.flp"


def find_floppy_tools() -> Tuple[Optional[str], Optional[str]]:
    """Locate a FAT formatter and mtools' ``mcopy``."""
    mkfs = next((path for path in map(shutil.which, MKFS_TOOLS) if path), None)
    return mkfs, shutil.which("mcopy")


class StepCreateFloppy(Step):
    """Build a 1.44MB FAT12 image from ``floppy.files``, ``floppy.dirs`` and ``floppy.content``."""

    name = "create-floppy"

    def __init__(self, config: FloppyConfig):
        self.config = config
        self._tmpdir: Optional[str] = None

    def _stage(self, staging: str) -> None:
        for pattern in self.config.files:
            matches = sorted(glob.glob(pattern)) or [pattern]
            for src in matches:
                if not os.path.isfile(src):
                    raise BuildError(f"floppy file {src} does not exist")
                shutil.copy2(src, os.path.join(staging, os.path.basename(src)))

        for src in self.config.dirs:
            if not os.path.isdir(src):
                raise BuildError(f"floppy directory {src} does not exist")
            dst = os.path.join(staging, os.path.basename(os.path.normpath(src)))
            shutil.copytree(src, dst, dirs_exist_ok=True)

        # inline content is written last so it replaces copied files
        for path, text in self.config.content.items():
            dst = os.path.join(staging, path.lstrip("/"))
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            with open(dst, "w") as f:
                f.write(text)

    def _run(self, cmd: List[str]) -> None:
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=600)
        except subprocess.CalledProcessError as e:
            raise BuildError(f"error creating floppy: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise BuildError("timeout creating floppy") from e

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.config.has_files:
            return StepAction.CONTINUE
        mkfs, mcopy = find_floppy_tools()
        if mkfs is None or mcopy is None:
            raise BuildError(
                f"could not find floppy creation tools; install mtools and one of: {', '.join(MKFS_TOOLS)}"
            )

        self._tmpdir = tempfile.mkdtemp(prefix="vsphere-builder-floppy-")
        staging = os.path.join(self._tmpdir, "files")
        os.makedirs(staging)
        self._stage(staging)
        entries = sorted(os.listdir(staging))
        logger.info(f"Creating floppy from {len(entries)} file(s) and directories")

        image = os.path.join(self._tmpdir, "vsphere-builder.flp")
        self._run([mkfs, "-C", "-n", self.config.label, image, "1440"])
        if entries:
            self._run([mcopy, "-i", image, "-s", "-o", *[os.path.join(staging, e) for e in entries], "::/"])

        state.put(STATE_FLOPPY_PATH, image)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if self._tmpdir is None:
            return
        shutil.rmtree(self._tmpdir, ignore_errors=True)
        self._tmpdir = None


class StepAddFloppy(Step):
    name = "add-floppy"

    def __init__(self, config: FloppyConfig, location: LocationConfig):
        self.config = config
        self.location = location

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        local_path = state.get(STATE_FLOPPY_PATH) or self.config.local_path

        if local_path:
            logger.info("Uploading floppy image...")
            ds = target_datastore(state, host=self.location.host, location_datastore=self.location.datastore)
            upload_path = f"{vm.get_dir()}/{floppy_upload_name()}"
            ds.upload_file(local_path, upload_path, self.location.host, self.location.set_host_for_datastore_uploads)
            state.put(STATE_UPLOADED_FLOPPY_PATH, upload_path)
            logger.info("Adding generated floppy image...")
            vm.add_floppy(ds.resolve_path(upload_path))

        if self.config.img_path:
            logger.info("Adding floppy image...")
            vm.add_floppy(self.config.img_path)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if not state.interrupted:
            return
        uploaded = state.get(STATE_UPLOADED_FLOPPY_PATH)
        if not uploaded:
            return
        logger.info("Deleting floppy image...")
        try:
            ds = target_datastore(state, host=self.location.host, location_datastore=self.location.datastore)
            ds.delete(uploaded)
        except DriverError as e:
            logger.error(f"Error deleting floppy image {uploaded}: {e}")


class StepRemoveFloppy(Step):
    name = "remove-floppy"

    def __init__(self, location: LocationConfig):
        self.location = location

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        vm = state.require(STATE_VM)
        logger.info("Removing floppy drives...")
        vm.remove_floppy()

        uploaded = state.get(STATE_UPLOADED_FLOPPY_PATH)
        if uploaded:
            logger.info("Deleting floppy image...")
            ds = target_datastore(state, host=self.location.host, location_datastore=self.location.datastore)
            ds.delete(uploaded)
            state.delete(STATE_UPLOADED_FLOPPY_PATH)
        return StepAction.CONTINUE

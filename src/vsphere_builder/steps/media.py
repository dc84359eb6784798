"""
Boot media: download ISOs into the local cache, build an ISO from local
files and upload both into the datastore cache.
"""

import glob
import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

from vsphere_builder.cache import LocalCache, RemoteCache, UploadedObject
from vsphere_builder.config import CDConfig, IsoConfig, LocationConfig
from vsphere_builder.errors import BuildError, DriverError
from vsphere_builder.pipeline import (
    STATE_CD_PATH,
    STATE_DRIVER,
    STATE_ISO_PATH,
    STATE_ISO_REMOTE_PATH,
    STATE_REMOTE_CACHE_CLEANUP,
    STATE_SOURCE_IMAGE_URL,
    STATE_UPLOADS,
    BuildContext,
    StateBag,
    Step,
    StepAction,
)
from vsphere_builder.steps.common import target_datastore

logger = logging.getLogger(__name__)

ISO_TOOLS = ("xorriso", "mkisofs", "genisoimage")


def _remote_cache(state: StateBag, iso: IsoConfig, location: LocationConfig) -> RemoteCache:
    ds = target_datastore(state, iso.remote_cache_datastore, location.host, location.datastore)
    return RemoteCache(ds, iso.remote_cache_path, location.host, location.set_host_for_datastore_uploads)


class StepDownload(Step):
    """Fetch the first reachable ISO URL, unless the remote cache already has it."""

    name = "download"

    def __init__(self, iso: IsoConfig, location: LocationConfig):
        self.iso = iso
        self.location = location

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        local = LocalCache(self.iso.local_cache_dir)
        remote = _remote_cache(state, self.iso, self.location)

        errors = []
        for url in self.iso.iso_urls:
            target = local.local_source(url) or local.target_path(url)
            filename, remote_path, remote_dir, _ = remote.paths(target)

            if remote.contains(target):
                if not self.iso.remote_cache_overwrite:
                    logger.info(f"Skipping download, {filename} already exists in remote cache")
                    self._found(state, target, url)
                    return StepAction.CONTINUE
                if self.iso.local_cache_overwrite:
                    logger.info("Local cache overwrite is set; the remote cache copy is replaced as well")
                logger.info(f"Overwriting {filename} in remote cache {remote_dir}")
                remote.delete(remote_path)

            try:
                path = local.fetch(url, self.iso.iso_checksum, self.iso.local_cache_overwrite, ctx)
            except BuildError as e:
                if ctx.cancelled:
                    raise
                logger.warning(f"Download of {url} failed: {e}")
                errors.append(f"{url}: {e}")
                continue
            self._found(state, path, url)
            return StepAction.CONTINUE

        raise BuildError("error downloading ISO: " + "; ".join(errors))

    @staticmethod
    def _found(state: StateBag, path: str, url: str) -> None:
        state.put(STATE_ISO_PATH, path)
        state.put(STATE_SOURCE_IMAGE_URL, url)


def find_iso_tool() -> Optional[str]:
    for tool in ISO_TOOLS:
        path = shutil.which(tool)
        if path:
            return path
    return None


class StepCreateCD(Step):
    """Pack ``cd.files`` into an ISO image in a temporary directory."""

    name = "create-cd"

    def __init__(self, cd: CDConfig):
        self.cd = cd
        self._tmpdir: Optional[str] = None

    def _collect(self, staging: str) -> List[str]:
        copied = []
        for pattern in self.cd.files:
            matches = sorted(glob.glob(pattern)) or [pattern]
            for src in matches:
                if not os.path.exists(src):
                    raise BuildError(f"cd file {src} does not exist")
                dst = os.path.join(staging, os.path.basename(src.rstrip("/")))
                if os.path.isdir(src):
                    shutil.copytree(src, dst, dirs_exist_ok=True)
                else:
                    shutil.copy2(src, dst)
                copied.append(src)
        return copied

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        if not self.cd.files:
            return StepAction.CONTINUE
        tool = find_iso_tool()
        if tool is None:
            raise BuildError(f"could not find an ISO creation tool; install one of: {', '.join(ISO_TOOLS)}")

        self._tmpdir = tempfile.mkdtemp(prefix="vsphere-builder-cd-")
        staging = os.path.join(self._tmpdir, "files")
        os.makedirs(staging)
        copied = self._collect(staging)
        logger.info(f"Creating CD from {len(copied)} file(s)")

        iso_path = os.path.join(self._tmpdir, "vsphere-builder-cd.iso")
        cmd = [tool]
        if os.path.basename(tool) == "xorriso":
            cmd += ["-as", "mkisofs"]
        cmd += ["-joliet", "-rock", "-o", iso_path]
        if self.cd.label:
            cmd += ["-volid", self.cd.label]
        cmd.append(staging)

        logger.debug(f"Running {' '.join(cmd)}")
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=600)
        except subprocess.CalledProcessError as e:
            raise BuildError(f"error creating CD: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise BuildError("timeout creating CD") from e

        state.put(STATE_CD_PATH, iso_path)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if self._tmpdir is None:
            return
        shutil.rmtree(self._tmpdir, ignore_errors=True)
        self._tmpdir = None


class StepRemoteUpload(Step):
    """Upload the ISO and the generated CD into the datastore cache."""

    name = "remote-upload"

    def __init__(self, iso: IsoConfig, location: LocationConfig):
        self.iso = iso
        self.location = location

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        uploads: List[UploadedObject] = state.get(STATE_UPLOADS) or []
        state.put(STATE_UPLOADS, uploads)

        iso_path = state.get(STATE_ISO_PATH)
        cd_path = state.get(STATE_CD_PATH)
        if not iso_path and not cd_path:
            return StepAction.CONTINUE

        cache = _remote_cache(state, self.iso, self.location)
        if iso_path:
            record = cache.upload(iso_path, self.iso.remote_cache_overwrite)
            uploads.append(record)
            state.put(STATE_ISO_REMOTE_PATH, record.remote_path)
        if cd_path:
            record = cache.upload(cd_path, self.iso.remote_cache_overwrite)
            uploads.append(record)
            state.put(STATE_CD_PATH, record.remote_path)

        if self.iso.remote_cache_cleanup:
            state.put(STATE_REMOTE_CACHE_CLEANUP, True)
        return StepAction.CONTINUE

    def cleanup(self, state: StateBag) -> None:
        if not state.interrupted and not state.get(STATE_REMOTE_CACHE_CLEANUP):
            return
        uploaded = [u for u in state.get(STATE_UPLOADS) or [] if u.uploaded]
        if not uploaded:
            return

        driver = state.get(STATE_DRIVER)
        for record in uploaded:
            logger.info(f"Removing {record.remote_path}...")
            try:
                driver.find_datastore(record.datastore).delete(record.remote_path)
            except DriverError as e:
                logger.error(f"Unable to remove item from the remote cache. Please remove the item manually: {e}")

"""
Datastore access: stat, mkdir, delete and HTTP upload through ``/folder``.

Paths passed to the methods are relative to the datastore root
(``dir/file.iso``); ``resolve_path`` turns them into ``[ds] dir/file.iso``.
"""

import logging
import os
import posixpath
import re
from typing import Any, Dict, Optional, Tuple

import requests
from pyVmomi import vim, vmodl

from vsphere_builder.driver.tasks import run_task
from vsphere_builder.errors import DriverError, TaskError, parse_fault

logger = logging.getLogger(__name__)

_DATASTORE_PATH = re.compile(r"^\s*\[([^\]]*)\]\s*(.*)$")
_ISO_PATH = re.compile(r"^\s*(\[[^\[\]/]*\])?\s*[^\[\]]+\s*$")


def split_datastore_path(path: str) -> Tuple[str, str]:
    """``"[ds] dir/f.iso"`` -> ``("ds", "dir/f.iso")``; no prefix gives ``("", path)``."""
    match = _DATASTORE_PATH.match(path)
    if not match:
        return "", path
    return match.group(1), match.group(2).strip()


def remove_datastore_prefix(path: str) -> str:
    return split_datastore_path(path)[1]


def is_valid_iso_path(path: str) -> bool:
    """True for ``"[ds] dir/f.iso"`` or ``"dir/f.iso"``."""
    return bool(_ISO_PATH.match(path))


def _is_not_found(error: BaseException) -> bool:
    fault = getattr(error, "fault", error)
    return isinstance(fault, (vim.fault.FileNotFound, vim.fault.NotFound))


class Datastore:
    """A ``vim.Datastore`` bound to the driver that found it."""

    def __init__(self, ref: Any, driver: Any):
        self.ref = ref
        self.driver = driver
        self._name: Optional[str] = None

    @property
    def name(self) -> str:
        if self._name is None:
            self._name = self.ref.name
        return self._name

    def __repr__(self) -> str:
        return f"<Datastore {self.name}>"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Datastore) and other.ref == self.ref

    def __hash__(self) -> int:
        return hash(self.ref)

    def info(self, *paths: str) -> Dict[str, Any]:
        return self.driver.properties(self.ref, *paths)

    def resolve_path(self, path: str) -> str:
        path = remove_datastore_prefix(path)
        return f"[{self.name}] {path}" if path else f"[{self.name}]"

    def _search(self, directory: str, pattern: Optional[str] = None) -> Any:
        spec = vim.host.DatastoreBrowser.SearchSpec()
        if pattern:
            spec.matchPattern = [pattern]
        return run_task(
            self.ref.browser.SearchDatastore_Task,
            datastorePath=self.resolve_path(directory),
            searchSpec=spec,
        )

    def file_exists(self, path: str) -> bool:
        path = remove_datastore_prefix(path)
        directory, filename = posixpath.split(path)
        try:
            result = self._search(directory, filename)
        except TaskError as e:
            if _is_not_found(e):
                return False
            raise
        return any(f.path == filename for f in result.file or [])

    def dir_exists(self, path: str) -> bool:
        try:
            self._search(remove_datastore_prefix(path))
        except TaskError as e:
            if _is_not_found(e):
                return False
            raise
        return True

    def make_directory(self, path: str) -> None:
        remote = self.resolve_path(path)
        logger.info(f"Creating datastore directory {remote}")
        try:
            self.driver.content.fileManager.MakeDirectory(
                name=remote,
                datacenter=self.driver.datacenter,
                createParentDirectories=True,
            )
        except vim.fault.FileAlreadyExists:
            logger.debug(f"{remote} already exists")
        except vmodl.MethodFault as e:
            raise DriverError(f"error creating directory {remote}: {parse_fault(e)}") from e

    def delete(self, path: str) -> None:
        remote = self.resolve_path(path)
        logger.info(f"Deleting {remote}")
        run_task(
            self.driver.content.fileManager.DeleteDatastoreFile_Task,
            name=remote,
            datacenter=self.driver.datacenter,
        )

    def upload_file(self, src: str, dst: str, host: str = "", set_host: bool = False) -> None:
        """PUT a local file to ``dst`` on this datastore.

        With ``set_host`` the transfer goes straight to the ESXi host using a
        generic service ticket instead of through vCenter.
        """
        dst = remove_datastore_prefix(dst)
        server = self.driver.config.server
        headers = {"Content-Type": "application/octet-stream"}
        if set_host and host:
            server = host
        url = f"https://{server}/folder/{dst}"
        params = {"dcPath": self.driver.datacenter_name, "dsName": self.name}

        if set_host and host:
            ticket = self.driver.content.sessionManager.AcquireGenericServiceTicket(
                spec=vim.SessionManager.HttpServiceRequestSpec(method="httpPut", url=url)
            )
            headers["Cookie"] = f"vmware_cgi_ticket={ticket.id}"
        else:
            headers["Cookie"] = self.driver.session_cookie

        size = os.path.getsize(src)
        logger.info(f"Uploading {src} ({size} bytes) to {self.resolve_path(dst)}")
        with open(src, "rb") as f:
            response = requests.put(
                url,
                params=params,
                data=f,
                headers=headers,
                verify=not self.driver.config.insecure,
            )
        if response.status_code not in (200, 201):
            raise DriverError(
                f"upload of {src} to {self.resolve_path(dst)} failed: "
                f"HTTP {response.status_code} {response.text[:200]}"
            )

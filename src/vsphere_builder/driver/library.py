"""
Content library client for the vSphere Automation REST API.

Every public operation opens its own REST session (login, operation,
logout). Publishing is asynchronous: the request is submitted with
``vmw-task=true`` and the returned CIS task is polled until it settles.
"""

import logging
import time
from contextlib import contextmanager, nullcontext
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests

from vsphere_builder.errors import ContentLibraryError, PublishTimeoutError, TaskCancelledError

logger = logging.getLogger(__name__)

SESSION_HEADER = "vmware-api-session-id"
TASK_POLL_INTERVAL = 5.0


class ContentLibraryClient:
    """REST session against ``https://<server>/api``."""

    def __init__(self, config: Any, poll_interval: float = TASK_POLL_INTERVAL):
        self.base_url = f"https://{config.server}/api"
        self.username = config.username
        self.password = config.password
        self.poll_interval = poll_interval
        self.http = requests.Session()
        self.http.verify = not config.insecure
        self._token: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.http.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            raise ContentLibraryError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise ContentLibraryError(f"{method} {path} failed: HTTP {response.status_code} {_error_text(response)}")
        return response

    def login(self) -> None:
        try:
            response = self._request("POST", "/session", auth=(self.username, self.password))
        except ContentLibraryError as e:
            raise ContentLibraryError(f"content library login failed: {e}") from e
        self._token = response.json()
        self.http.headers[SESSION_HEADER] = self._token

    def logout(self) -> None:
        if self._token is None:
            return
        try:
            self._request("DELETE", "/session")
        finally:
            self._token = None
            self.http.headers.pop(SESSION_HEADER, None)

    def close(self) -> None:
        self.logout()
        self.http.close()

    @contextmanager
    def session(self) -> Iterator["ContentLibraryClient"]:
        """Login, yield, logout. A failed logout never hides the operation's outcome."""
        self.login()
        try:
            yield self
        finally:
            try:
                self.logout()
            except ContentLibraryError as e:
                logger.warning(f"Cannot logout: {e}")

    # Lookups; callers must hold a session

    def find_library(self, name: str) -> Dict[str, Any]:
        ids = self._request("POST", "/content/library", params={"action": "find"}, json={"name": name}).json()
        if not ids:
            raise ContentLibraryError(f"content library '{name}' not found")
        return self._request("GET", f"/content/library/{ids[0]}").json()

    def find_local_library(self, name: str) -> Dict[str, Any]:
        library = self.find_library(name)
        if library.get("type") != "LOCAL":
            raise ContentLibraryError(
                f"cannot deploy a VM to the content library {name} of type {library.get('type')}; "
                "the content library must be of type LOCAL"
            )
        return library

    def find_item(self, library_id: str, name: str) -> Optional[Dict[str, Any]]:
        ids = self._request(
            "POST",
            "/content/library/item",
            params={"action": "find"},
            json={"library_id": library_id, "name": name},
        ).json()
        if not ids:
            return None
        return self._request("GET", f"/content/library/item/{ids[0]}").json()

    def update_item(self, item_id: str, name: str, description: str) -> None:
        self._request("PATCH", f"/content/library/item/{item_id}", json={"name": name, "description": description})

    def item_files(self, item_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", "/content/library/item/file", params={"library_item_id": item_id}).json()

    # Publishing

    def import_ovf(
        self,
        vm_id: str,
        library: str,
        name: str,
        description: str,
        flags: Sequence[str] = (),
        timeout: float = 1800,
        ctx: Any = None,
    ) -> Any:
        """Export a VM as an OVF library item, updating an item of the same name."""
        with self.session():
            lib = self.find_local_library(library)
            target: Dict[str, Any] = {"library_id": lib["id"]}
            item = self.find_item(lib["id"], name)
            if item is not None:
                target["library_item_id"] = item["id"]
                if item.get("description") is not None and item.get("description") != description:
                    logger.info(f"Updating description of content library item '{name}'")
                    self.update_item(item["id"], name, description)

            body = {
                "source": {"type": "VirtualMachine", "id": vm_id},
                "target": target,
                "create_spec": {"name": name, "description": description, "flags": list(flags)},
            }
            logger.info(f"Importing VM {vm_id} as OVF template '{name}' into library '{library}'")
            task_id = self._request("POST", "/vcenter/ovf/library-item", params={"vmw-task": "true"}, json=body).json()
            return self.wait_task(task_id, timeout, ctx)

    def import_template(
        self,
        vm_id: str,
        library: str,
        name: str,
        description: str,
        placement: Dict[str, str],
        datastore_id: str = "",
        timeout: float = 1800,
        ctx: Any = None,
    ) -> Any:
        """Publish a VM as a VM template library item."""
        with self.session():
            lib = self.find_local_library(library)
            body: Dict[str, Any] = {
                "source_vm": vm_id,
                "library": lib["id"],
                "name": name,
                "description": description,
            }
            if placement:
                body["placement"] = dict(placement)
            if datastore_id:
                body["vm_home_storage"] = {"datastore": datastore_id}
            logger.info(f"Importing VM {vm_id} as VM template '{name}' into library '{library}'")
            task_id = self._request(
                "POST", "/vcenter/vm-template/library-items", params={"vmw-task": "true"}, json=body
            ).json()
            return self.wait_task(task_id, timeout, ctx)

    def wait_task(self, task_id: str, timeout: float, ctx: Any = None) -> Any:
        """Poll a CIS task until SUCCEEDED or FAILED.

        Raises:
            ContentLibraryError: The task failed.
            PublishTimeoutError: ``timeout`` elapsed.
            TaskCancelledError: ``ctx`` was cancelled while watching.
        """
        deadline = time.time() + timeout
        with ctx.watching() if ctx is not None else nullcontext():
            while True:
                task = self._request("GET", f"/cis/tasks/{task_id}").json()
                status = task.get("status")
                if status == "SUCCEEDED":
                    logger.info(f"Publish task {task_id} succeeded")
                    return task.get("result")
                if status == "FAILED":
                    raise ContentLibraryError(f"publish task failed: {_task_error(task)}")
                if time.time() >= deadline:
                    raise PublishTimeoutError(f"publish task {task_id} did not finish within {timeout:g}s")
                logger.debug(f"Publish task {task_id} is {status}")
                cancelled = ctx.wait(self.poll_interval) if ctx is not None else _sleep(self.poll_interval)
                if cancelled:
                    self._cancel_task(task_id)
                    raise TaskCancelledError("content library publish cancelled")

    def _cancel_task(self, task_id: str) -> None:
        try:
            self._request("POST", f"/cis/tasks/{task_id}", params={"action": "cancel"})
        except ContentLibraryError as e:
            logger.warning(f"Could not cancel publish task {task_id}: {e}")

    # Item metadata

    def item_uuid(self, library: str, name: str) -> str:
        with self.session():
            lib = self.find_library(library)
            item = self.find_item(lib["id"], name)
            if item is None:
                raise ContentLibraryError(f"content library item {name} not found")
            return item["id"]

    def datastore_ids(self, library: str) -> List[str]:
        with self.session():
            lib = self.find_library(library)
            return [b["datastore_id"] for b in lib.get("storage_backings") or [] if b.get("datastore_id")]

    def iso_datastore_path(self, path: str, datastore_name: Any) -> Optional[str]:
        """Map ``library/item/file.iso`` to the datastore path of that file.

        ``datastore_name`` converts a datastore id into its name. Returns None
        when ``path`` is not a content library path.
        """
        parts = path.strip("/").split("/")
        if len(parts) != 3:
            return None
        library_name, item_name, file_name = parts
        with self.session():
            try:
                lib = self.find_library(library_name)
            except ContentLibraryError:
                logger.debug(f"{path} is not a content library path")
                return None
            item = self.find_item(lib["id"], item_name)
            if item is None:
                logger.warning(f"Content library item {item_name} not found")
                return None
            backings = lib.get("storage_backings") or []
            if not backings:
                logger.warning(f"Datastore not found for content library {library_name}")
                return None
            # Files are stored as <stem>_<suffix>.<ext>
            stem, dot, ext = file_name.rpartition(".")
            if not dot:
                stem, ext = file_name, ""
            stored = next(
                (
                    f["name"]
                    for f in self.item_files(item["id"])
                    if f.get("name", "").startswith(stem) and f.get("name", "").endswith(ext)
                ),
                file_name,
            )
        ds_name = datastore_name(backings[0]["datastore_id"])
        return f"[{ds_name}] contentlib-{lib['id']}/{item['id']}/{stored}"


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        messages = body.get("messages") or []
        if messages:
            return messages[0].get("default_message", "")
        return body.get("error_type", "")
    return str(body)[:200]


def _task_error(task: Dict[str, Any]) -> str:
    error = task.get("error") or {}
    messages = error.get("messages") or []
    if messages:
        return messages[0].get("default_message", "unknown error")
    return error.get("error_type", "unknown error")


def _sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return False

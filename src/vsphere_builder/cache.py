"""
Local download cache and remote datastore cache.

Boot media is downloaded once into a local cache directory and uploaded once
into a cache directory on a datastore. Both caches reuse what they already
hold unless asked to overwrite it.
"""

import hashlib
import logging
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple
from urllib.parse import urlparse

import requests

from vsphere_builder.config import DEFAULT_REMOTE_CACHE_PATH
from vsphere_builder.driver.datastore import Datastore
from vsphere_builder.errors import BuildError, ChecksumError, TaskCancelledError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
HASH_TYPES = ("md5", "sha1", "sha256", "sha512")
# Bare hex digests are recognised by length
_HASH_BY_LENGTH = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}


@dataclass(frozen=True)
class UploadedObject:
    """A file placed in the remote cache. ``uploaded`` is True only if this run sent it."""

    local_path: str
    remote_path: str
    datastore: str
    uploaded: bool


class RemoteCache:
    """Cache directory on a datastore, ``[ds] <cache_path>/<file>``."""

    def __init__(
        self,
        datastore: Datastore,
        cache_path: str = DEFAULT_REMOTE_CACHE_PATH,
        host: Optional[str] = None,
        set_host: bool = False,
    ):
        self.datastore = datastore
        self.cache_path = (cache_path or DEFAULT_REMOTE_CACHE_PATH).strip("/")
        self.host = host or ""
        self.set_host = set_host

    def paths(self, local_path: str) -> Tuple[str, str, str, str]:
        """Return ``(filename, remote_path, remote_dir, full_remote_path)``."""
        filename = os.path.basename(local_path)
        remote_path = f"{self.cache_path}/{filename}"
        remote_dir = f"[{self.datastore.name}] {self.cache_path}"
        return filename, remote_path, remote_dir, f"{remote_dir}/{filename}"

    def contains(self, local_path: str) -> bool:
        _, remote_path, _, _ = self.paths(local_path)
        return self.datastore.file_exists(remote_path)

    def delete(self, remote_path: str) -> None:
        self.datastore.delete(remote_path)

    def upload(self, local_path: str, overwrite: bool = False) -> UploadedObject:
        """Place ``local_path`` in the cache, reusing a cached copy unless ``overwrite``."""
        filename, remote_path, remote_dir, full_path = self.paths(local_path)

        if self.datastore.file_exists(remote_path):
            if not overwrite:
                logger.info(f"Skipping upload, {full_path} already exists in remote cache")
                return UploadedObject(local_path, full_path, self.datastore.name, uploaded=False)
            logger.info(f"Overwriting {filename} in remote cache {remote_dir}")
            self.datastore.delete(remote_path)

        if not self.datastore.dir_exists(self.cache_path):
            logger.info(f"Remote cache directory does not exist; creating {remote_dir}")
            self.datastore.make_directory(self.cache_path)

        logger.info(f"Uploading {filename} to {remote_dir}")
        self.datastore.upload_file(local_path, remote_path, self.host, self.set_host)
        return UploadedObject(local_path, full_path, self.datastore.name, uploaded=True)


def parse_checksum(checksum: str, url: str = "") -> Optional[Tuple[str, str]]:
    """Return ``(hash_type, hexdigest)``, or None for ``none``.

    ``file:<url>`` reads the digest of ``url``'s file name from a checksum file.
    """
    checksum = (checksum or "").strip()
    if not checksum or checksum.lower() == "none":
        return None
    kind, sep, value = checksum.partition(":")
    if sep and kind.lower() == "file":
        return _checksum_from_file(value, url)
    if sep and kind.lower() in HASH_TYPES:
        return kind.lower(), value.strip().lower()
    if not sep and len(checksum) in _HASH_BY_LENGTH:
        return _HASH_BY_LENGTH[len(checksum)], checksum.lower()
    raise ChecksumError(f"unsupported checksum '{checksum}'; use <type>:<hex>, file:<url> or none")


def _checksum_from_file(source: str, url: str) -> Tuple[str, str]:
    if source.startswith(("http://", "https://")):
        try:
            response = requests.get(source, timeout=60)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ChecksumError(f"cannot read checksum file {source}: {e}") from e
        text = response.text
    else:
        text = Path(source.replace("file://", "", 1)).read_text()

    name = posixpath.basename(urlparse(url).path)
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        # "<hex>  <name>" or "<hex> *<name>"
        if parts[-1].lstrip("*").lstrip("./") == name and len(parts[0]) in _HASH_BY_LENGTH:
            return _HASH_BY_LENGTH[len(parts[0])], parts[0].lower()
        # BSD style: "SHA256 (<name>) = <hex>"
        if parts[0].lower() in HASH_TYPES and parts[1] == f"({name})":
            return parts[0].lower(), parts[-1].lower()
    raise ChecksumError(f"no checksum for {name} found in {source}")


def file_digest(path: str, hash_type: str) -> str:
    digest = hashlib.new(hash_type)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class LocalCache:
    """Download cache on the build machine; files are named after their URL."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def target_path(self, url: str) -> str:
        """Cache file for ``url``: sha1 of the URL plus the URL's extension."""
        ext = posixpath.splitext(urlparse(url).path)[1]
        return str(self.directory / (hashlib.sha1(url.encode()).hexdigest() + ext))

    @staticmethod
    def local_source(url: str) -> Optional[str]:
        """Path for ``file://`` URLs and plain paths, None for remote URLs."""
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return parsed.path
        # No scheme, or a Windows drive letter
        if not parsed.scheme or len(parsed.scheme) == 1:
            return url
        return None

    def fetch(self, url: str, checksum: str = "none", overwrite: bool = False, ctx: Any = None) -> str:
        """Return a verified local copy of ``url``, downloading it if needed.

        Raises:
            ChecksumError: The file does not match ``checksum``; it is removed.
            TaskCancelledError: ``ctx`` was cancelled during the download.
        """
        expected = parse_checksum(checksum, url)

        local = self.local_source(url)
        if local is not None:
            if not os.path.isfile(local):
                raise BuildError(f"{local} does not exist")
            self._verify(local, expected, remove=False)
            return local

        target = self.target_path(url)
        if os.path.isfile(target):
            if not overwrite:
                logger.info(f"Using {os.path.basename(target)} from local cache")
                self._verify(target, expected)
                return target
            logger.info(f"Overwriting {os.path.basename(target)} in local cache")
            os.remove(target)

        self.directory.mkdir(parents=True, exist_ok=True)
        partial = f"{target}.part"
        logger.info(f"Downloading {url}")
        try:
            with requests.get(url, stream=True, timeout=60) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if ctx is not None and ctx.cancelled:
                            raise TaskCancelledError(f"download of {url} cancelled")
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as e:
            _remove_quietly(partial)
            raise BuildError(f"error downloading {url}: {e}") from e
        except TaskCancelledError:
            _remove_quietly(partial)
            raise
        os.replace(partial, target)
        logger.info(f"Downloaded {url} to {target}")

        self._verify(target, expected)
        return target

    @staticmethod
    def _verify(path: str, expected: Optional[Tuple[str, str]], remove: bool = True) -> None:
        if expected is None:
            return
        hash_type, value = expected
        actual = file_digest(path, hash_type)
        if actual != value:
            if remove:
                _remove_quietly(path)
            raise ChecksumError(f"{hash_type} checksum mismatch for {path}: expected {value}, got {actual}")
        logger.debug(f"{hash_type} checksum of {path} verified")


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass

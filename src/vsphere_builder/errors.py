"""Error types raised by the build pipeline, the driver and the resolver."""

import re
from typing import List, Optional

_FAULT_MSG = re.compile(r"msg\s*=\s*'([^']+)'")


class BuildError(Exception):
    """Base class for every error surfaced by a build."""


class ConfigError(BuildError):
    """One or more configuration problems, reported together."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("invalid configuration:\n  - " + "\n  - ".join(self.errors))


class MissingStateError(BuildError):
    """A required state bag key is absent or has the wrong type."""


class StepError(BuildError):
    """The error a build run ended with, tagged with the step that failed."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"step '{step}' failed: {cause}")


class DriverError(BuildError):
    """A remote management API call failed."""


class TaskError(DriverError):
    """A remote task finished in the error state."""

    def __init__(self, message: str, fault: Optional[object] = None):
        self.fault = fault
        super().__init__(message)


class TaskCancelledError(DriverError):
    """The caller cancelled while a remote task was still running."""


class NotFoundError(DriverError):
    """An inventory object could not be located by name or path."""


class VAppConfigError(DriverError):
    """vApp properties were rejected before any change was sent."""


class ContentLibraryError(DriverError):
    """A content library REST call failed."""


class ResolverError(BuildError):
    """A user supplied name could not be resolved to a single remote object."""


class MultipleNetworkFoundError(ResolverError):
    """More than one network matches the requested name."""

    def __init__(self, name: str, detail: str):
        self.name = name
        self.detail = detail
        super().__init__(f"'{name}' resolves to more than one network name; {detail}")


class WaitTimeoutError(BuildError):
    """A poll loop ran past its deadline."""


class TaskTimeoutError(WaitTimeoutError):
    """A remote task did not finish in time."""


class ShutdownTimeoutError(WaitTimeoutError):
    """The guest did not power off in time."""


class IPWaitTimeoutError(WaitTimeoutError):
    """The guest did not report a usable IP address in time."""


class PublishTimeoutError(WaitTimeoutError):
    """A content library publish task did not finish in time."""


class ChecksumError(BuildError):
    """A downloaded file does not match its expected checksum."""


class ProvisionError(BuildError):
    """A provisioning command failed on the guest."""


def parse_fault(error: BaseException) -> str:
    """Return the human readable part of a pyVmomi fault.

    Faults render as a long repr; the useful text sits in ``msg = '...'``.
    Falls back to the plain string form of the error.
    """
    msg = getattr(error, "msg", None)
    if isinstance(msg, str) and msg:
        return msg
    text = str(error)
    match = _FAULT_MSG.search(text)
    if match:
        return match.group(1)
    return text or type(error).__name__

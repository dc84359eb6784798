"""
Step pipeline: the shared state bag, the per-run context and the runner.

A build is an ordered list of steps. Each step reads and writes the state bag
and returns CONTINUE or HALT. The runner stops at the first HALT (or at a step
boundary once the run has been cancelled) and then calls ``cleanup`` on every
step that was started, last one first.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, List, Optional, Sequence

from vsphere_builder.errors import MissingStateError, TaskCancelledError

logger = logging.getLogger(__name__)

# Sentinel keys set by the runner
STATE_CANCELLED = "cancelled"
STATE_HALTED = "halted"
STATE_ERROR = "error"
STATE_FAILED_STEP = "failed_step"

# Keys exchanged between steps
STATE_DRIVER = "driver"
STATE_VM = "vm"
STATE_DATASTORE = "datastore"
STATE_DATASTORE_METHOD = "datastore_selection_method"
STATE_ISO_PATH = "iso_path"
STATE_ISO_REMOTE_PATH = "iso_remote_path"
STATE_SOURCE_IMAGE_URL = "source_image_url"
STATE_CD_PATH = "cd_path"
STATE_UPLOADS = "uploads"
STATE_REMOTE_CACHE_CLEANUP = "remote_cache_cleanup"
STATE_FLOPPY_PATH = "floppy_path"
STATE_UPLOADED_FLOPPY_PATH = "uploaded_floppy_path"
STATE_IP = "ip"
STATE_SSH_PRIVATE_KEY = "ssh_private_key"
STATE_SSH_PUBLIC_KEY = "ssh_public_key"
STATE_DESTROY_VM = "destroy_vm"
STATE_LIBRARY_ITEM_UUID = "content_library_item_uuid"
STATE_LIBRARY_DATASTORE = "content_library_datastore"
STATE_METADATA = "metadata"
STATE_SOURCE_TEMPLATE = "source_template"

_MISSING = object()


class StepAction(Enum):
    """What the runner does after a step returns."""

    CONTINUE = "continue"
    HALT = "halt"


class StateBag:
    """Key/value state shared by the steps of one build run."""

    def __init__(self) -> None:
        self._data: dict = {}

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Optional read: returns ``default`` when the key was never written."""
        return self._data.get(key, default)

    def require(self, key: str, expected_type: Optional[type] = None) -> Any:
        """Read a key an earlier step must have produced.

        Raises:
            MissingStateError: If the key is absent or holds the wrong type.
                This points at a mis-assembled pipeline and is never retried.
        """
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            raise MissingStateError(f"required state '{key}' is missing; a previous step did not run")
        if expected_type is not None and not isinstance(value, expected_type):
            raise MissingStateError(
                f"state '{key}' holds {type(value).__name__}, expected {expected_type.__name__}"
            )
        return value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def as_dict(self) -> dict:
        return dict(self._data)

    def put_error(self, error: BaseException) -> None:
        """Record the run's error. Only the first one is kept."""
        if STATE_ERROR in self._data:
            logger.debug(f"Keeping first error, ignoring: {error}")
            return
        self._data[STATE_ERROR] = error

    @property
    def error(self) -> Optional[BaseException]:
        return self._data.get(STATE_ERROR)

    @property
    def cancelled(self) -> bool:
        return bool(self._data.get(STATE_CANCELLED))

    @property
    def halted(self) -> bool:
        return bool(self._data.get(STATE_HALTED))

    @property
    def interrupted(self) -> bool:
        """True when the run was cancelled or halted, i.e. teardown is due."""
        return self.cancelled or self.halted


class BuildContext:
    """Per-run cancellation token and publish-watch flag."""

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._watching_publish = False

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if the run was cancelled meanwhile."""
        return self._cancel.wait(max(seconds, 0))

    @property
    def is_watching_publish(self) -> bool:
        with self._lock:
            return self._watching_publish

    @contextmanager
    def watching(self) -> Iterator[None]:
        """Mark the run as watching a long publish operation."""
        with self._lock:
            self._watching_publish = True
        try:
            yield
        finally:
            with self._lock:
                self._watching_publish = False


class Step:
    """One unit of the pipeline. Subclasses override ``run`` and maybe ``cleanup``."""

    name = "step"

    def run(self, ctx: BuildContext, state: StateBag) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: StateBag) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Runner:
    """Runs steps in order and unwinds the started ones in reverse."""

    def __init__(self, steps: Sequence[Step]):
        self.steps = list(steps)

    def run(self, ctx: BuildContext, state: StateBag) -> None:
        started: List[Step] = []
        try:
            for step in self.steps:
                if ctx.cancelled:
                    logger.warning(f"Build cancelled before step '{step.name}'")
                    state.put(STATE_CANCELLED, True)
                    break

                started.append(step)
                logger.debug(f"Running step '{step.name}'")
                try:
                    action = step.run(ctx, state)
                except TaskCancelledError:
                    logger.warning(f"Step '{step.name}' stopped: build cancelled")
                    state.put(STATE_CANCELLED, True)
                    break
                except Exception as e:
                    logger.error(f"Step '{step.name}' raised: {e}")
                    state.put_error(e)
                    action = StepAction.HALT

                if action is StepAction.HALT and ctx.cancelled and state.error is None:
                    logger.warning(f"Step '{step.name}' stopped: build cancelled")
                    state.put(STATE_CANCELLED, True)
                    break
                if action is StepAction.HALT:
                    state.put(STATE_HALTED, True)
                    state.put(STATE_FAILED_STEP, step.name)
                    break
            else:
                if ctx.cancelled:
                    state.put(STATE_CANCELLED, True)
        finally:
            self._cleanup(started, state)

    @staticmethod
    def _cleanup(started: List[Step], state: StateBag) -> None:
        for step in reversed(started):
            try:
                step.cleanup(state)
            except Exception:
                logger.exception(f"Cleanup of step '{step.name}' failed")

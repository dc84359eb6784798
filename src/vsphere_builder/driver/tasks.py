"""
Submit-and-await for vSphere tasks.

Every mutating call in the driver goes through ``run_task`` so that callers
never hold a raw ``vim.Task``: they get the task result, or an exception.
"""

import logging
import time
from typing import Any, Callable, Optional

from pyVmomi import vim, vmodl

from vsphere_builder.errors import TaskCancelledError, TaskError, TaskTimeoutError, parse_fault

logger = logging.getLogger(__name__)


def task_error_message(error: Any) -> str:
    """Best human readable text of a task's ``info.error`` fault."""
    if error is None:
        return "task failed without an error message"
    msg = getattr(error, "msg", None)
    if isinstance(msg, str) and msg:
        return msg
    localized = getattr(error, "localizedMessage", None)
    if isinstance(localized, str) and localized:
        return localized
    return type(error).__name__


def run_task(
    submit: Callable[..., Any],
    *args: Any,
    ctx: Optional[Any] = None,
    timeout: Optional[float] = None,
    poll_interval: float = 1.0,
    **kwargs: Any,
) -> Any:
    """Submit a task and block until it finishes.

    Args:
        submit: Bound pyVmomi method returning a ``vim.Task``,
            e.g. ``vm.PowerOnVM_Task``.
        ctx: Optional BuildContext; cancellation aborts the wait and cancels
            the remote task.
        timeout: Seconds to wait before giving up, ``None`` for no limit.
        poll_interval: Seconds between ``task.info`` reads.

    Returns:
        ``task.info.result``.

    Raises:
        TaskError: The submit call was rejected or the task ended in error.
        TaskCancelledError: ``ctx`` was cancelled while waiting.
        TaskTimeoutError: ``timeout`` elapsed.
    """
    name = getattr(submit, "__name__", "task")
    try:
        task = submit(*args, **kwargs)
    except vmodl.MethodFault as e:
        raise TaskError(parse_fault(e), fault=e) from e

    deadline = time.time() + timeout if timeout is not None else None
    while True:
        info = task.info
        if info.state == vim.TaskInfo.State.success:
            return info.result
        if info.state == vim.TaskInfo.State.error:
            raise TaskError(task_error_message(info.error), fault=info.error)

        if deadline is not None and time.time() >= deadline:
            raise TaskTimeoutError(f"{name} did not finish within {timeout:g}s")

        if ctx is not None:
            if ctx.wait(poll_interval):
                _cancel(task, name)
                raise TaskCancelledError(f"{name} cancelled")
        else:
            time.sleep(poll_interval)


def _cancel(task: Any, name: str) -> None:
    try:
        task.CancelTask()
    except vmodl.MethodFault as e:
        logger.warning(f"Could not cancel {name}: {parse_fault(e)}")

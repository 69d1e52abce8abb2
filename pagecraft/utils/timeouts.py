"""Explicit timeouts for calls to external collaborators.

Each call runs on its own short-lived daemon thread and the caller waits at
most `timeout` seconds. A call that overruns is not aborted (the collaborator
owns that); its result is simply never used, and it holds no slot that a
later call would have to wait for.
"""

import concurrent.futures
import threading
from typing import Callable, Optional, TypeVar

from ..errors import CollaboratorTimeout

T = TypeVar("T")


def call_with_timeout(operation: Callable[[], T], timeout: Optional[float], label: str) -> T:
    """Run `operation` and raise CollaboratorTimeout if it takes longer than `timeout`."""
    if not timeout or timeout <= 0:
        return operation()
    future: concurrent.futures.Future = concurrent.futures.Future()

    def _worker():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(operation())
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=_worker, name=f"pagecraft-call-{label}", daemon=True).start()
    done, _ = concurrent.futures.wait([future], timeout=timeout)
    if not done:
        raise CollaboratorTimeout(f"{label} timed out after {timeout:g}s")
    return future.result()

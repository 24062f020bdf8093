"""
Per-call timeouts for collaborator I/O.

Every call to the document store, audit ledger or transfer ledger is a
separate suspension point with its own deadline. The call runs on a worker
thread; if the deadline passes, TransientIOError is raised in the caller.
The worker is not interrupted: a transfer already handed to the ledger may
still settle, which is why the distribution executor reports a timed-out
transfer as "outcome unknown".
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from agritrust.core.exceptions import TransientIOError

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="agritrust-io")


def call_with_timeout(
    operation: str,
    func: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Any:
    """
    Run func(*args, **kwargs) with a deadline of `timeout` seconds.

    timeout=None runs the call inline with no deadline.
    Exceptions raised by func propagate unchanged.
    """
    if timeout is None:
        return func(*args, **kwargs)

    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        logger.warning("%s timed out after %.1fs", operation, timeout)
        raise TransientIOError(
            f"{operation} timed out",
            {"timeout_seconds": timeout},
        ) from exc

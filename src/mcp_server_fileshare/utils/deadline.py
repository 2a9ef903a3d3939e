from __future__ import annotations

import concurrent.futures
from concurrent.futures import Future
from typing import TypeVar

from ..errors import OperationTimeout

T = TypeVar("T")


def wait_with_deadline(future: Future[T], *, timeout: float, operation: str) -> T:
    """Wait at most ``timeout`` seconds for ``future``.

    The worker is not interrupted when the deadline passes; the caller simply
    stops waiting and gets OperationTimeout. Exceptions raised by the worker
    propagate unchanged.
    """
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as e:
        future.cancel()
        raise OperationTimeout(operation, timeout) from e


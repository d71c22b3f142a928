from __future__ import annotations

import logging
import time
from collections.abc import Callable

from fnctl.src.errors import FunctionFailedError, NotFoundError, WaitTimeoutError
from fnctl.src.function import Function, FunctionState
from fnctl.src.store import FunctionClient

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.25

Predicate = Callable[[Function], tuple[bool, Exception | None]]


def wait_condition_processed(function: Function) -> tuple[bool, Exception | None]:
    """Done once the controller has looked at the Function.

    ``error`` finishes the wait with the Function's status message as the
    failure, the initial state keeps waiting and any other state succeeds.
    """
    if function.status.state == FunctionState.ERROR:
        return True, FunctionFailedError(function.status.message)
    if function.status.state == FunctionState.CREATED:
        return False, None
    return True, None


def wait_until_condition(
    client: FunctionClient,
    namespace: str,
    name: str,
    predicate: Predicate,
    timeout_seconds: float,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Function:
    """Poll a Function until ``predicate`` reports it done and return the last read.

    A Function that does not exist yet counts as not done. Raises the error
    returned by ``predicate``, or :class:`WaitTimeoutError` once
    ``timeout_seconds`` have elapsed.
    """
    deadline = time.monotonic() + timeout_seconds
    resource = f"{namespace}.{name}"
    while True:
        try:
            function = client.get(namespace, name)
        except NotFoundError:
            LOGGER.debug("Function %s not found yet", resource)
        else:
            done, err = predicate(function)
            if err is not None:
                raise err
            if done:
                return function

        if time.monotonic() >= deadline:
            raise WaitTimeoutError(resource, timeout_seconds)
        time.sleep(interval_seconds)

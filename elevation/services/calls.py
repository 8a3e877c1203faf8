from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

import anyio

from elevation.core.errors import ElevationError, Transient, classify_error
from elevation.core.settings import S

R = TypeVar("R")


async def call_provider(fn: Callable[..., R], *args: Any) -> R:
    """Run a blocking provider call in a worker thread and classify its failures.

    The call is abandoned after ``AUTH_REQUEST_TIMEOUT_SECONDS``; the worker thread
    finishes on its own and its result is dropped.
    """
    try:
        with anyio.fail_after(S.auth_request_timeout_seconds):
            return await anyio.to_thread.run_sync(functools.partial(fn, *args), abandon_on_cancel=True)
    except ElevationError:
        raise
    except TimeoutError as exc:
        raise Transient(raw=f"provider call timed out after {S.auth_request_timeout_seconds}s") from exc
    except Exception as exc:
        raise classify_error(exc, default_wait=S.rate_limit_default_wait_seconds) from exc


async def off_thread(fn: Callable[..., R], *args: Any) -> R:
    return await anyio.to_thread.run_sync(functools.partial(fn, *args))

# SPDX-License-Identifier: MIT
# Copyright (c) 2022 Bar Harel
# Licensed under the MIT license as detailed in LICENSE.txt
"""AsyncIO concurrency limiter.

This module limits how many asynchronous calls run at the same time.

    - `ConcurrencyLimiter`: Runs submitted calls with at most `concurrency`
    of them in flight. The rest wait in a strict FIFO queue and are started
    as soon as a running call finishes.
    - `limit_function`: Builds a limiter bound to a single coroutine
    function and returns a drop-in replacement for it.

The main entry point is calling the limiter itself. For example:

    # At most 2 downloads at once
    >>> limiter = ConcurrencyLimiter(2)
    >>> async def main():
    ...     futures = [limiter(download, url) for url in urls]
    ...     return await asyncio.gather(*futures)

    # Same thing, results ordered like the input
    >>> async def main():
    ...     return await limiter.map(urls, lambda url, _: download(url))

    # A rate-limited function
    >>> fetch = limit_function(fetch, 5)

For more info, see the documentation for each.
"""

from __future__ import annotations

import asyncio as _asyncio
import functools as _functools
import inspect as _inspect
import logging as _logging
import math as _math
from collections import deque as _deque
from collections.abc import Awaitable as _Awaitable
from collections.abc import Callable as _Callable
from collections.abc import Iterable as _Iterable
from collections.abc import Mapping as _Mapping
from typing import Any as _Any
from typing import Optional as _Optional
from typing import ParamSpec as _ParamSpec
from typing import TypeVar as _TypeVar
from typing import Union as _Union

__version__ = "1.0.0"
__all__ = [
    "ConcurrencyLimiter",
    "limit_function",
    "LimiterError",
    "ValidationError",
    "ClearedError",
]
__author__ = "Bar Harel"
__license__ = "MIT"
__copyright__ = "Copyright (c) 2022 Bar Harel"


_T = _TypeVar("_T")
_P = _ParamSpec("_P")

_logger = _logging.getLogger(__name__)

_OPTION_NAMES = frozenset({"concurrency", "reject_on_clear"})


class LimiterError(Exception):
    """Base class for errors raised by the limiter."""


class ValidationError(LimiterError, ValueError, TypeError):
    """Invalid limiter configuration or argument.

    Always raised synchronously at the call site, never through a future.
    """


class ClearedError(LimiterError):
    """The call was discarded by `clear_queue()` before it started."""


def _validate_concurrency(value: _Any) -> _Union[int, float]:
    """Return `value` if it is a usable concurrency limit.

    Args:
        value: A positive integer, or `math.inf` for no limit.

    Raises:
        ValidationError: If the value is not a positive integer or inf.
    """
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    if value == _math.inf:
        return value
    msg = f"Concurrency must be a positive integer or inf, got {value!r}"
    raise ValidationError(msg)


def _validate_reject_on_clear(value: _Any) -> bool:
    if not isinstance(value, bool):
        msg = f"reject_on_clear must be a bool, got {value!r}"
        raise ValidationError(msg)
    return value


def _is_async_callable(fn: _Any) -> bool:
    """Whether calling `fn` returns a coroutine."""
    while isinstance(fn, _functools.partial):
        fn = fn.func
    if _inspect.iscoroutinefunction(fn):
        return True
    # Instances with an `async def __call__`
    call = getattr(fn, "__call__", None)
    return call is not None and _inspect.iscoroutinefunction(call)


def _pop_pending(
    records: _deque[_TaskRecord],
) -> _Optional[_TaskRecord]:
    """Pop until the first record with a pending future is found.

    Records cancelled by the caller while queued are dropped on the way.
    If the deque runs out, return None.

    Args:
        records: A deque of queued records.

    Returns:
        The first pending record, or None.
    """
    while records:
        record = records.popleft()
        if not record.future.done():
            return record
    return None


class _TaskRecord:
    """A submitted call waiting in the queue or running."""

    __slots__ = ("fn", "args", "kwargs", "future")

    def __init__(
        self,
        fn: _Callable[..., _Any],
        args: tuple[_Any, ...],
        kwargs: dict[str, _Any],
        future: _asyncio.Future,
    ) -> None:
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.future = future


class ConcurrencyLimiter:
    """Runs calls with at most `concurrency` of them in flight at once.

    Calls beyond the limit are queued, and started in submission order as
    running calls complete. Starting a call never waits for a timer or a
    poll, the completion of one call is what starts the next.

    Usage:
        >>> limiter = ConcurrencyLimiter(2)
        >>> async def main():
        ...     # Only 2 requests are in flight at any given moment.
        ...     futures = [limiter(fetch, url, timeout=5) for url in urls]
        ...     await asyncio.gather(*futures)

    Alternative usage:
        >>> limiter = ConcurrencyLimiter({"concurrency": 1,
        ...                               "reject_on_clear": True})
        >>> @limiter.wrap
        ... async def write(line):
        ...     ...

    Attributes:
        concurrency: The maximum number of calls running at once. Can be
        changed at any time.
        reject_on_clear: Whether `clear_queue()` fails the discarded calls
        with `ClearedError` instead of leaving them pending forever.
    """

    reject_on_clear: bool
    """Whether discarded calls are failed with `ClearedError`."""

    def __init__(
        self,
        concurrency: _Union[int, float, _Mapping[str, _Any]],
        *,
        reject_on_clear: _Optional[bool] = None,
    ) -> None:
        """Create a new limiter.

        Args:
            concurrency: The maximum number of calls running at once, or
            `math.inf` for no limit. May also be a mapping with the
            `concurrency` and optional `reject_on_clear` keys.
            reject_on_clear: Fail calls discarded by `clear_queue()` with
            `ClearedError`. Defaults to False, leaving them pending.

        Raises:
            ValidationError: On an invalid concurrency or option.
        """
        if isinstance(concurrency, _Mapping):
            options = dict(concurrency)
            unknown = options.keys() - _OPTION_NAMES
            if unknown:
                msg = f"Unknown limiter options: {', '.join(sorted(unknown))}"
                raise ValidationError(msg)
            if "concurrency" not in options:
                msg = "Limiter options must include 'concurrency'"
                raise ValidationError(msg)
            if "reject_on_clear" in options:
                if reject_on_clear is not None:
                    msg = "reject_on_clear given both as option and keyword"
                    raise ValidationError(msg)
                reject_on_clear = options["reject_on_clear"]
            concurrency = options["concurrency"]

        if reject_on_clear is None:
            reject_on_clear = False

        self._concurrency = _validate_concurrency(concurrency)
        self.reject_on_clear = _validate_reject_on_clear(reject_on_clear)
        self._active = 0
        self._queue: _deque[_TaskRecord] = _deque()
        # Strong references, the loop only keeps weak ones.
        self._running: set[_asyncio.Task] = set()

    def __repr__(self) -> str:
        cls = self.__class__
        return (
            f"{cls.__module__}.{cls.__qualname__}("
            f"concurrency={self._concurrency}, "
            f"reject_on_clear={self.reject_on_clear})"
        )

    @property
    def concurrency(self) -> _Union[int, float]:
        """The maximum number of calls running at once."""
        return self._concurrency

    @concurrency.setter
    def concurrency(self, value: _Union[int, float]) -> None:
        """Change the limit, starting queued calls if it was raised.

        Lowering the limit never interrupts running calls. New calls will
        not start until enough of them finish.

        Args:
            value: A positive integer, or `math.inf` for no limit.
        """
        value = _validate_concurrency(value)
        _logger.debug(
            "Concurrency changed from %s to %s", self._concurrency, value
        )
        self._concurrency = value
        self._dispatch()

    @property
    def active_count(self) -> int:
        """Number of calls currently running."""
        return self._active

    @property
    def pending_count(self) -> int:
        """Number of calls waiting in the queue."""
        return len(self._queue)

    def __call__(
        self,
        fn: _Callable[_P, _Union[_Awaitable[_T], _T]],
        /,
        *args: _P.args,
        **kwargs: _P.kwargs,
    ) -> _asyncio.Future[_T]:
        """Submit `fn(*args, **kwargs)` to run once a slot is free.

        Returns immediately. Anything `fn` raises, synchronously or when
        awaited, is set on the returned future instead of being raised
        here. `fn` may also return a plain value.

        Args:
            fn: The function to call.
            *args: Positional arguments for `fn`.
            **kwargs: Keyword arguments for `fn`.

        Returns:
            A future for the result of the call.
        """
        if not callable(fn):
            msg = f"Expected a callable, got {fn!r}"
            raise ValidationError(msg)

        future = _asyncio.get_running_loop().create_future()
        record = _TaskRecord(fn, args, kwargs, future)
        self._queue.append(record)
        future.add_done_callback(
            _functools.partial(self._discard_cancelled, record)
        )
        self._dispatch()
        return future

    def _discard_cancelled(
        self, record: _TaskRecord, future: _asyncio.Future
    ) -> None:
        """Drop a record whose future was cancelled while still queued."""
        if not future.cancelled():
            return
        try:
            self._queue.remove(record)
        except ValueError:  # Already dispatched or cleared.
            pass

    def _dispatch(self) -> None:
        """Start queued calls until the limit is reached."""
        queue = self._queue
        loop: _Optional[_asyncio.AbstractEventLoop] = None
        while self._active < self._concurrency and (
            record := _pop_pending(queue)
        ) is not None:
            loop = loop or _asyncio.get_running_loop()
            self._active += 1
            task = loop.create_task(self._run(record))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _run(self, record: _TaskRecord) -> None:
        """Run a dispatched call, settle its future and free the slot."""
        future = record.future
        try:
            try:
                result = record.fn(*record.args, **record.kwargs)
                if _inspect.isawaitable(result):
                    result = await result
            finally:
                self._active -= 1
        except _asyncio.CancelledError:
            future.cancel()
            raise
        except StopIteration as exc:
            # Futures refuse StopIteration.
            if not future.done():
                error = RuntimeError(f"{record.fn!r} raised StopIteration")
                error.__cause__ = exc
                future.set_exception(error)
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._dispatch()

    def clear_queue(self) -> None:
        """Discard all calls that have not started yet.

        Running calls are not affected. If `reject_on_clear` is set, the
        discarded futures fail with `ClearedError`. Otherwise they are left
        pending forever and must not be awaited.
        """
        queue = self._queue
        if not queue:
            return
        discarded = list(queue)
        queue.clear()
        _logger.debug("Cleared %d queued calls", len(discarded))
        if not self.reject_on_clear:
            return
        for record in discarded:
            if not record.future.done():
                record.future.set_exception(
                    ClearedError("Call was discarded by clear_queue()")
                )

    def map(
        self,
        iterable: _Iterable[_Any],
        func: _Callable[[_Any, int], _Union[_Awaitable[_T], _T]],
    ) -> _asyncio.Future[list[_T]]:
        """Call `func(item, index)` for every item, through this limiter.

        All calls are submitted before returning, so the overall
        concurrency is still bounded by this limiter.

        Usage:
            >>> async def main():
            ...     sizes = await limiter.map(urls, lambda url, i: size(url))

        Args:
            iterable: A finite iterable of items.
            func: Called with each item and its index.

        Returns:
            A future for the list of results, ordered like `iterable`.
            Fails with the first error raised by any call. Other calls are
            not cancelled; their results are dropped.

        Raises:
            Whatever iterating `iterable` raises. Nothing is submitted then.
        """
        items = list(iterable)
        futures = [self(func, item, index) for index, item in enumerate(items)]
        return _asyncio.gather(*futures)

    def wrap(
        self, fn: _Callable[_P, _Union[_Awaitable[_T], _T]]
    ) -> _Callable[_P, _asyncio.Future[_T]]:
        """Wrap a function so that every call goes through the limiter.

        Equivalent to:

            >>> def wrapper(*args, **kwargs):
            ...     return limiter(fn, *args, **kwargs)

        Example use:

            >>> limiter = ConcurrencyLimiter(3)
            >>> @limiter.wrap
            ... async def fetch(url):
            ...     ...

        Args:
            fn: The function to wrap.

        Returns:
            The wrapped function. It returns a future instead of a result,
            and exposes the limiter as its `limiter` attribute.
        """
        if not callable(fn):
            msg = f"Expected a callable, got {fn!r}"
            raise ValidationError(msg)

        @_functools.wraps(fn)
        def _wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _asyncio.Future:
            return self(fn, *args, **kwargs)

        _wrapper.limiter = self  # type: ignore[attr-defined]
        return _wrapper


def limit_function(
    fn: _Callable[_P, _Awaitable[_T]],
    concurrency: _Union[int, float, _Mapping[str, _Any]],
    *,
    reject_on_clear: _Optional[bool] = None,
) -> _Callable[_P, _asyncio.Future[_T]]:
    """Limit the concurrency of a single coroutine function.

    Creates a dedicated `ConcurrencyLimiter` and wraps `fn` with it.

    Usage:
        >>> fetch = limit_function(fetch, 2)
        >>> async def main():
        ...     pages = await asyncio.gather(*(fetch(url) for url in urls))
        ...     fetch.limiter.concurrency = 4

    Args:
        fn: A coroutine function, a partial of one, or an object with an
        `async def __call__`.
        concurrency: Same as for `ConcurrencyLimiter`.
        reject_on_clear: Same as for `ConcurrencyLimiter`. None means False
        unless `concurrency` is a mapping that sets it.

    Raises:
        ValidationError: If `fn` is not asynchronous, or on invalid
        options.
    """
    if not _is_async_callable(fn):
        msg = f"Expected a coroutine function, got {fn!r}"
        raise ValidationError(msg)
    limiter = ConcurrencyLimiter(concurrency, reject_on_clear=reject_on_clear)
    return limiter.wrap(fn)

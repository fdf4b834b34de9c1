"""
Cooperative cancellation for long suspensions.

A CancelToken is handed to the workflow by its caller. Every suspension
point (confirmation polling, round-finalization wait, backoff sleeps)
races its sleep against the token; whichever loses is cancelled, so no
timer outlives the call that created it.

Native ``asyncio`` task cancellation still works and is never swallowed;
the token exists for callers that want a typed WorkflowCancelledError
instead of tearing down the task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from fdc_attest.errors import WorkflowCancelledError

SleepFn = Callable[[float], Awaitable[None]]


class CancelToken:
    """One-shot cancellation signal backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise WorkflowCancelledError(
                "workflow cancelled",
                details={"reason": self._reason} if self._reason else None,
            )

    async def wait(self) -> None:
        await self._event.wait()


async def cancellable_sleep(
    seconds: float,
    cancel: CancelToken | None = None,
    *,
    sleep_fn: SleepFn = asyncio.sleep,
) -> None:
    """Sleep for ``seconds`` unless ``cancel`` fires first.

    Raises:
        WorkflowCancelledError: If the token is (or becomes) cancelled.
    """
    if cancel is None:
        await sleep_fn(max(0.0, seconds))
        return

    cancel.raise_if_cancelled()

    sleeper = asyncio.ensure_future(sleep_fn(max(0.0, seconds)))
    watcher = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, watcher):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, watcher, return_exceptions=True)

    cancel.raise_if_cancelled()
    # Surface exceptions raised by the sleep itself.
    sleeper.result()

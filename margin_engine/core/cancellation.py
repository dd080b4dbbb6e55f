"""Cooperative cancellation for the network-calling pipeline stages.

A CancelToken is created per pipeline run and handed to retrieval,
generation and judging. Cancelling it aborts whichever awaitable is
currently running under `token.run(...)`.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class PipelineCancelled(Exception):
    """Raised when a run is superseded by a newer trigger."""


class StageTimeout(Exception):
    """Raised when a stage exceeds its time budget."""

    def __init__(self, stage: str, timeout: float):
        super().__init__(f"{stage} timed out after {timeout:.1f}s")
        self.stage = stage
        self.timeout = timeout


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "superseded") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled(self.reason or "cancelled")

    async def run(
        self,
        awaitable: Awaitable[T],
        *,
        timeout: float | None = None,
        stage: str = "stage",
    ) -> T:
        """Await `awaitable`, aborting it on cancellation or timeout."""
        if self.cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            # aborted, outcome discarded
            pass

        if self.cancelled:
            raise PipelineCancelled(self.reason or "cancelled")
        raise StageTimeout(stage, timeout or 0.0)

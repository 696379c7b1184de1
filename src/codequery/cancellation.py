"""Cooperative cancellation for a single query."""

import asyncio

from codequery.errors import QueryCancelled


class CancelSignal:
    """A one-shot flag checked by the pipeline between units of work.

    Wraps an asyncio.Event so callers can both poll it and await it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled("Query was cancelled")


def check(signal: CancelSignal | None) -> None:
    """Raise QueryCancelled if `signal` is set. A None signal never fires."""
    if signal is not None:
        signal.raise_if_cancelled()

"""Cancellation signal threaded through one prompt-handling cycle."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class TurnCancelled(Exception):
    """The caller cancelled the in-flight turn."""


class CancelToken:
    """One-shot cancellation flag backed by an asyncio.Event."""

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
            raise TurnCancelled()


async def race(awaitable: Awaitable[T], cancel: CancelToken | None) -> T:
    """Await *awaitable* unless *cancel* fires first.

    On cancellation the pending work is cancelled and TurnCancelled is
    raised. If both finish together the result wins.
    """
    if cancel is None:
        return await awaitable
    cancel.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    await asyncio.wait({work})
    raise TurnCancelled()

"""Cooperative cancellation for operations run through the recovery engine.

A token is threaded through the retry loop and checked at each defined
checkpoint (before an attempt, before a backoff wait). It cannot
interrupt an operation that is already executing.
"""

from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation flag with an interruptible sleep.

    Example:
        >>> token = CancellationToken()
        >>> await token.sleep(5.0)  # returns early once token.cancel() is called
        >>> token.cancelled
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Wait up to ``delay`` seconds, waking immediately on cancellation.

        Returns:
            True if the wait was interrupted by cancellation.
        """
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

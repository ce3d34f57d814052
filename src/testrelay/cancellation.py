#
# src/testrelay/cancellation.py
#
"""
Cancellation sources and tokens, plus a combinator that links several
independently owned sources into one scope.

A test run is cancelled either by its caller (a user pressing stop) or by the
run itself (a spawn failure aborting the remaining work). Both paths go through
a LinkedCancellationSource so every listener is notified exactly once.
"""

import asyncio
from collections.abc import Callable

import structlog

from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cancellation")

CancellationCallback = Callable[[], None]


class Registration:
    """Handle returned by ``CancellationToken.register``; disposing it unsubscribes the callback."""

    def __init__(self, source: "CancellationSource", callback: CancellationCallback):
        self._source = source
        self._callback = callback

    def dispose(self) -> None:
        self._source._unregister(self._callback)


class CancellationToken:
    """Read-only view on a CancellationSource."""

    def __init__(self, source: "CancellationSource"):
        self._source = source

    @property
    def is_cancellation_requested(self) -> bool:
        return self._source.is_cancellation_requested

    def register(self, callback: CancellationCallback) -> Registration:
        """
        Subscribes to cancellation. If the source is already cancelled the
        callback runs immediately, before this method returns.
        """
        return self._source._register(callback)

    async def wait(self) -> None:
        await self._source._event.wait()


class CancellationSource:
    """Owns a cancellation flag and notifies registered callbacks once when it is set."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[CancellationCallback] = []
        self._event = asyncio.Event()
        self.token = CancellationToken(self)

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        log.debug("Cancellation requested", listeners=len(callbacks))
        for callback in callbacks:
            self._invoke(callback)

    def dispose(self) -> None:
        self._callbacks.clear()

    def _register(self, callback: CancellationCallback) -> Registration:
        if self._cancelled:
            self._invoke(callback)
        else:
            self._callbacks.append(callback)
        return Registration(self, callback)

    def _unregister(self, callback: CancellationCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    @staticmethod
    def _invoke(callback: CancellationCallback) -> None:
        try:
            callback()
        except Exception:
            # One failing listener must not prevent the others from being told.
            log.exception("Cancellation callback raised", callback=repr(callback))


class LinkedCancellationSource(CancellationSource):
    """
    A source that becomes cancelled when any of the given tokens is cancelled,
    or when ``cancel()`` is called on it directly.

    Listeners see a single notification no matter how many of the linked
    tokens fire.
    """

    def __init__(self, *tokens: CancellationToken):
        super().__init__()
        self._registrations = [token.register(self.cancel) for token in tokens]

    def on_cancellation_requested(self, callback: CancellationCallback) -> Registration:
        return self.token.register(callback)

    def dispose(self) -> None:
        for registration in self._registrations:
            registration.dispose()
        self._registrations.clear()
        super().dispose()


# 🔼⚙️

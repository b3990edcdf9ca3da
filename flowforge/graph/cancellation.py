"""
Cooperative, hierarchical cancellation.

One root token exists per run. Every node gets a child token that fires
when the root is cancelled or when the node's own timeout expires;
cancelling a child never touches its parent. Executors receive their token
through the execution context and are expected to observe it during
long-running work, either by polling ``cancelled`` or by awaiting
``sleep()``/``wait()``.
"""

import asyncio
import logging
from collections.abc import Callable

from flowforge.graph.errors import CancellationError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    A cancellation signal that can be observed synchronously or awaited.

    Example:
        token = CancellationToken()
        node_token = token.child()

        token.cancel("user requested stop")
        assert node_token.cancelled
    """

    def __init__(self, parent: "CancellationToken | None" = None):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], None]] = []
        self._parent = parent

        if parent is not None:
            if parent.cancelled:
                self._fire(parent.reason)
            else:
                parent._callbacks.append(self._on_parent_cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Cancel this token and every token derived from it."""
        if self.cancelled:
            return
        self._fire(reason or "Execution cancelled")

    def child(self) -> "CancellationToken":
        """Derive a token that fires when this one does."""
        return CancellationToken(parent=self)

    def close(self) -> None:
        """Detach from the parent so the parent stops tracking this token."""
        if self._parent is not None:
            try:
                self._parent._callbacks.remove(self._on_parent_cancel)
            except ValueError:
                pass
            self._parent = None

    def add_callback(self, callback: Callable[[str | None], None]) -> None:
        """Call ``callback(reason)`` on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self._reason)

    async def wait(self) -> str | None:
        """Block until the token is cancelled. Returns the reason."""
        await self._event.wait()
        return self._reason

    async def sleep(self, delay: float) -> None:
        """
        Sleep for ``delay`` seconds unless cancelled first.

        Raises:
            CancellationError: If the token is (or becomes) cancelled
        """
        self.raise_if_cancelled()
        if delay <= 0:
            return

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            if not waiter.done():
                waiter.cancel()
                await asyncio.gather(waiter, return_exceptions=True)

        self.raise_if_cancelled()

    def _fire(self, reason: str | None) -> None:
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}")

    def _on_parent_cancel(self, reason: str | None) -> None:
        self._parent = None
        self.cancel(reason)

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"

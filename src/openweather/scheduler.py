"""Visibility-aware periodic refresh.

RefreshScheduler re-runs a refresh callback on a fixed interval while
the consumer's view is visible. It has two states:

    - **Idle**: no timer.
    - **Armed**: one asyncio task ticking every ``interval`` seconds and
      one subscription to the visibility signal.

Rules while armed:
    - A tick runs the callback only if the view is visible. Ticks that
      happen while hidden are dropped, not queued.
    - A hidden -> visible transition runs the callback once, right away.
      The timer keeps its original phase.
    - manual_trigger() always runs the callback immediately, armed or
      not, visible or not.

The scheduler never looks at what the callback returns. Coroutine
callbacks run as separate tasks so a slow refresh never delays a tick,
and exceptions are logged without stopping the timer.

Example:
    >>> visibility = VisibilitySignal()
    >>> scheduler = RefreshScheduler(visibility)
    >>> scheduler.arm(lambda: client.refresh(["Paris", "Tokyo"]), 60)
    >>> visibility.set_visible(False)   # ticks are now skipped
    >>> visibility.set_visible(True)    # refreshes once immediately
    >>> scheduler.disarm()
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Any]
VisibilityListener = Callable[[bool], None]


class VisibilitySignal:
    """Boolean "is the view in the foreground" with change notifications.

    The host (UI, window manager hook, terminal focus handler) calls
    set_visible(); listeners are told only about actual changes.

    Args:
        visible: Initial state. Defaults to True.
    """

    def __init__(self, visible: bool = True) -> None:
        self._visible = visible
        self._listeners: list[VisibilityListener] = []

    @property
    def visible(self) -> bool:
        return self._visible

    def set_visible(self, visible: bool) -> None:
        visible = bool(visible)
        if visible == self._visible:
            return
        self._visible = visible
        for listener in list(self._listeners):
            listener(visible)

    def subscribe(self, listener: VisibilityListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            A callable that removes the listener. Calling it twice is safe.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class RefreshScheduler:
    """Timer plus visibility subscription driving a refresh callback.

    Must be armed from within a running asyncio event loop.

    Args:
        visibility: Signal to consult on each tick. Defaults to an
            always-visible signal.
        sleep: Coroutine function used to wait between ticks. Defaults
            to asyncio.sleep; tests pass a manually driven one.

    Attributes:
        callback: The registered refresh callback, kept after disarm()
            so manual_trigger() keeps working.
        interval: Tick interval in seconds, or None when idle.
    """

    def __init__(
        self,
        visibility: Optional[VisibilitySignal] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.visibility = visibility if visibility is not None else VisibilitySignal()
        self._sleep = sleep
        self.callback: Optional[RefreshCallback] = None
        self.interval: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: set[asyncio.Task] = set()

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self, callback: RefreshCallback, interval: float) -> None:
        """Start ticking every ``interval`` seconds.

        Re-arming replaces the previous timer. A non-positive interval
        registers the callback but leaves the scheduler idle.

        Args:
            callback: Sync or async callable taking no arguments.
            interval: Seconds between ticks.
        """
        self.disarm()
        self.callback = callback
        if interval <= 0:
            logger.warning(f"Refresh interval {interval} is not positive; staying idle")
            return

        loop = asyncio.get_running_loop()
        self.interval = interval
        self._timer = loop.create_task(self._tick_loop(interval))
        self._unsubscribe = self.visibility.subscribe(self._on_visibility_change)
        logger.debug(f"Auto-refresh armed every {interval}s")

    def disarm(self) -> None:
        """Stop the timer and drop the visibility subscription."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.interval = None

    def manual_trigger(self) -> None:
        """Run the callback now, ignoring visibility and the timer."""
        self._invoke("manual")

    async def _tick_loop(self, interval: float) -> None:
        while True:
            await self._sleep(interval)
            if self.visibility.visible:
                self._invoke("tick")
            else:
                logger.debug("View not visible, skipping refresh")

    def _on_visibility_change(self, visible: bool) -> None:
        if visible:
            logger.debug("View became visible, refreshing")
            self._invoke("visible")

    def _invoke(self, reason: str) -> None:
        if self.callback is None:
            return
        try:
            outcome = self.callback()
        except Exception:
            logger.exception(f"Refresh callback failed ({reason})")
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Refresh callback failed: {error!r}")

    async def __aenter__(self) -> "RefreshScheduler":
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.disarm()

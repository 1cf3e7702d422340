"""Client-side typing indicator state and typing event debounce.

Receiver (``TypingIndicator``): a ``typing=True`` delta shows the user and
(re)starts an expiry timer; ``typing=False`` or expiry hides them. Repeated
``True`` deltas reset the timer instead of stacking timers.

Sender (``TypingNotifier``): every local input change emits a start signal
right away and pushes back a single pending stop signal, so a burst of
keystrokes ends in exactly one stop after the idle window.

Both use ``loop.call_later`` and must be driven from a running event loop.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

TYPING_EXPIRY_SECONDS = 2.5
TYPING_STOP_DELAY_SECONDS = 1.2


class TypingIndicator:
    """Set of users currently shown as typing in one group."""

    def __init__(
        self,
        expiry: float = TYPING_EXPIRY_SECONDS,
        on_change: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self.expiry = expiry
        self.on_change = on_change
        self._users: List[str] = []
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def users(self) -> List[str]:
        return list(self._users)

    def apply(self, user_id: str, typing: bool) -> None:
        if typing:
            self._show(user_id)
        else:
            self._hide(user_id)

    def _show(self, user_id: str) -> None:
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[user_id] = loop.call_later(self.expiry, self._hide, user_id)
        if user_id not in self._users:
            self._users.append(user_id)
            self._changed()

    def _hide(self, user_id: str) -> None:
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
        if user_id in self._users:
            self._users.remove(user_id)
            self._changed()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.users)

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._users.clear()


class TypingNotifier:
    """Debounces local input into start/stop typing signals.

    Args:
        emit: Called with True for start and False for stop.
        stop_delay: Idle time after the last input before stop is emitted.
    """

    def __init__(self, emit: Callable[[bool], None], stop_delay: float = TYPING_STOP_DELAY_SECONDS) -> None:
        self.emit = emit
        self.stop_delay = stop_delay
        self._stop_timer: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._stop_timer is not None

    def on_input(self) -> None:
        self.emit(True)
        if self._stop_timer is not None:
            self._stop_timer.cancel()
        loop = asyncio.get_running_loop()
        self._stop_timer = loop.call_later(self.stop_delay, self._fire_stop)

    def _fire_stop(self) -> None:
        self._stop_timer = None
        self.emit(False)

    def flush(self) -> None:
        """Emit the pending stop now (e.g. the message was sent)."""
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._fire_stop()

    def cancel(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

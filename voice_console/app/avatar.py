"""Avatar presentation state with cancellable delayed transitions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum

_LOGGER = logging.getLogger(__name__)


class AvatarState(str, Enum):
    IDLE = "idle"
    THINK = "think"
    TALK = "talk"


AvatarListener = Callable[[AvatarState], None]


class AvatarController:
    """Tracks avatar state and notifies a listener on every change.

    Any new transition supersedes a pending delayed one, so a late idle
    never overrides a newer think or talk.
    """

    def __init__(self, on_change: AvatarListener | None = None) -> None:
        self._state = AvatarState.IDLE
        self._on_change = on_change
        self._pending: asyncio.TimerHandle | None = None

    @property
    def state(self) -> AvatarState:
        return self._state

    @property
    def has_pending_transition(self) -> bool:
        return self._pending is not None

    def set(self, state: AvatarState, hold_ms: int = 0) -> None:
        """Transitions now, or after ``hold_ms`` milliseconds.

        Args:
            state: Target state.
            hold_ms: Delay before applying the state; 0 applies immediately.
        """
        self.cancel_pending()
        if hold_ms > 0:
            loop = asyncio.get_running_loop()
            self._pending = loop.call_later(hold_ms / 1000, self._apply_pending, state)
            return
        self._apply(state)

    def cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def reset(self) -> None:
        """Cancels any pending transition and returns to idle."""
        self.cancel_pending()
        self._apply(AvatarState.IDLE)

    def _apply_pending(self, state: AvatarState) -> None:
        self._pending = None
        self._apply(state)

    def _apply(self, state: AvatarState) -> None:
        if state is self._state:
            return
        _LOGGER.debug("Avatar state changed.", extra={"from_state": self._state.value, "to_state": state.value})
        self._state = state
        if self._on_change is not None:
            self._on_change(state)

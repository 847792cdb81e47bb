"""
Restoration progress as a small state machine: idle -> restoring -> idle.

Callers poll `state` or subscribe to transitions; the Socket.IO layer
subscribes once and broadcasts each change.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RestorationState:
    restoring: bool = False
    message: str = ''

    def to_dict(self):
        return {'restoring': self.restoring, 'message': self.message}


IDLE = RestorationState()

Listener = Callable[[RestorationState], None]


class RestorationTracker:
    """Holds the current restoration state and notifies listeners."""

    def __init__(self):
        self._state = IDLE
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> RestorationState:
        return self._state

    @property
    def is_restoring(self) -> bool:
        return self._state.restoring

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def start(self, message: str):
        self._transition(RestorationState(restoring=True, message=message))

    def complete(self):
        self._transition(IDLE)

    def _transition(self, state):
        with self._lock:
            if state == self._state:
                return
            self._state = state
            listeners = list(self._listeners)
        logger.debug('restoration state changed', **state.to_dict())
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception('restoration listener failed')

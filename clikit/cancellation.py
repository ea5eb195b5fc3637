"""
Cooperative cancellation

A token is a one-way flag shared by an execution and all of its child
contexts. Tripping it never interrupts running code by itself; code polls
``throw_if_cancelled()`` at safe points or registers a callback.
"""

import logging
import threading
from typing import Callable, List, Optional

from .errors import OperationCancelledError


class CancellationToken:
    """One-way cancellation flag with reason and callbacks"""

    def __init__(self) -> None:
        self._cancelled: bool = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._logger: logging.Logger = logging.getLogger('clikit.cancellation')

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Trip the token

        The first call wins: later calls keep the original reason and do not
        fire callbacks again.

        Args:
            reason: Human-readable cancellation reason

        Returns:
            True if this call performed the cancellation
        """
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks = self._callbacks
            self._callbacks = []

        self._logger.debug(f"Cancellation requested: {reason or 'no reason given'}")

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self._logger.error(f"Error in cancellation callback: {e}", exc_info=True)
        return True

    def on_cancelled(self, callback: Callable[[], None]) -> None:
        """Register callback; runs immediately if already cancelled"""
        if not callable(callback):
            raise TypeError("Cancellation callback must be callable")

        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return

        try:
            callback()
        except Exception as e:
            self._logger.error(f"Error in cancellation callback: {e}", exc_info=True)

    def throw_if_cancelled(self) -> None:
        """Raise OperationCancelledError if the token has been tripped"""
        if self._cancelled:
            raise OperationCancelledError(self._reason)

    def __repr__(self) -> str:
        state = f"cancelled, reason={self._reason!r}" if self._cancelled else 'active'
        return f"<CancellationToken {state}>"

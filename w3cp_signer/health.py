"""
Ledger connection health tracking.

The tracker is a two-state machine fed by the ledger client's lifecycle
events. The pipeline reads it synchronously before every submission and
refuses lifts while it reports NOT_READY; it never waits for READY.
"""

import logging
from enum import Enum
from typing import Any, Optional

from .logging_config import audit_log

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"


class LedgerEvent(str, Enum):
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# connected is informational only
_TRANSITIONS = {
    LedgerEvent.CONNECTED: None,
    LedgerEvent.READY: ConnectionState.READY,
    LedgerEvent.DISCONNECTED: ConnectionState.NOT_READY,
    LedgerEvent.ERROR: ConnectionState.NOT_READY,
}


class ConnectionHealthTracker:
    """
    Passive mirror of the ledger link state.

    Constructed after the initial handshake has succeeded, so it starts
    READY. Reconnection is the ledger client's job; the tracker only
    reflects what the client reports.
    """

    def __init__(self, initial: ConnectionState = ConnectionState.READY):
        self._state = initial

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def handle(self, event: Any, error: Optional[BaseException] = None) -> ConnectionState:
        """Apply one lifecycle event and return the resulting state."""
        try:
            event = LedgerEvent(event)
        except ValueError:
            logger.warning("Ignoring unknown ledger event %r", event)
            return self._state

        target = _TRANSITIONS[event]
        if target is not None:
            self._state = target

        if event is LedgerEvent.ERROR:
            logger.error("Ledger API error: %s", error)
        elif event is LedgerEvent.DISCONNECTED:
            logger.warning("Ledger API disconnected, waiting for client to reconnect")
        else:
            logger.info("Ledger API %s", event.value)

        audit_log.chain_connection(
            event.value,
            ready=self.is_ready,
            detail=str(error) if error is not None else None,
        )
        return self._state

    def bind(self, client) -> None:
        """Register this tracker for every lifecycle event the client emits."""
        client.on(LedgerEvent.CONNECTED.value, lambda *args: self.handle(LedgerEvent.CONNECTED))
        client.on(LedgerEvent.READY.value, lambda *args: self.handle(LedgerEvent.READY))
        client.on(LedgerEvent.DISCONNECTED.value, lambda *args: self.handle(LedgerEvent.DISCONNECTED))
        client.on(
            LedgerEvent.ERROR.value,
            lambda err=None, *args: self.handle(LedgerEvent.ERROR, err),
        )

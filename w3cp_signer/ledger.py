"""
Ledger client protocol, the network boundary.

Defines the capability the attestation pipeline depends on, not a
concrete implementation, so the pipeline can be driven by a scripted
client in tests and by ``SubstrateLedgerClient`` in production.

Capabilities:
    - connect() / close(): initial handshake and teardown
    - on(event, handler): lifecycle events (connected, ready,
      disconnected, error)
    - build_remark(data): construct a system.remark call
    - sign_and_submit(call, identity): sign, submit, and subscribe to
      status updates
    - fetch_block_number(block_hash): resolve a block's height; may fail
      independently of the submission
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol, runtime_checkable


class TxStatusKind(str, Enum):
    READY = "ready"
    BROADCAST = "broadcast"
    IN_BLOCK = "in_block"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class TxStatus:
    """
    One status update from a submission subscription.

    Attributes:
        kind: Stage the transaction reached.
        block_hash: Hash of the including block, for IN_BLOCK and FINALIZED.
        detail: Ledger diagnostic for FAILED (dropped, invalid, usurped,
            RPC error). Free text, safe to return to the caller.
    """
    kind: TxStatusKind
    block_hash: Optional[str] = None
    detail: Optional[str] = None

    @property
    def is_included(self) -> bool:
        return self.kind in (TxStatusKind.IN_BLOCK, TxStatusKind.FINALIZED)

    @property
    def is_error(self) -> bool:
        return self.kind is TxStatusKind.FAILED


@runtime_checkable
class Subscription(Protocol):
    """
    Status stream for one submitted transaction.

    Iterating yields TxStatus updates in ledger order. ``close()``
    releases the subscription and must be safe to call more than once.
    """

    @property
    def tx_hash(self) -> str:
        ...

    def __aiter__(self) -> AsyncIterator[TxStatus]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class LedgerClient(Protocol):
    """Interface for ledger network operations used by the signer."""

    async def connect(self) -> None:
        """Complete the initial handshake. Raises if the ledger is unreachable."""
        ...

    async def close(self) -> None:
        ...

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Register a handler for a lifecycle event."""
        ...

    async def build_remark(self, data: bytes) -> Any:
        """Construct an unsigned system.remark call carrying ``data``."""
        ...

    async def sign_and_submit(self, call: Any, identity: Any) -> Subscription:
        """Sign ``call`` with ``identity``, submit it, and subscribe to its status."""
        ...

    async def fetch_block_number(self, block_hash: str) -> int:
        ...

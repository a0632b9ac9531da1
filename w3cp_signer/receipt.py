"""
Attestation payload and receipt shaping.

The payload is what lands on chain: a ``W3CP_BIND:`` tag followed by
compact JSON, carried as the data of a ``system.remark`` extrinsic.
Key order (v, cpId, did, ts) and the compact separators match the
remarks already written by earlier signer releases, so chain readers
see one format.

The receipt is what the caller gets back once the remark is in a block.
It is never stored.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .util import now_epoch, utc_iso_millis

# Schema version embedded in every payload.
PAYLOAD_VERSION = 1

REMARK_PREFIX = "W3CP_BIND:"


@dataclass(frozen=True)
class AttestationPayload:
    cp_id: str
    did: str
    ts: int
    version: int = PAYLOAD_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {"v": self.version, "cpId": self.cp_id, "did": self.did, "ts": self.ts}


def build_payload(cp_id: str, did: str, ts: Optional[int] = None) -> AttestationPayload:
    """
    Build the payload for one lift.

    Args:
        cp_id: Client-assigned charge point identifier
        did: Validated W3CP DID
        ts: Unix seconds (defaults to now)
    """
    if ts is None:
        ts = now_epoch()
    return AttestationPayload(cp_id=cp_id, did=did, ts=ts)


def encode_remark(payload: AttestationPayload) -> bytes:
    """Serialize a payload to the tagged remark bytes."""
    body = json.dumps(payload.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return (REMARK_PREFIX + body).encode("utf-8")


def decode_remark(data: bytes) -> AttestationPayload:
    """
    Parse remark bytes written by ``encode_remark``.

    Raises:
        ValueError: If the data is not a W3CP bind remark
    """
    text = data.decode("utf-8")
    if not text.startswith(REMARK_PREFIX):
        raise ValueError("not a W3CP bind remark")
    raw = json.loads(text[len(REMARK_PREFIX):])
    return AttestationPayload(
        cp_id=raw["cpId"],
        did=raw["did"],
        ts=int(raw["ts"]),
        version=int(raw["v"]),
    )


@dataclass(frozen=True)
class AttestationReceipt:
    """
    Proof of a lift, built only after the remark is included in a block.

    ``block_number`` is None when the node could not resolve the block;
    inclusion alone is the success criterion.
    """
    network: str
    tx_hash: str
    explorer_url: str
    block_hash: str
    block_number: Optional[int]
    attester: str
    lifted_at: str
    payload: AttestationPayload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "txHash": self.tx_hash,
            "subscanUrl": self.explorer_url,
            "blockHash": self.block_hash,
            "blockNumber": self.block_number,
            "attester": self.attester,
            "liftedAt": self.lifted_at,
            "payload": self.payload.to_dict(),
        }


def build_receipt(
    payload: AttestationPayload,
    *,
    network: str,
    explorer_template: str,
    tx_hash: str,
    block_hash: str,
    block_number: Optional[int],
    attester: str,
    lifted_at: Optional[str] = None
) -> AttestationReceipt:
    """
    Assemble the receipt for a confirmed lift.

    ``explorer_template`` is formatted with ``tx_hash``.
    """
    return AttestationReceipt(
        network=network,
        tx_hash=tx_hash,
        explorer_url=explorer_template.format(tx_hash=tx_hash),
        block_hash=block_hash,
        block_number=block_number,
        attester=attester,
        lifted_at=lifted_at or utc_iso_millis(),
        payload=payload,
    )

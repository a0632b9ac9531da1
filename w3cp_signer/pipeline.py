"""
Attestation pipeline.

Turns one lift request into at most one on-chain remark:

    health gate → field presence → DID format → dedup (under a per-key
    lock) → payload → remark call → sign + submit → wait for inclusion
    → resolve block height → cache → receipt

A key enters the cache only after its remark is included in a block.
Failures and timeouts leave the cache untouched, and the status
subscription is closed on every exit path. The confirmation timeout is
one deadline shared by signing, submission and inclusion.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .cache import AttestationCache, attestation_key
from .config import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_EXPLORER_URL, DEFAULT_NETWORK
from .did import is_valid_w3cp_did
from .errors import (
    DuplicateAttestation,
    InvalidIdentifierFormat,
    InvalidRequest,
    ServiceUnavailable,
    SubmissionFailure,
    SubmissionTimeout,
)
from .health import ConnectionHealthTracker
from .keys import SigningIdentity
from .ledger import LedgerClient, Subscription
from .logging_config import audit_log
from .receipt import AttestationPayload, AttestationReceipt, build_payload, build_receipt, encode_remark
from .util import now_epoch

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    INCLUDED = "included"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class SubmissionOutcome:
    """Terminal result of waiting on one submission."""
    kind: OutcomeKind
    tx_hash: str
    block_hash: Optional[str] = None
    detail: Optional[str] = None


async def await_inclusion(subscription: Subscription, timeout: Optional[float]) -> SubmissionOutcome:
    """
    Wait for the first terminal status of a submission.

    Returns INCLUDED on the first in-block (or finalized) status, FAILED
    on an error status or if the stream ends first, TIMED_OUT if nothing
    terminal arrives within ``timeout`` seconds. Errors raised by the
    stream itself propagate. The subscription is always closed.
    """
    tx_hash = subscription.tx_hash

    async def first_terminal() -> SubmissionOutcome:
        async for status in subscription:
            if status.is_included:
                return SubmissionOutcome(OutcomeKind.INCLUDED, tx_hash, block_hash=status.block_hash)
            if status.is_error:
                return SubmissionOutcome(OutcomeKind.FAILED, tx_hash, detail=status.detail)
            logger.debug("tx %s status %s", tx_hash, status.kind.value)
        return SubmissionOutcome(OutcomeKind.FAILED, tx_hash, detail="subscription ended before inclusion")

    try:
        return await asyncio.wait_for(first_terminal(), timeout)
    except asyncio.TimeoutError:
        return SubmissionOutcome(OutcomeKind.TIMED_OUT, tx_hash, detail=f"no inclusion within {timeout}s")
    finally:
        await subscription.close()


class AttestationPipeline:
    """
    Orchestrates lifts against one ledger client with one signing identity.

    All collaborators are injected; the pipeline owns no global state.
    """

    def __init__(
        self,
        client: LedgerClient,
        identity: SigningIdentity,
        cache: AttestationCache,
        health: ConnectionHealthTracker,
        *,
        network: str = DEFAULT_NETWORK,
        explorer_url: str = DEFAULT_EXPLORER_URL,
        confirmation_timeout: Optional[float] = DEFAULT_CONFIRMATION_TIMEOUT,
        clock: Callable[[], int] = now_epoch
    ):
        self._client = client
        self._identity = identity
        self._cache = cache
        self._health = health
        self._network = network
        self._explorer_url = explorer_url
        self._timeout = confirmation_timeout
        self._clock = clock

    @property
    def attester(self) -> str:
        return self._identity.address

    @property
    def cache(self) -> AttestationCache:
        return self._cache

    async def attest(self, cp_id: Any, did: Any) -> AttestationReceipt:
        """
        Lift one (cpId, did) pair on chain.

        Raises:
            ServiceUnavailable: Ledger link is not ready
            InvalidRequest: cpId or did missing or empty
            InvalidIdentifierFormat: did is not a W3CP DID
            DuplicateAttestation: Pair already lifted by this process
            SubmissionFailure: Signing, submission or the ledger failed
            SubmissionTimeout: Signing plus inclusion exceeded the confirmation timeout
        """
        if not self._health.is_ready:
            logger.error("Refusing lift, blockchain not connected/ready")
            audit_log.lift_rejected("chain_not_ready")
            raise ServiceUnavailable()

        if not cp_id or not did or not isinstance(cp_id, str):
            audit_log.lift_rejected("missing_fields")
            raise InvalidRequest()

        if not is_valid_w3cp_did(did):
            logger.error("Invalid DID format: %s", did)
            audit_log.lift_rejected("invalid_did", cp_id=cp_id, did=str(did))
            raise InvalidIdentifierFormat()

        key = attestation_key(cp_id, did)
        async with self._cache.exclusive(key):
            if key in self._cache:
                logger.error("Duplicate attestation detected in cache %s %s", cp_id, did)
                audit_log.lift_rejected("duplicate", cp_id=cp_id, did=did)
                raise DuplicateAttestation(cp_id, did)

            audit_log.lift_request(cp_id, did)
            return await self._submit(key, build_payload(cp_id, did, ts=self._clock()))

    async def _submit(self, key: str, payload: AttestationPayload) -> AttestationReceipt:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            subscription = await asyncio.wait_for(self._sign_and_submit(payload), self._timeout)
        except asyncio.TimeoutError:
            detail = f"no submission within {self._timeout}s"
            logger.error("Signing timed out for cpId=%s", payload.cp_id)
            audit_log.lift_failed(payload.cp_id, payload.did, detail)
            raise SubmissionTimeout(detail=detail)
        except Exception as e:
            logger.exception("Exception in signing")
            audit_log.lift_failed(payload.cp_id, payload.did, str(e))
            raise SubmissionFailure("signing failed", detail=str(e) or type(e).__name__)

        remaining = None
        if self._timeout is not None:
            remaining = max(self._timeout - (loop.time() - started), 0.0)

        logger.info("Waiting for chain confirmation of %s", subscription.tx_hash)
        try:
            outcome = await await_inclusion(subscription, remaining)
        except Exception as e:
            logger.exception("Status subscription failed for %s", subscription.tx_hash)
            audit_log.lift_failed(payload.cp_id, payload.did, str(e), tx_hash=subscription.tx_hash)
            raise SubmissionFailure(detail=str(e) or type(e).__name__)

        if outcome.kind is OutcomeKind.TIMED_OUT:
            audit_log.lift_failed(payload.cp_id, payload.did, outcome.detail, tx_hash=outcome.tx_hash)
            raise SubmissionTimeout(detail=f"{outcome.tx_hash}: no inclusion within {self._timeout}s")
        if outcome.kind is OutcomeKind.FAILED:
            logger.error("Tx failed %s: %s", outcome.tx_hash, outcome.detail)
            audit_log.lift_failed(payload.cp_id, payload.did, outcome.detail, tx_hash=outcome.tx_hash)
            raise SubmissionFailure(detail=outcome.detail)

        block_number = await self._resolve_block_number(outcome.block_hash)

        self._cache.add(key)

        receipt = build_receipt(
            payload,
            network=self._network,
            explorer_template=self._explorer_url,
            tx_hash=outcome.tx_hash,
            block_hash=outcome.block_hash,
            block_number=block_number,
            attester=self._identity.address,
        )
        audit_log.lift_confirmed(
            payload.cp_id, payload.did, outcome.tx_hash, outcome.block_hash, block_number
        )
        return receipt

    async def _sign_and_submit(self, payload: AttestationPayload) -> Subscription:
        call = await self._client.build_remark(encode_remark(payload))
        return await self._client.sign_and_submit(call, self._identity)

    async def _resolve_block_number(self, block_hash: str) -> Optional[int]:
        # best effort: inclusion already happened, a missing height is not a failure
        try:
            return await self._client.fetch_block_number(block_hash)
        except Exception as e:
            logger.warning("Could not resolve block number for %s: %s", block_hash, e)
            return None

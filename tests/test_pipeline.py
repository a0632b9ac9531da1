"""
Tests for the attestation pipeline.

All tests use the fake ledger client from conftest, no network calls.

Test plan:
- Success: receipt fields, remark bytes, cache updated only on inclusion,
  subscription closed
- Gating order: health before validation, presence before format,
  dedup before submission
- Failures: ledger FAILED status, submit exception, hung signing, stream exception,
  stream ending early, timeout; none of them touch the cache
- Block height lookup failure still succeeds with block_number None
- Concurrency: identical concurrent lifts submit once
"""

import asyncio

import pytest

from w3cp_signer.cache import AttestationCache, attestation_key
from w3cp_signer.errors import (
    DuplicateAttestation,
    InvalidIdentifierFormat,
    InvalidRequest,
    ServiceUnavailable,
    SubmissionFailure,
    SubmissionTimeout,
)
from w3cp_signer.health import ConnectionHealthTracker
from w3cp_signer.ledger import TxStatus, TxStatusKind
from w3cp_signer.pipeline import AttestationPipeline, OutcomeKind, await_inclusion
from w3cp_signer.receipt import REMARK_PREFIX, decode_remark

from conftest import ATTESTER, BLOCK_HASH, IN_BLOCK, FakeLedgerClient, FakeSubscription, make_did

FAILED = [TxStatus(TxStatusKind.READY), TxStatus(TxStatusKind.FAILED, detail="invalid")]


def _pipeline(client, identity, **kwargs):
    health = ConnectionHealthTracker()
    health.bind(client)
    kwargs.setdefault("confirmation_timeout", 1.0)
    kwargs.setdefault("clock", lambda: 1700000000)
    return AttestationPipeline(client, identity, AttestationCache(), health, **kwargs)


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lift_returns_receipt(pipeline, ledger):
    did = make_did()
    receipt = await pipeline.attest("CP1", did)

    assert receipt.block_number == 1000
    assert receipt.block_hash == BLOCK_HASH
    assert receipt.tx_hash == ledger.subscriptions[0].tx_hash
    assert receipt.explorer_url == f"https://westend.subscan.io/extrinsic/{receipt.tx_hash}"
    assert receipt.network == "westend"
    assert receipt.attester == ATTESTER
    assert receipt.payload.cp_id == "CP1"
    assert receipt.payload.did == did
    assert receipt.payload.ts == 1700000000
    assert receipt.lifted_at.endswith("Z")

    body = receipt.to_dict()
    assert body["payload"] == {"v": 1, "cpId": "CP1", "did": did, "ts": 1700000000}
    assert body["blockNumber"] == 1000


@pytest.mark.asyncio
async def test_remark_carries_tagged_payload(pipeline, ledger):
    did = make_did()
    await pipeline.attest("CP1", did)

    remark = ledger.remarks[0]
    assert remark.startswith(REMARK_PREFIX.encode())
    assert remark == (
        'W3CP_BIND:{"v":1,"cpId":"CP1","did":"%s","ts":1700000000}' % did
    ).encode()
    assert decode_remark(remark).cp_id == "CP1"


@pytest.mark.asyncio
async def test_cache_updated_after_inclusion(pipeline, ledger):
    did = make_did()
    assert len(pipeline.cache) == 0
    await pipeline.attest("CP1", did)
    assert attestation_key("CP1", did) in pipeline.cache
    assert ledger.subscriptions[0].close_calls == 1


@pytest.mark.asyncio
async def test_finalized_counts_as_inclusion(identity):
    client = FakeLedgerClient(statuses=[TxStatus(TxStatusKind.FINALIZED, block_hash=BLOCK_HASH)])
    receipt = await _pipeline(client, identity).attest("CP1", make_did())
    assert receipt.block_hash == BLOCK_HASH


@pytest.mark.asyncio
async def test_signer_identity_passed_to_ledger(pipeline, ledger, identity):
    await pipeline.attest("CP1", make_did())
    call, used = ledger.submissions[0]
    assert used is identity
    assert call["call_function"] == "remark"


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_not_ready_refuses_before_validation(pipeline, ledger):
    ledger.emit("disconnected")
    with pytest.raises(ServiceUnavailable):
        await pipeline.attest(None, "garbage")
    assert ledger.remarks == []
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_ready_again_after_reconnect(pipeline, ledger):
    ledger.emit("error", OSError("link down"))
    with pytest.raises(ServiceUnavailable):
        await pipeline.attest("CP1", make_did())
    ledger.emit("ready")
    receipt = await pipeline.attest("CP1", make_did())
    assert receipt.block_number == 1000


@pytest.mark.asyncio
@pytest.mark.parametrize("cp_id,did", [(None, "x"), ("", "x"), ("CP1", None), ("CP1", "")])
async def test_missing_fields(pipeline, cp_id, did):
    with pytest.raises(InvalidRequest) as exc:
        await pipeline.attest(cp_id, did)
    assert type(exc.value) is InvalidRequest


@pytest.mark.asyncio
async def test_invalid_did_format(pipeline, ledger):
    with pytest.raises(InvalidIdentifierFormat):
        await pipeline.attest("CP1", "did:w3cp:0OIl")
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_duplicate_after_success(pipeline, ledger):
    did = make_did()
    await pipeline.attest("CP1", did)
    with pytest.raises(DuplicateAttestation) as exc:
        await pipeline.attest("CP1", did)
    assert exc.value.to_body() == {"error": "Already attested on-chain", "cpId": "CP1", "did": did}
    assert len(ledger.submissions) == 1


@pytest.mark.asyncio
async def test_same_did_other_cp_is_distinct(pipeline, ledger):
    did = make_did()
    await pipeline.attest("CP1", did)
    await pipeline.attest("CP2", did)
    assert len(pipeline.cache) == 2


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ledger_failure_leaves_cache_unchanged(identity):
    client = FakeLedgerClient(statuses=FAILED)
    pipeline = _pipeline(client, identity)
    did = make_did()

    with pytest.raises(SubmissionFailure) as exc:
        await pipeline.attest("CP1", did)

    assert exc.value.status_code == 500
    assert exc.value.detail == "invalid"
    assert attestation_key("CP1", did) not in pipeline.cache
    assert client.subscriptions[0].close_calls == 1
    assert client.block_lookups == []


@pytest.mark.asyncio
async def test_failure_then_retry_succeeds(identity):
    client = FakeLedgerClient(scripts=[FAILED])
    pipeline = _pipeline(client, identity)
    did = make_did()

    with pytest.raises(SubmissionFailure):
        await pipeline.attest("CP1", did)
    receipt = await pipeline.attest("CP1", did)
    assert receipt.payload.did == did
    assert len(client.submissions) == 2


@pytest.mark.asyncio
async def test_submit_exception(identity):
    client = FakeLedgerClient(submit_error=RuntimeError("bad nonce"))
    pipeline = _pipeline(client, identity)

    with pytest.raises(SubmissionFailure) as exc:
        await pipeline.attest("CP1", make_did())
    assert exc.value.to_body() == {"error": "signing failed", "detail": "bad nonce"}
    assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_stream_exception(identity):
    client = FakeLedgerClient(statuses=[TxStatus(TxStatusKind.READY)], stream_error=ConnectionError("ws closed"))
    pipeline = _pipeline(client, identity)

    with pytest.raises(SubmissionFailure) as exc:
        await pipeline.attest("CP1", make_did())
    assert exc.value.detail == "ws closed"
    assert client.subscriptions[0].close_calls == 1
    assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_stream_ends_without_inclusion(identity):
    client = FakeLedgerClient(statuses=[TxStatus(TxStatusKind.READY)])
    with pytest.raises(SubmissionFailure) as exc:
        await _pipeline(client, identity).attest("CP1", make_did())
    assert "ended before inclusion" in exc.value.detail


@pytest.mark.asyncio
async def test_timeout_does_not_cache(identity):
    client = FakeLedgerClient(statuses=[TxStatus(TxStatusKind.READY)], hang=True)
    pipeline = _pipeline(client, identity, confirmation_timeout=0.05)
    did = make_did()

    with pytest.raises(SubmissionTimeout) as exc:
        await pipeline.attest("CP1", did)

    assert exc.value.status_code == 504
    assert attestation_key("CP1", did) not in pipeline.cache
    assert client.subscriptions[0].close_calls == 1
    assert pipeline.cache.pending() == 0


@pytest.mark.asyncio
async def test_hung_signing_times_out(identity):
    client = FakeLedgerClient(submit_hang=True)
    pipeline = _pipeline(client, identity, confirmation_timeout=0.05)
    did = make_did()

    with pytest.raises(SubmissionTimeout) as exc:
        await asyncio.wait_for(pipeline.attest("CP1", did), 1.0)

    assert exc.value.status_code == 504
    assert "no submission" in exc.value.detail
    assert attestation_key("CP1", did) not in pipeline.cache
    assert pipeline.cache.pending() == 0

    client.submit_hang = False
    receipt = await pipeline.attest("CP1", did)
    assert receipt.payload.did == did


@pytest.mark.asyncio
async def test_block_number_lookup_failure_is_best_effort(identity):
    client = FakeLedgerClient(block_error=ValueError("Could not decode block"))
    pipeline = _pipeline(client, identity)
    did = make_did()

    receipt = await pipeline.attest("CP1", did)

    assert receipt.block_number is None
    assert receipt.to_dict()["blockNumber"] is None
    assert attestation_key("CP1", did) in pipeline.cache


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_identical_lifts_submit_once(pipeline, ledger):
    did = make_did()
    results = await asyncio.gather(
        pipeline.attest("CP1", did),
        pipeline.attest("CP1", did),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    duplicates = [r for r in results if isinstance(r, DuplicateAttestation)]
    assert len(successes) == 1
    assert len(duplicates) == 1
    assert len(ledger.submissions) == 1


@pytest.mark.asyncio
async def test_concurrent_lift_retries_after_first_fails(identity):
    client = FakeLedgerClient(scripts=[FAILED])
    pipeline = _pipeline(client, identity)
    did = make_did()

    results = await asyncio.gather(
        pipeline.attest("CP1", did),
        pipeline.attest("CP1", did),
        return_exceptions=True,
    )

    assert isinstance(results[0], SubmissionFailure)
    assert results[1].payload.did == did
    assert len(client.submissions) == 2


@pytest.mark.asyncio
async def test_concurrent_distinct_lifts_all_succeed(pipeline, ledger):
    dids = [make_did() for _ in range(5)]
    receipts = await asyncio.gather(*(pipeline.attest("CP1", d) for d in dids))
    assert len({r.tx_hash for r in receipts}) == 5
    assert len(pipeline.cache) == 5


# ---------------------------------------------------------------------------
# await_inclusion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_await_inclusion_outcomes():
    included = await await_inclusion(FakeSubscription("0x01", IN_BLOCK), timeout=1.0)
    assert included.kind is OutcomeKind.INCLUDED
    assert included.block_hash == BLOCK_HASH
    assert included.tx_hash == "0x01"

    failed = await await_inclusion(FakeSubscription("0x02", FAILED), timeout=1.0)
    assert failed.kind is OutcomeKind.FAILED
    assert failed.detail == "invalid"

    hung = FakeSubscription("0x03", [], hang=True)
    timed_out = await await_inclusion(hung, timeout=0.01)
    assert timed_out.kind is OutcomeKind.TIMED_OUT
    assert hung.close_calls == 1

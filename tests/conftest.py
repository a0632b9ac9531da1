import asyncio
from collections import defaultdict

import pytest
from nacl.signing import SigningKey

from w3cp_signer import main
from w3cp_signer.cache import AttestationCache
from w3cp_signer.config import Settings
from w3cp_signer.did import did_from_verify_key
from w3cp_signer.health import ConnectionHealthTracker
from w3cp_signer.keys import SigningIdentity
from w3cp_signer.ledger import TxStatus, TxStatusKind
from w3cp_signer.pipeline import AttestationPipeline

ATTESTER = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
BLOCK_HASH = "0x" + "ab" * 32

IN_BLOCK = [
    TxStatus(TxStatusKind.READY),
    TxStatus(TxStatusKind.BROADCAST),
    TxStatus(TxStatusKind.IN_BLOCK, block_hash=BLOCK_HASH),
]


def make_did() -> str:
    return did_from_verify_key(SigningKey.generate().verify_key)


class FakeSubscription:
    """Scripted status stream; can end, raise, or hang after the script."""

    def __init__(self, tx_hash, statuses, *, hang=False, error=None):
        self._tx_hash = tx_hash
        self._statuses = list(statuses)
        self._hang = hang
        self._error = error
        self.close_calls = 0

    @property
    def tx_hash(self):
        return self._tx_hash

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for status in self._statuses:
            await asyncio.sleep(0)
            yield status
        if self._error is not None:
            raise self._error
        if self._hang:
            await asyncio.Event().wait()

    async def close(self):
        self.close_calls += 1


class FakeLedgerClient:
    """
    Minimal LedgerClient for testing.

    ``scripts`` is a list of status lists consumed one per submission;
    once exhausted, ``statuses`` is used for every further submission.
    """

    def __init__(
        self,
        *,
        statuses=None,
        scripts=None,
        block_number=1000,
        block_error=None,
        submit_error=None,
        stream_error=None,
        hang=False,
        submit_hang=False
    ):
        self.statuses = IN_BLOCK if statuses is None else statuses
        self.scripts = list(scripts or [])
        self.block_number = block_number
        self.block_error = block_error
        self.submit_error = submit_error
        self.stream_error = stream_error
        self.hang = hang
        self.submit_hang = submit_hang
        self.handlers = defaultdict(list)
        self.remarks = []
        self.submissions = []
        self.subscriptions = []
        self.block_lookups = []
        self.connected = False

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def emit(self, event, *args):
        for handler in self.handlers[event]:
            handler(*args)

    async def connect(self):
        self.connected = True
        self.emit("connected")
        self.emit("ready")

    async def close(self):
        self.connected = False

    async def build_remark(self, data):
        self.remarks.append(data)
        return {"call_module": "System", "call_function": "remark", "remark": data}

    async def sign_and_submit(self, call, identity):
        if self.submit_hang:
            await asyncio.Event().wait()
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((call, identity))
        statuses = self.scripts.pop(0) if self.scripts else self.statuses
        subscription = FakeSubscription(
            "0x%064x" % len(self.submissions),
            statuses,
            hang=self.hang,
            error=self.stream_error,
        )
        self.subscriptions.append(subscription)
        return subscription

    async def fetch_block_number(self, block_hash):
        self.block_lookups.append(block_hash)
        if self.block_error is not None:
            raise self.block_error
        return self.block_number


@pytest.fixture
def identity():
    return SigningIdentity(address=ATTESTER, public_key=b"\x01" * 32, keypair=None)


@pytest.fixture
def settings():
    return Settings(mnemonic="//Alice", expected_address=ATTESTER)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def health(ledger):
    tracker = ConnectionHealthTracker()
    tracker.bind(ledger)
    return tracker


@pytest.fixture
def pipeline(ledger, identity, health):
    return AttestationPipeline(
        ledger,
        identity,
        AttestationCache(),
        health,
        confirmation_timeout=1.0,
        clock=lambda: 1700000000,
    )


@pytest.fixture
def signer(settings, identity, ledger):
    """Install a signer context around the fake ledger for HTTP tests."""
    context = main.build_context(settings, identity, ledger)
    main.install(context)
    yield context
    main.install(None)

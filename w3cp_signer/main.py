"""
HTTP surface and entry point for the W3CP signer.

Wires the attester key, ledger client, health tracker, cache and
pipeline at startup, serves ``GET /health`` and ``POST /chain/lift``,
and runs uvicorn from the ``w3cp-signer`` command.
"""

import argparse
import logging
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .cache import AttestationCache
from .config import Settings, is_debug, load_settings, validate_config
from .errors import InvalidRequest, ServiceUnavailable, SignerError, StartupError
from .health import ConnectionHealthTracker
from .keys import SigningIdentity, load_signing_identity
from .ledger import LedgerClient
from .logging_config import configure_logging, set_request_id
from .models import HealthResponse, LiftRequest
from .pipeline import AttestationPipeline
from .substrate import SubstrateLedgerClient

logger = logging.getLogger(__name__)

app = FastAPI(title="W3CP Signer")


@dataclass
class SignerContext:
    """Everything the endpoints need, wired once at startup."""
    identity: SigningIdentity
    client: LedgerClient
    health: ConnectionHealthTracker
    cache: AttestationCache
    pipeline: AttestationPipeline


SETTINGS: Optional[Settings] = None
SIGNER: Optional[SignerContext] = None


def build_context(
    settings: Settings,
    identity: SigningIdentity,
    client: LedgerClient,
    cache: Optional[AttestationCache] = None
) -> SignerContext:
    """Wire tracker, cache and pipeline around a connected ledger client."""
    health = ConnectionHealthTracker()
    health.bind(client)
    cache = cache if cache is not None else AttestationCache()
    pipeline = AttestationPipeline(
        client,
        identity,
        cache,
        health,
        network=settings.network,
        explorer_url=settings.explorer_url,
        confirmation_timeout=settings.confirmation_timeout,
    )
    return SignerContext(identity=identity, client=client, health=health, cache=cache, pipeline=pipeline)


async def bootstrap(settings: Settings) -> SignerContext:
    """
    Load the attester key, connect to the chain and wire the pipeline.

    Raises:
        StartupError: Wrong key or unreachable chain. The server must not start.
    """
    logger.info("Starting W3CP Signer, chain endpoint %s", settings.endpoint)
    identity = load_signing_identity(settings.mnemonic, settings.expected_address, settings.ss58_format)

    client = SubstrateLedgerClient(
        settings.endpoint,
        ss58_format=settings.ss58_format,
        heartbeat_seconds=settings.heartbeat_seconds,
    )
    try:
        await client.connect()
    except Exception as e:
        raise StartupError("could not connect to blockchain", detail=str(e) or type(e).__name__)
    logger.info("Connected to blockchain")

    # no chain history scan: the cache starts empty and fills as lifts land
    return build_context(settings, identity, client)


def install(context: Optional[SignerContext]) -> None:
    global SIGNER
    SIGNER = context


def _context() -> SignerContext:
    if SIGNER is None:
        raise ServiceUnavailable()
    return SIGNER


@app.on_event("startup")
async def _startup():
    global SETTINGS
    if SIGNER is not None:
        return
    if SETTINGS is None:
        SETTINGS = load_settings()
    install(await bootstrap(SETTINGS))


@app.on_event("shutdown")
async def _shutdown():
    if SIGNER is not None:
        await SIGNER.client.close()
    install(None)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(SignerError)
async def _signer_error(request: Request, exc: SignerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def _invalid_body(request: Request, exc: RequestValidationError):
    if SIGNER is None or not SIGNER.health.is_ready:
        error = ServiceUnavailable()
    else:
        error = InvalidRequest()
    logger.warning("Unparseable lift body: %s", exc.errors())
    return JSONResponse(status_code=error.status_code, content=error.to_body())


@app.get("/health", response_model=HealthResponse)
def health():
    ctx = _context()
    return {"status": "ok", "attester": ctx.identity.address, "cacheSize": len(ctx.cache)}


@app.post("/chain/lift")
async def chain_lift(req: Optional[LiftRequest] = None):
    req = req or LiftRequest()
    logger.info("Verifying request")
    receipt = await _context().pipeline.attest(req.cpId, req.did)
    logger.info("Lift done successfully: %s", receipt.tx_hash)
    return receipt.to_dict()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="w3cp-signer")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--no-json-logs", action="store_true")
    args = parser.parse_args(argv)

    global SETTINGS
    try:
        SETTINGS = load_settings()
    except StartupError as e:
        configure_logging(level=args.log_level or "INFO", json_format=not args.no_json_logs)
        logger.critical("%s (present: %s)", e, validate_config())
        raise SystemExit(1)

    configure_logging(
        level=args.log_level or ("DEBUG" if is_debug() else SETTINGS.log_level),
        json_format=SETTINGS.log_json and not args.no_json_logs,
    )
    host = args.host or SETTINGS.host
    port = args.port or SETTINGS.port
    logger.info("W3CP Signer listening on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()

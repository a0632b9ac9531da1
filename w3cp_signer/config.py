"""
Configuration module for the W3CP signer.

Centralizes all configuration with environment variable support
and validation. Values are read once at startup into a frozen
``Settings`` instance.
"""

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .errors import StartupError

# ============================================================
# Environment Configuration
# ============================================================

MNEMONIC_ENV = "W3CP_ATTESTER_MNEMONIC"
EXPECTED_ADDRESS_ENV = "W3CP_SIGNER_PUB_KEY"
ENDPOINT_ENV = "W3CP_BLOCKCHAIN_ENDPOINT"

DEFAULT_ENDPOINT = "wss://westend-rpc.polkadot.io"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9999
DEFAULT_NETWORK = "westend"
DEFAULT_EXPLORER_URL = "https://westend.subscan.io/extrinsic/{tx_hash}"

# Generic Substrate address format, used by Westend.
DEFAULT_SS58_FORMAT = 42

# Seconds to wait for block inclusion before giving up on a lift.
DEFAULT_CONFIRMATION_TIMEOUT = 120.0

# Seconds between ledger liveness probes.
DEFAULT_HEARTBEAT_SECONDS = 15.0


@dataclass(frozen=True)
class Settings:
    """Process configuration, immutable after startup."""
    mnemonic: str
    expected_address: str
    endpoint: str = DEFAULT_ENDPOINT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    network: str = DEFAULT_NETWORK
    explorer_url: str = DEFAULT_EXPLORER_URL
    ss58_format: int = DEFAULT_SS58_FORMAT
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    log_level: str = "INFO"
    log_json: bool = True

    def __repr__(self) -> str:
        # keep the mnemonic out of tracebacks and debug output
        return (
            f"Settings(expected_address={self.expected_address!r}, endpoint={self.endpoint!r}, "
            f"host={self.host!r}, port={self.port}, network={self.network!r})"
        )


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise StartupError(f"{name} must be a number", detail=raw)
    if value <= 0:
        raise StartupError(f"{name} must be positive", detail=raw)
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build ``Settings`` from the environment.

    Args:
        env: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Validated Settings

    Raises:
        StartupError: If the mnemonic or expected address is missing,
            or a numeric setting cannot be parsed
    """
    if env is None:
        env = os.environ

    mnemonic = (env.get(MNEMONIC_ENV) or "").strip()
    expected = (env.get(EXPECTED_ADDRESS_ENV) or "").strip()
    if not mnemonic or not expected:
        raise StartupError(
            f"Missing env vars. Need {MNEMONIC_ENV} + {EXPECTED_ADDRESS_ENV}"
        )

    return Settings(
        mnemonic=mnemonic,
        expected_address=expected,
        endpoint=env.get(ENDPOINT_ENV) or DEFAULT_ENDPOINT,
        host=env.get("W3CP_SIGNER_HOST") or DEFAULT_HOST,
        port=_number(env, "W3CP_SIGNER_PORT", DEFAULT_PORT, int),
        network=env.get("W3CP_NETWORK") or DEFAULT_NETWORK,
        explorer_url=env.get("W3CP_EXPLORER_URL") or DEFAULT_EXPLORER_URL,
        ss58_format=_number(env, "W3CP_SS58_FORMAT", DEFAULT_SS58_FORMAT, int),
        confirmation_timeout=_number(env, "W3CP_CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT, float),
        heartbeat_seconds=_number(env, "W3CP_HEARTBEAT_SECONDS", DEFAULT_HEARTBEAT_SECONDS, float),
        log_level=(env.get("W3CP_LOG_LEVEL") or "INFO").upper(),
        log_json=_flag(env.get("W3CP_LOG_JSON"), True),
    )


# ============================================================
# Validation
# ============================================================

def validate_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, bool]:
    """
    Report which required settings are present.
    Returns dict of name -> present, never the values themselves.
    """
    if env is None:
        env = os.environ
    return {
        "mnemonic": bool((env.get(MNEMONIC_ENV) or "").strip()),
        "expected_address": bool((env.get(EXPECTED_ADDRESS_ENV) or "").strip()),
        "endpoint": bool(env.get(ENDPOINT_ENV)),
    }


# ============================================================
# Feature Flags
# ============================================================

def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("W3CP_DEBUG", "").lower() in ("1", "true", "yes")

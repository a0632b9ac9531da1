"""
W3CP decentralized identifier validation.

A W3CP DID binds to a raw 32-byte Ed25519 public key:

    did:w3cp:<base58(pubkey)>

This is the same form the charge-point firmware derives from its own
key pair, so the signer only has to check syntax and decoded length.
"""

import re
from typing import Any

import base58
from nacl.signing import VerifyKey

DID_PREFIX = "did:w3cp:"

# Bitcoin base-58 alphabet: no 0, O, I or l.
BASE58_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]+$')

PUBLIC_KEY_LENGTH = 32


def is_valid_w3cp_did(did: Any) -> bool:
    """
    Check that ``did`` is ``did:w3cp:`` followed by base-58 of exactly 32 bytes.

    Never raises; anything that is not a well-formed W3CP DID is False.
    """
    if not isinstance(did, str):
        return False
    if not did.startswith(DID_PREFIX):
        return False

    payload = did[len(DID_PREFIX):]
    if not BASE58_PATTERN.match(payload):
        return False

    try:
        decoded = base58.b58decode(payload)
    except Exception:
        return False
    return len(decoded) == PUBLIC_KEY_LENGTH


def did_from_public_key(public_key: bytes) -> str:
    """Render the DID for a raw 32-byte Ed25519 public key."""
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValueError(f"public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}")
    return DID_PREFIX + base58.b58encode(public_key).decode("ascii")


def did_from_verify_key(verify_key: VerifyKey) -> str:
    """Render the DID for a PyNaCl Ed25519 verify key."""
    return did_from_public_key(bytes(verify_key))

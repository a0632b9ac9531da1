"""
Signing identity for the W3CP signer.

The attester key is an sr25519 keypair derived from a pre-provisioned
mnemonic. It is loaded once at startup and checked against the address
the operator expects; a mismatch is fatal so the process never signs
with the wrong account.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from substrateinterface import Keypair, KeypairType

from .config import DEFAULT_SS58_FORMAT
from .errors import StartupError
from .logging_config import audit_log
from .util import mask_sensitive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningIdentity:
    """
    Public address plus the keypair that signs for it.

    The keypair is excluded from repr and comparison; only the
    address identifies the signer in logs and receipts.
    """
    address: str
    public_key: bytes
    keypair: Any = field(repr=False, compare=False)


def derive_signing_identity(mnemonic: str, ss58_format: int = DEFAULT_SS58_FORMAT) -> SigningIdentity:
    """
    Derive the sr25519 identity for a mnemonic or secret URI.

    Raises:
        StartupError: If the secret cannot be turned into a keypair
    """
    try:
        keypair = Keypair.create_from_uri(
            mnemonic,
            ss58_format=ss58_format,
            crypto_type=KeypairType.SR25519,
        )
    except Exception as e:
        # the exception text may echo the secret
        raise StartupError(
            "could not derive signing key",
            detail=f"{type(e).__name__} for secret {mask_sensitive(mnemonic)}",
        )
    return SigningIdentity(
        address=keypair.ss58_address,
        public_key=bytes(keypair.public_key),
        keypair=keypair,
    )


def load_signing_identity(
    mnemonic: str,
    expected_address: str,
    ss58_format: int = DEFAULT_SS58_FORMAT
) -> SigningIdentity:
    """
    Derive the attester identity and assert it is the expected one.

    Args:
        mnemonic: Secret phrase (or secret URI) of the attester account
        expected_address: SS58 address the operator provisioned
        ss58_format: Address format of the target network

    Returns:
        The verified SigningIdentity

    Raises:
        StartupError: On derivation failure or address mismatch
    """
    identity = derive_signing_identity(mnemonic, ss58_format)
    logger.info("Loaded attester address %s", identity.address)

    if identity.address != expected_address:
        audit_log.security_event(
            "ATTESTER_KEY_MISMATCH",
            severity="critical",
            expected=expected_address,
            loaded=identity.address,
        )
        raise StartupError(
            "INVALID KEY LOADED",
            detail=f"expected {expected_address}, got {identity.address}",
        )

    logger.info("Correct attester key loaded")
    return identity

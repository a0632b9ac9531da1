"""
Error taxonomy for the W3CP signer.

Every failure the lift endpoint can report is a ``SignerError`` carrying
its HTTP status and the JSON body the caller sees. ``StartupError`` is the
only fatal kind: it is raised while the process is being wired and stops
the server before it accepts requests.
"""

from typing import Any, Dict, Optional


class SignerError(Exception):
    """Base class for errors surfaced to lift callers."""

    status_code = 500
    message = "internal error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message if detail is None else f"{self.message}: {detail}")

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class StartupError(SignerError):
    """Missing configuration or wrong signing identity. The process must not serve."""

    message = "startup failed"


class ServiceUnavailable(SignerError):
    """The ledger link is down or reconnecting; the caller should retry later."""

    status_code = 503
    message = "Blockchain not connected"


class InvalidRequest(SignerError):
    status_code = 400
    message = "cpId and did are required"


class InvalidIdentifierFormat(InvalidRequest):
    message = "Invalid DID format. Must be did:w3cp:<base58(32-byte-pubkey)>"


class DuplicateAttestation(SignerError):
    """The (cpId, did) pair was already lifted by this process."""

    status_code = 409
    message = "Already attested on-chain"

    def __init__(self, cp_id: str, did: str):
        self.cp_id = cp_id
        self.did = did
        super().__init__()

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "cpId": self.cp_id, "did": self.did}


class SubmissionFailure(SignerError):
    """Signing, submission, or the ledger itself failed. No attestation occurred."""

    status_code = 500
    message = "tx failed"


class SubmissionTimeout(SubmissionFailure):
    """No terminal status arrived in time. The transaction's outcome is unknown."""

    status_code = 504
    message = "tx confirmation timed out"

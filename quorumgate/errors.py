"""
Errors
Every failure the authorization core reports to its caller.

Nothing here is retried internally. Signing-side errors are raised.
Verification-side errors carry a risk score and are normally returned
inside a VerificationResult, so a failed check is always "not authorized".
"""


class QuorumGateError(Exception):
    """Base class for all quorumgate errors."""


class ConfigError(QuorumGateError):
    """Invalid parameters (threshold, share set, request setup)."""


class InsufficientSharesError(QuorumGateError):
    """Fewer than `threshold` distinct shares were supplied."""


class RequestNotFoundError(QuorumGateError):
    """No open signature request with that id (never created, or evicted)."""


class DuplicateSignerError(QuorumGateError):
    """A share index tried to contribute twice to one request."""


class VerificationError(QuorumGateError):
    """A proof failed verification."""

    risk_score = 100
    code = "invalid"

    def __init__(self, message: str, metadata: dict = None):
        super().__init__(message)
        self.metadata = metadata or {}


class ReplayError(VerificationError):
    risk_score = 100
    code = "replay"


class ExpiredProofError(VerificationError):
    risk_score = 50
    code = "expired"


class ResourceMismatchError(VerificationError):
    risk_score = 80
    code = "resource_mismatch"


class ActionMismatchError(VerificationError):
    risk_score = 80
    code = "action_mismatch"


class InvalidProofError(VerificationError):
    risk_score = 100
    code = "forged_proof"

"""
quorumgate: Distributed-trust authorization core.

Two protocols behind an access-control decision point:
1. Threshold signing: a key split M-of-N with Shamir's Secret Sharing;
   a message is signed once M holders contribute partial signatures.
2. Anonymous authorization: requesters present commitment-based proofs
   with single-use nullifiers; verifiers check freshness, resource/action
   binding and replay before granting access.

Usage:
    from quorumgate import AuthorizationCore
    with AuthorizationCore() as core:
        proof = core.proofs.generate_proof("alice", "doc-42", "read", 70, ["user"], sig)
        result = core.verifier.verify_proof(proof, "doc-42", "read")
"""

from quorumgate.core import AuthorizationCore
from quorumgate.shamir import generate_shares, reconstruct_secret, split, combine, Share
from quorumgate.keystore import KeyShare, MemoryKeyShareStore, FileKeyShareStore
from quorumgate.threshold import (
    ThresholdKeyManager,
    SignatureRequestCoordinator,
    SignatureRequest,
    SignatureProgress,
    RequestState,
)
from quorumgate.commitments import ProofGenerator, ProofCache, ZKProof, commit
from quorumgate.nullifiers import MemoryNullifierRegistry, SqliteNullifierRegistry, NullifierAdministration
from quorumgate.verifier import ProofVerifier, VerificationResult
from quorumgate.tokens import AnonymousTokenIssuer
from quorumgate.audit import MemoryAuditSink, JsonlAuditSink, LoggingAuditSink
from quorumgate.logging_config import configure_logging
from quorumgate.errors import (
    QuorumGateError,
    ConfigError,
    InsufficientSharesError,
    RequestNotFoundError,
    DuplicateSignerError,
    VerificationError,
    ReplayError,
    ExpiredProofError,
    ResourceMismatchError,
    ActionMismatchError,
    InvalidProofError,
)

__version__ = "0.1.0"
__all__ = [
    "AuthorizationCore",
    "generate_shares",
    "reconstruct_secret",
    "split",
    "combine",
    "Share",
    "KeyShare",
    "MemoryKeyShareStore",
    "FileKeyShareStore",
    "ThresholdKeyManager",
    "SignatureRequestCoordinator",
    "SignatureRequest",
    "SignatureProgress",
    "RequestState",
    "ProofGenerator",
    "ProofCache",
    "ZKProof",
    "commit",
    "MemoryNullifierRegistry",
    "SqliteNullifierRegistry",
    "NullifierAdministration",
    "ProofVerifier",
    "VerificationResult",
    "AnonymousTokenIssuer",
    "MemoryAuditSink",
    "JsonlAuditSink",
    "LoggingAuditSink",
    "configure_logging",
    "QuorumGateError",
    "ConfigError",
    "InsufficientSharesError",
    "RequestNotFoundError",
    "DuplicateSignerError",
    "VerificationError",
    "ReplayError",
    "ExpiredProofError",
    "ResourceMismatchError",
    "ActionMismatchError",
    "InvalidProofError",
]

"""
Proof Verifier
Decides whether an authorization proof grants access.

Checks run in a fixed order and stop at the first failure:

  1. replay     : nullifier already spent          (risk 100)
  2. freshness  : older than the freshness window  (risk 50)
  3. resource   : hash(expected) != resource_hash  (risk 80)
  4. action     : hash(expected) != action_hash    (risk 80)
  5. validity   : structure and proof binding      (risk 100)

Only after all five pass is the nullifier consumed, atomically. Any
unexpected error is reported as an invalid proof: verification never
authorizes by default.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from quorumgate import config
from quorumgate.audit import AuditSink
from quorumgate.commitments import ProofCache, ZKProof
from quorumgate.errors import (
    ActionMismatchError,
    ExpiredProofError,
    InvalidProofError,
    ReplayError,
    ResourceMismatchError,
    VerificationError,
)
from quorumgate.nullifiers import NullifierRegistry
from quorumgate.primitives import is_digest, sha3_hex

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    valid: bool
    reason: str
    risk_score: int
    metadata: dict = field(default_factory=dict)
    error: VerificationError | None = None

    def raise_for_error(self) -> None:
        """Raise the underlying VerificationError if the proof was rejected."""
        if self.error is not None:
            raise self.error
        if not self.valid:
            raise InvalidProofError(self.reason)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "metadata": self.metadata,
            "error": self.error.code if self.error else None,
        }


def _check_structure(proof: ZKProof) -> None:
    digests = {
        "proof_value": proof.proof_value,
        "nullifier": proof.nullifier,
        "resource_hash": proof.public_inputs.resource_hash,
        "action_hash": proof.public_inputs.action_hash,
        "identity_commitment": proof.commitments.identity_commitment,
        "permission_commitment": proof.commitments.permission_commitment,
        "trust_score_commitment": proof.commitments.trust_score_commitment,
    }
    for name, value in digests.items():
        if not is_digest(value):
            raise InvalidProofError(f"Malformed {name}", {"attack_type": "forged_proof", "field": name})

    score = proof.public_inputs.minimum_trust_score
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidProofError("Trust score must be an integer", {"attack_type": "forged_proof"})


class ProofVerifier:
    """
    Verifies proofs against the expected resource and action.

    Args:
        registry: Shared nullifier registry.
        cache: Shared proof cache. When it holds the nullifier, the
            presented proof must be exactly the one that was issued.
        audit_sink: Receives every decision.
        freshness_window: Max proof age in seconds.
        require_issued: Reject proofs the cache has never seen.
        clock: Time source (seconds), injectable for tests.
    """

    def __init__(
        self,
        registry: NullifierRegistry,
        cache: ProofCache | None = None,
        audit_sink: AuditSink | None = None,
        freshness_window: float | None = None,
        require_issued: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.cache = cache
        self.audit_sink = audit_sink
        self.freshness_window = config.FRESHNESS_WINDOW_SECONDS if freshness_window is None else freshness_window
        self.require_issued = require_issued
        self.clock = clock

    def _check(self, proof: ZKProof, expected_resource: str, expected_action: str, now: float) -> None:
        if self.registry.is_consumed(proof.nullifier):
            raise ReplayError(
                "Proof has already been used (replay attack detected)",
                {"attack_type": "replay"},
            )

        proof_age = now - proof.public_inputs.timestamp
        if proof_age > self.freshness_window:
            raise ExpiredProofError("Proof has expired", {"proof_age_seconds": proof_age})

        resource_hash = sha3_hex(expected_resource)
        if proof.public_inputs.resource_hash != resource_hash:
            raise ResourceMismatchError(
                "Resource mismatch",
                {"expected": resource_hash, "got": proof.public_inputs.resource_hash},
            )

        action_hash = sha3_hex(expected_action)
        if proof.public_inputs.action_hash != action_hash:
            raise ActionMismatchError(
                "Action mismatch",
                {"expected": action_hash, "got": proof.public_inputs.action_hash},
            )

        _check_structure(proof)

        if self.cache is not None:
            issued = self.cache.get(proof.nullifier)
            if issued is None and self.require_issued:
                raise InvalidProofError("Proof was not issued by this authority", {"attack_type": "forged_proof"})
            if issued is not None and issued != proof:
                raise InvalidProofError("Proof does not match the issued proof", {"attack_type": "forged_proof"})

    def verify_proof(self, proof: ZKProof | dict, expected_resource: str, expected_action: str) -> VerificationResult:
        """
        Verify a proof and, on success, spend its nullifier.

        Args:
            proof: ZKProof (or its dict form).
            expected_resource: Resource the caller is protecting.
            expected_action: Action being attempted.

        Returns:
            VerificationResult; `valid` is True at most once per nullifier.
        """
        now = self.clock()
        nullifier = None
        try:
            if isinstance(proof, dict):
                proof = ZKProof.from_dict(proof)
            nullifier = proof.nullifier
            self._check(proof, expected_resource, expected_action, now)

            expires_at = proof.public_inputs.timestamp + self.freshness_window
            if not self.registry.try_consume(proof.nullifier, now, expires_at):
                # Lost a race with a concurrent verification of the same proof
                raise ReplayError("Proof has already been used (replay attack detected)", {"attack_type": "replay"})
        except VerificationError as e:
            result = VerificationResult(
                valid=False, reason=str(e), risk_score=e.risk_score, metadata=e.metadata, error=e
            )
        except Exception as e:
            logger.exception("Proof verification error")
            error = InvalidProofError("Cryptographic proof verification failed", {"attack_type": "forged_proof"})
            error.__cause__ = e
            result = VerificationResult(valid=False, reason=str(error), risk_score=100, metadata=error.metadata, error=error)
        else:
            result = VerificationResult(
                valid=True,
                reason="Proof verified successfully",
                risk_score=0,
                metadata={
                    "trust_score_minimum": proof.public_inputs.minimum_trust_score,
                    "verified_at": now,
                },
            )

        if result.error is not None and result.error.code == "replay":
            logger.warning("Replay rejected for nullifier %s", str(nullifier)[:16])
        self._audit(result, nullifier, expected_resource, expected_action)
        return result

    def _audit(self, result: VerificationResult, nullifier, resource: str, action: str) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(
                "AUTHORIZATION_DECISION",
                valid=result.valid,
                reason=result.reason,
                risk_score=result.risk_score,
                error=result.error.code if result.error else None,
                nullifier=nullifier,
                resource_hash=sha3_hex(resource),
                action_hash=sha3_hex(action),
            )
        except Exception:
            # The decision stands; a broken sink must not flip it
            logger.exception("Failed to write authorization decision to audit sink")

    def cleanup_expired_proofs(self) -> dict:
        """
        Drop cached proofs and nullifiers older than the freshness window.
        Best effort: failures are logged and reported, never raised.
        """
        now = self.clock()
        report = {"proofs_removed": 0, "nullifiers_removed": 0, "errors": 0}

        if self.cache is not None:
            try:
                report["proofs_removed"] = self.cache.cleanup(now, self.freshness_window)
            except Exception:
                logger.exception("Proof cache cleanup failed")
                report["errors"] += 1

        try:
            report["nullifiers_removed"] = self.registry.cleanup(now)
        except Exception:
            logger.exception("Nullifier cleanup failed")
            report["errors"] += 1

        if report["proofs_removed"] or report["nullifiers_removed"]:
            logger.info(
                "Cleanup removed %d proofs and %d nullifiers",
                report["proofs_removed"], report["nullifiers_removed"],
            )
        return report

    def statistics(self) -> dict:
        return {
            "active_nullifiers": len(self.registry),
            "cache_size": len(self.cache) if self.cache is not None else 0,
        }

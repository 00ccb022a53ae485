"""
Commitments and Proofs
Anonymous authorization requests built from hiding commitments.

A requester proves "I asked for this action on this resource, with this
signed request, right now" without putting their identity, roles or
trust score on the wire in the clear:

  commit(v)   = H(v || nonce)                 hides v without the nonce
  nullifier   = H(subject || resource || t || salt)   single-use token
  proof_value = H(canonical(commitments, public_inputs, nullifier) || auth_sig)

This is a commitment + replay-protection scheme. It is NOT a
zero-knowledge proof system: nothing here proves a statement about the
committed values, and a verifier checks structure, freshness, binding to
the expected resource/action and single use.

A verifier on its defaults (require_issued=False, as AuthorizationCore
builds it) therefore accepts any well-formed proof for the right
resource and action, including one assembled by hand without
ProofGenerator. Only a shared ProofCache with require_issued=True ties
acceptance to proofs this authority generated.
"""

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable

from quorumgate.errors import ConfigError, InvalidProofError
from quorumgate.primitives import (
    auth_request_bytes,
    canonical_json,
    ed25519_verify,
    sha3_hex,
)

logger = logging.getLogger(__name__)

NONCE_SIZE = 32
NULLIFIER_SALT_SIZE = 16


def commit(value: str) -> tuple[str, str]:
    """
    Hiding commitment to a value.

    Returns:
        (commitment, nonce), both hex. Keep the nonce to open it later.
    """
    nonce = os.urandom(NONCE_SIZE).hex()
    return sha3_hex(value, nonce), nonce


def open_commitment(commitment: str, value: str, nonce: str) -> bool:
    """Check that (value, nonce) opens commitment."""
    return sha3_hex(value, nonce) == commitment


@dataclass(frozen=True)
class PublicInputs:
    resource_hash: str
    action_hash: str
    minimum_trust_score: int
    timestamp: float


@dataclass(frozen=True)
class Commitments:
    identity_commitment: str
    permission_commitment: str
    trust_score_commitment: str


@dataclass(frozen=True)
class ZKProof:
    """An authorization proof. The name is historical, see module docstring."""
    proof_value: str
    public_inputs: PublicInputs
    commitments: Commitments
    nullifier: str

    @property
    def timestamp(self) -> float:
        return self.public_inputs.timestamp

    def binding_payload(self) -> str:
        """Canonical serialization that proof_value commits to."""
        return canonical_json({
            "commitments": asdict(self.commitments),
            "public_inputs": asdict(self.public_inputs),
            "nullifier": self.nullifier,
        })

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ZKProof":
        try:
            return cls(
                proof_value=data["proof_value"],
                public_inputs=PublicInputs(**data["public_inputs"]),
                commitments=Commitments(**data["commitments"]),
                nullifier=data["nullifier"],
            )
        except (KeyError, TypeError) as e:
            raise InvalidProofError(f"Malformed proof: {e}") from e


@dataclass(frozen=True)
class ProofOpening:
    """The private side of a proof: what the requester keeps to open the commitments."""
    subject_id: str
    roles: tuple[str, ...]
    trust_score: int
    identity_nonce: str
    permission_nonce: str
    trust_score_nonce: str


class ProofCache:
    """
    Issued proofs keyed by nullifier, until they age out of the freshness window.
    Shared between the generator and the verifier.
    """

    def __init__(self):
        self._entries: dict[str, tuple[ZKProof, float]] = {}
        self._lock = threading.Lock()

    def put(self, proof: ZKProof, cached_at: float) -> None:
        with self._lock:
            self._entries[proof.nullifier] = (proof, cached_at)

    def get(self, nullifier: str) -> ZKProof | None:
        with self._lock:
            entry = self._entries.get(nullifier)
        return entry[0] if entry else None

    def remove(self, nullifier: str) -> bool:
        with self._lock:
            return self._entries.pop(nullifier, None) is not None

    def cleanup(self, now: float, window: float) -> int:
        """Drop entries whose proof is older than `window`. Returns how many."""
        with self._lock:
            stale = [n for n, (proof, _) in self._entries.items() if now - proof.timestamp > window]
            for nullifier in stale:
                del self._entries[nullifier]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def roles_payload(roles) -> str:
    """Order-independent encoding of a role set."""
    return canonical_json(sorted(set(roles)))


class ProofGenerator:
    """
    Builds authorization proofs for requesters.

    Args:
        cache: Where issued proofs are kept for the verifier.
        clock: Time source (seconds), injectable for tests.
    """

    def __init__(self, cache: ProofCache | None = None, clock: Callable[[], float] = time.time):
        self.cache = cache if cache is not None else ProofCache()
        self.clock = clock
        self._generated = 0

    def generate_proof(
        self,
        subject_id: str,
        resource: str,
        action: str,
        trust_score: int,
        roles: list[str],
        auth_signature: bytes | str,
        subject_public_key: bytes | None = None,
        return_opening: bool = False,
    ) -> ZKProof | tuple[ZKProof, ProofOpening]:
        """
        Generate a proof for one access attempt.

        Args:
            subject_id: Who is asking (hidden behind a commitment).
            resource: Resource requested.
            action: Action requested.
            trust_score: The requester's trust score (0-100).
            roles: The requester's roles (hidden behind a commitment).
            auth_signature: Subject's signature over the request.
            subject_public_key: If given, auth_signature must be a valid
                Ed25519 signature over auth_request_bytes(subject, resource, action).
            return_opening: Also return the commitment openings.

        Returns:
            The proof, or (proof, opening) if return_opening.

        Raises:
            ConfigError: Empty subject/resource/action or non-integer trust score.
            InvalidProofError: auth_signature does not verify.
        """
        if not subject_id or not resource or not action:
            raise ConfigError("subject_id, resource and action are required")
        if isinstance(trust_score, bool) or not isinstance(trust_score, int):
            raise ConfigError("trust_score must be an integer")
        if not auth_signature:
            raise ConfigError("auth_signature is required")

        signature = auth_signature.encode("utf-8") if isinstance(auth_signature, str) else auth_signature
        if subject_public_key is not None:
            if not ed25519_verify(subject_public_key, signature, auth_request_bytes(subject_id, resource, action)):
                raise InvalidProofError("Authorization signature does not verify for subject")

        # 1. Commitments
        identity_commitment, identity_nonce = commit(subject_id)
        permission_commitment, permission_nonce = commit(roles_payload(roles))
        trust_score_commitment, trust_score_nonce = commit(str(trust_score))

        # 2. Nullifier, unique per request
        now = self.clock()
        nullifier = sha3_hex(
            subject_id, "|", resource, "|", time.time_ns(), "|", os.urandom(NULLIFIER_SALT_SIZE).hex()
        )

        # 3. Public inputs
        public_inputs = PublicInputs(
            resource_hash=sha3_hex(resource),
            action_hash=sha3_hex(action),
            minimum_trust_score=trust_score,
            timestamp=now,
        )
        commitments = Commitments(
            identity_commitment=identity_commitment,
            permission_commitment=permission_commitment,
            trust_score_commitment=trust_score_commitment,
        )

        # 4. Bind everything to the subject's signature
        unsigned = ZKProof(proof_value="", public_inputs=public_inputs, commitments=commitments, nullifier=nullifier)
        proof = ZKProof(
            proof_value=sha3_hex(unsigned.binding_payload(), signature),
            public_inputs=public_inputs,
            commitments=commitments,
            nullifier=nullifier,
        )

        self.cache.put(proof, now)
        self._generated += 1
        logger.debug("Generated proof with nullifier %s", nullifier[:16])

        if return_opening:
            opening = ProofOpening(
                subject_id=subject_id,
                roles=tuple(sorted(set(roles))),
                trust_score=trust_score,
                identity_nonce=identity_nonce,
                permission_nonce=permission_nonce,
                trust_score_nonce=trust_score_nonce,
            )
            return proof, opening
        return proof

    def statistics(self) -> dict:
        return {
            "total_proofs_generated": self._generated,
            "cache_size": len(self.cache),
        }


def recompute_proof_value(proof: ZKProof, auth_signature: bytes | str) -> str:
    """proof_value as it should be for this proof and signature."""
    signature = auth_signature.encode("utf-8") if isinstance(auth_signature, str) else auth_signature
    return sha3_hex(proof.binding_payload(), signature)


def open_proof(proof: ZKProof, opening: ProofOpening) -> bool:
    """Check that an opening matches all three commitments of a proof."""
    c = proof.commitments
    return (
        open_commitment(c.identity_commitment, opening.subject_id, opening.identity_nonce)
        and open_commitment(c.permission_commitment, roles_payload(opening.roles), opening.permission_nonce)
        and open_commitment(c.trust_score_commitment, str(opening.trust_score), opening.trust_score_nonce)
    )

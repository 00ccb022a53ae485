"""
Anonymous Access Tokens
Short-lived bearer tokens handed out after a proof verifies.

A token carries a hash of the proof, its nullifier, the resource hash
and an expiry, authenticated with HMAC-SHA256. It says "some verified
requester may touch this resource until T" without naming who.

Tokens are tracked by nullifier on the issuing node: releasing the
nullifier through NullifierAdministration revokes every token issued
from it. verify() consults that map, not the registry. The registry
forgets a nullifier once its proof leaves the freshness window, long
before a token issued from it expires.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import threading
import time
from typing import Callable

from quorumgate import config
from quorumgate.commitments import ZKProof
from quorumgate.errors import InvalidProofError
from quorumgate.nullifiers import NullifierRegistry
from quorumgate.primitives import canonical_json, sha3_hex

logger = logging.getLogger(__name__)


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.urlsafe_b64decode(text.encode("ascii"))


class AnonymousTokenIssuer:
    """
    Issues and verifies unlinkable access tokens.

    Args:
        registry: Nullifier registry; only spent (verified) proofs get tokens.
        secret: HMAC signing secret. Generated randomly if not provided.
        ttl: Token lifetime in seconds.
        clock: Time source (seconds), injectable for tests.
    """

    def __init__(
        self,
        registry: NullifierRegistry,
        secret: bytes | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.secret = secret or os.urandom(32)
        self.ttl = config.TOKEN_TTL_SECONDS if ttl is None else ttl
        self.clock = clock
        self._active: dict[str, float] = {}  # nullifier -> latest token expiry
        self._lock = threading.Lock()
        self._issued_count = 0

    def _tag(self, body: bytes) -> bytes:
        return hmac.new(self.secret, body, hashlib.sha256).digest()

    def issue(self, proof: ZKProof) -> str:
        """
        Issue a token for a proof that has been verified.

        Raises:
            InvalidProofError: If the proof's nullifier was never consumed.
        """
        if not self.registry.is_consumed(proof.nullifier):
            raise InvalidProofError("Tokens are only issued for verified proofs")

        expires_at = self.clock() + self.ttl
        body = canonical_json({
            "proof_hash": sha3_hex(proof.proof_value),
            "nullifier": proof.nullifier,
            "resource": proof.public_inputs.resource_hash,
            "expires_at": expires_at,
        }).encode("utf-8")

        with self._lock:
            self._active[proof.nullifier] = max(expires_at, self._active.get(proof.nullifier, 0))
            self._issued_count += 1
        return f"{_b64e(body)}.{_b64e(self._tag(body))}"

    def verify(self, token: str, resource: str | None = None) -> bool:
        """
        Check a token.

        Args:
            token: Token from issue().
            resource: If given, the token must be for this resource.

        Returns:
            True if authentic, unexpired, unrevoked (and for `resource`).
        """
        try:
            body_b64, tag_b64 = token.split(".")
            body = _b64d(body_b64)
            if not hmac.compare_digest(_b64d(tag_b64), self._tag(body)):
                return False
            data = json.loads(body.decode("utf-8"))
            nullifier = data["nullifier"]
            expires_at = float(data["expires_at"])
            resource_hash = data["resource"]
        except (AttributeError, ValueError, KeyError, TypeError, binascii.Error):
            return False

        if self.clock() > expires_at:
            return False
        if resource is not None and sha3_hex(resource) != resource_hash:
            return False
        with self._lock:
            return nullifier in self._active

    def revoke(self, nullifier: str) -> bool:
        """Revoke every token issued for a nullifier."""
        with self._lock:
            revoked = self._active.pop(nullifier, None) is not None
        if revoked:
            logger.info("Revoked tokens for nullifier %s", nullifier[:16])
        return revoked

    def cleanup(self) -> int:
        """Forget nullifiers whose tokens have all expired."""
        now = self.clock()
        with self._lock:
            stale = [n for n, exp in self._active.items() if exp < now]
            for nullifier in stale:
                del self._active[nullifier]
        return len(stale)

    @property
    def issued_count(self) -> int:
        """Total number of tokens issued."""
        return self._issued_count

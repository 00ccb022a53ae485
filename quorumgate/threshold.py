"""
Threshold Signatures
M-of-N signing over a Shamir-shared key.

Key generation splits a random signing key x into N shares y_i = f(i).
To sign a message m, each holder contributes a partial signature

    s_i = H(m)^y_i  mod P

and once K partials are collected they are combined in the exponent with
Lagrange coefficients at 0:

    s = prod(s_i ^ l_i) = H(m)^f(0) = H(m)^x  mod P

The result is independent of which K holders signed or in what order,
and the key itself is never reassembled to sign.

Rotation re-splits x over a new polynomial. Partials from different
polynomials do not combine to H(m)^x, so every share carries the key
generation it belongs to and a request only accepts one generation.

Protocol:
  1. ThresholdKeyManager.generate_key_shares() distributes N shares
  2. SignatureRequestCoordinator.create_request() opens a request
  3. Holders call add_partial_signature() with their share
  4. The call that brings the count to K combines and completes the request
"""

import heapq
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from quorumgate import config
from quorumgate.errors import (
    ConfigError,
    DuplicateSignerError,
    InsufficientSharesError,
    RequestNotFoundError,
)
from quorumgate.keystore import KeyShare, KeyShareStore
from quorumgate.primitives import P, Q, hash_to_group, public_key_for
from quorumgate.shamir import generate_shares, lagrange_coefficient, reconstruct_secret

logger = logging.getLogger(__name__)

SIGNATURE_HEX_LEN = (P.bit_length() + 3) // 4


def _encode(value: int) -> str:
    return f"{value:0{SIGNATURE_HEX_LEN}x}"


def partial_signature(message: str, share_value: int) -> str:
    """Deterministic partial signature of one share holder."""
    return _encode(pow(hash_to_group(message), share_value, P))


def combine_partial_signatures(partials: dict[int, str]) -> str:
    """
    Combine partial signatures keyed by share index.

    The caller must supply at least the key's threshold of partials,
    all from the same key generation; order does not matter.
    """
    indices = sorted(partials)
    combined = 1
    for index in indices:
        lam = lagrange_coefficient(index, indices, Q)
        combined = (combined * pow(int(partials[index], 16), lam, P)) % P
    return _encode(combined)


class RequestState(Enum):
    """Lifecycle of a signature request."""
    COLLECTING = "collecting"
    COMPLETE = "complete"
    EXPIRED = "expired"


@dataclass
class PartialSignature:
    share_index: int
    signature: str
    signer_id: str
    timestamp: float


@dataclass
class SignatureRequest:
    """
    A message waiting for threshold partial signatures.

    `combined_signature` is written once, at the COLLECTING -> COMPLETE
    transition, and never recomputed.
    """
    request_id: str
    message: str
    threshold: int
    created_at: float
    expires_at: float
    key_id: str | None = None
    key_generation: int | None = None
    collected_signatures: dict[int, PartialSignature] = field(default_factory=dict)
    state: RequestState = RequestState.COLLECTING
    combined_signature: str | None = None
    completed_at: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_complete(self) -> bool:
        return self.state is RequestState.COMPLETE

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "message": self.message,
            "threshold": self.threshold,
            "key_id": self.key_id,
            "key_generation": self.key_generation,
            "state": self.state.value,
            "signers": {i: p.signer_id for i, p in sorted(self.collected_signatures.items())},
            "combined_signature": self.combined_signature,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


@dataclass
class SignatureProgress:
    """Outcome of one add_partial_signature call."""
    success: bool
    is_complete: bool
    collected: int
    combined_signature: str | None = None


@dataclass
class KeyGeneration:
    """Result of distributing a new (or rotated) threshold key."""
    key_id: str
    public_key: str
    key_shares: list[KeyShare]
    threshold: int
    participants: list[str]
    generation: int = 0


class ThresholdKeyManager:
    """
    Generates, rotates and checks threshold keys held in a KeyShareStore.

    Args:
        store: Where key shares live.
        coordinator: SignatureRequestCoordinator whose open requests for a
            key are expired when that key is rotated.
        clock: Time source (seconds), injectable for tests.
    """

    def __init__(
        self,
        store: KeyShareStore,
        coordinator: "SignatureRequestCoordinator | None" = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.coordinator = coordinator
        self.clock = clock

    def _distribute(
        self,
        key_id: str,
        secret: int,
        threshold: int,
        participants: list[str],
        generation: int = 0,
    ) -> KeyGeneration:
        shares = generate_shares(secret, threshold, len(participants))
        now = self.clock()
        key_shares = [
            KeyShare.from_share(key_id, share, participant=participant, created_at=now, generation=generation)
            for share, participant in zip(shares, participants)
        ]
        return KeyGeneration(
            key_id=key_id,
            public_key=_encode(public_key_for(secret)),
            key_shares=key_shares,
            threshold=threshold,
            participants=list(participants),
            generation=generation,
        )

    def generate_key_shares(
        self,
        key_id: str,
        threshold: int,
        total_shares: int,
        participants: list[str],
    ) -> KeyGeneration:
        """
        Create a fresh signing key and split it among participants.

        Args:
            key_id: Identifier for the new key.
            threshold: Partial signatures required to sign (K).
            total_shares: Number of holders (N).
            participants: One holder name per share, in index order.

        Returns:
            KeyGeneration with the public key and the stored shares.

        Raises:
            ConfigError: On bad parameters or if key_id already exists.
        """
        if len(participants) != total_shares:
            raise ConfigError("Number of participants must match total shares")
        if self.store.shares_for(key_id):
            raise ConfigError(f"Key {key_id!r} already exists; rotate it instead")

        secret = secrets.randbelow(Q - 1) + 1
        generation = self._distribute(key_id, secret, threshold, participants)
        for key_share in generation.key_shares:
            self.store.put(key_share)

        logger.info("Generated %d-of-%d key %s", threshold, total_shares, key_id)
        return generation

    def _replace_shares(self, key_id: str, key_shares: list[KeyShare]) -> None:
        self.store.destroy(key_id)
        for key_share in key_shares:
            self.store.put(key_share)

    def rotate_key_shares(
        self,
        key_id: str,
        new_participants: list[str],
        threshold: int | None = None,
    ) -> KeyGeneration:
        """
        Re-split an existing key for a new set of holders.

        The signing key (and so the public key) is unchanged; every old
        share is destroyed and no longer combines with the new ones.
        Open signature requests for the key are expired. If writing the
        new shares fails, the old shares are put back and the error is
        re-raised.

        Raises:
            InsufficientSharesError: If the store holds fewer than K shares.
            ConfigError: If the new threshold/participant count is invalid.
        """
        existing = self.store.shares_for(key_id)
        if not existing:
            raise InsufficientSharesError(f"No shares stored for key {key_id!r}")

        secret = reconstruct_secret([s.as_share() for s in existing])
        threshold = threshold or existing[0].threshold
        next_generation = max(s.generation for s in existing) + 1

        # Build the new split before touching the store so a bad
        # participant list leaves the old shares intact.
        generation = self._distribute(key_id, secret, threshold, new_participants, next_generation)
        try:
            self._replace_shares(key_id, generation.key_shares)
        except Exception:
            logger.error("Rotation of key %s failed; restoring generation %d", key_id, next_generation - 1)
            try:
                self._replace_shares(key_id, existing)
            except Exception:
                logger.critical("Could not restore shares of key %s after failed rotation", key_id, exc_info=True)
            raise

        expired = self.coordinator.expire_requests_for_key(key_id) if self.coordinator is not None else 0
        logger.info(
            "Rotated key %s to generation %d: %d shares issued, %d open requests expired",
            key_id, next_generation, len(generation.key_shares), expired,
        )
        return generation

    def verify_threshold_signature(self, message: str, signature: str, shares: list[KeyShare]) -> bool:
        """
        Holder-side check of a combined signature.

        Recomputes H(m)^x from at least K shares in the exponent and
        compares in constant time.

        Raises:
            InsufficientSharesError: If fewer than K distinct shares are given.
        """
        if not shares:
            raise InsufficientSharesError("No shares supplied")
        threshold = max(s.threshold for s in shares)
        by_index = {s.share_index: s for s in shares}
        if len(by_index) < threshold:
            raise InsufficientSharesError(f"Need at least {threshold} shares, got {len(by_index)}")

        chosen = [by_index[i] for i in sorted(by_index)[:threshold]]
        expected = combine_partial_signatures(
            {s.share_index: partial_signature(message, s.share_value) for s in chosen}
        )
        return hmac.compare_digest(expected, signature.lower())


class SignatureRequestCoordinator:
    """
    Collects partial signatures until a request reaches its threshold.

    Requests live in a TTL index: each has an expiry, and abandoned ones
    are evicted by `evict_expired()` (or lazily on access).

    Args:
        store: If given, every submitted share must match the stored record.
        request_ttl: Seconds a request may stay open.
        clock: Time source (seconds), injectable for tests.
    """

    def __init__(
        self,
        store: KeyShareStore | None = None,
        request_ttl: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.request_ttl = config.SIGNATURE_REQUEST_TTL_SECONDS if request_ttl is None else request_ttl
        self.clock = clock
        self._requests: dict[str, SignatureRequest] = {}
        self._expiry_index: list[tuple[float, str]] = []
        self._lock = threading.Lock()
        self._completed = 0
        self._expired = 0

    def create_request(
        self,
        request_id: str,
        message: str,
        threshold: int,
        key_id: str | None = None,
    ) -> SignatureRequest:
        """Open a request in the COLLECTING state."""
        if threshold < 1:
            raise ConfigError("Threshold must be at least 1")
        now = self.clock()
        request = SignatureRequest(
            request_id=request_id,
            message=message,
            threshold=threshold,
            key_id=key_id,
            created_at=now,
            expires_at=now + self.request_ttl,
        )
        with self._lock:
            if request_id in self._requests:
                raise ConfigError(f"Signature request {request_id!r} already exists")
            self._requests[request_id] = request
            heapq.heappush(self._expiry_index, (request.expires_at, request_id))
        logger.debug("Opened signature request %s (threshold %d)", request_id, threshold)
        return request

    def _expire(self, request: SignatureRequest) -> None:
        """Drop a request from the index. Caller holds self._lock."""
        self._requests.pop(request.request_id, None)
        with request.lock:
            if request.state is RequestState.COLLECTING:
                request.state = RequestState.EXPIRED
                self._expired += 1

    def _get_live(self, request_id: str) -> SignatureRequest:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise RequestNotFoundError(f"Signature request {request_id!r} not found")
            if self.clock() >= request.expires_at:
                self._expire(request)
                raise RequestNotFoundError(f"Signature request {request_id!r} has expired")
            return request

    def _check_key_share(self, request: SignatureRequest, share_index: int, key_share: KeyShare) -> None:
        if key_share.share_index != share_index:
            raise ConfigError(f"Key share index {key_share.share_index} does not match {share_index}")
        if request.key_id is not None and key_share.key_id != request.key_id:
            raise ConfigError(f"Share belongs to key {key_share.key_id!r}, request signs with {request.key_id!r}")
        if request.key_generation is not None and key_share.generation != request.key_generation:
            raise ConfigError(
                f"Share is from generation {key_share.generation} of key {key_share.key_id!r}, "
                f"request collects generation {request.key_generation}"
            )
        if key_share.threshold > request.threshold:
            raise ConfigError(
                f"Key needs {key_share.threshold} signers but request completes at {request.threshold}"
            )
        if self.store is not None and self.store.get(key_share.key_id, share_index) != key_share:
            raise ConfigError(f"Share {share_index} of key {key_share.key_id!r} is not a stored share")

    def add_partial_signature(
        self,
        request_id: str,
        share_index: int,
        signer_id: str,
        key_share: KeyShare,
    ) -> SignatureProgress:
        """
        Contribute one holder's partial signature.

        Returns:
            SignatureProgress. On an already complete request, success is
            False and the existing combined signature is returned unchanged.

        Raises:
            RequestNotFoundError: Unknown or expired request.
            DuplicateSignerError: share_index already contributed.
            ConfigError: Share does not fit this request.
        """
        request = self._get_live(request_id)

        with request.lock:
            if request.state is RequestState.EXPIRED:
                raise RequestNotFoundError(f"Signature request {request_id!r} has expired")
            if share_index in request.collected_signatures:
                raise DuplicateSignerError(f"Share {share_index} has already signed request {request_id!r}")
            if request.state is RequestState.COMPLETE:
                return SignatureProgress(
                    success=False,
                    is_complete=True,
                    collected=len(request.collected_signatures),
                    combined_signature=request.combined_signature,
                )

            self._check_key_share(request, share_index, key_share)
            if request.key_id is None:
                request.key_id = key_share.key_id
            if request.key_generation is None:
                request.key_generation = key_share.generation

            request.collected_signatures[share_index] = PartialSignature(
                share_index=share_index,
                signature=partial_signature(request.message, key_share.share_value),
                signer_id=signer_id,
                timestamp=self.clock(),
            )
            collected = len(request.collected_signatures)

            if collected < request.threshold:
                return SignatureProgress(success=True, is_complete=False, collected=collected)

            request.combined_signature = combine_partial_signatures(
                {i: p.signature for i, p in request.collected_signatures.items()}
            )
            request.state = RequestState.COMPLETE
            request.completed_at = self.clock()

        with self._lock:
            self._completed += 1
        logger.info("Signature request %s complete with %d signers", request_id, collected)
        return SignatureProgress(
            success=True,
            is_complete=True,
            collected=collected,
            combined_signature=request.combined_signature,
        )

    def get_request(self, request_id: str) -> SignatureRequest:
        """Current state of a live request."""
        return self._get_live(request_id)

    def cancel_request(self, request_id: str) -> SignatureRequest:
        """Abandon a request: COLLECTING -> EXPIRED. Completed requests are only evicted."""
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise RequestNotFoundError(f"Signature request {request_id!r} not found")
            self._expire(request)
        logger.info("Signature request %s cancelled", request_id)
        return request

    def expire_requests_for_key(self, key_id: str) -> int:
        """Expire every COLLECTING request bound to key_id. Returns how many."""
        with self._lock:
            bound = [
                r for r in self._requests.values()
                if r.key_id == key_id and r.state is RequestState.COLLECTING
            ]
            for request in bound:
                self._expire(request)
        if bound:
            logger.info("Expired %d open signature requests for key %s", len(bound), key_id)
        return len(bound)

    def evict_expired(self) -> int:
        """Remove every request past its TTL. Returns the number evicted."""
        now = self.clock()
        evicted = 0
        with self._lock:
            while self._expiry_index and self._expiry_index[0][0] <= now:
                expires_at, request_id = heapq.heappop(self._expiry_index)
                request = self._requests.get(request_id)
                # Stale heap entries point at already removed requests
                if request is None or request.expires_at != expires_at:
                    continue
                self._expire(request)
                evicted += 1
        if evicted:
            logger.info("Evicted %d expired signature requests", evicted)
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def statistics(self) -> dict:
        with self._lock:
            pending = sum(1 for r in self._requests.values() if r.state is RequestState.COLLECTING)
            return {
                "open_requests": len(self._requests),
                "pending_signatures": pending,
                "completed_signatures": self._completed,
                "expired_requests": self._expired,
            }

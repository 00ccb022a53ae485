"""
Shamir's Secret Sharing
Split a secret into N shares where any K can reconstruct it.

Used to distribute threshold signing keys: no single holder has enough
to sign, any K-of-N holders can. All arithmetic is exact modular
arithmetic over GF(q), so any K shares reconstruct the identical secret
and K-1 shares reveal nothing about it.
"""

import secrets
from dataclasses import dataclass

from quorumgate.errors import ConfigError, InsufficientSharesError
from quorumgate.primitives import Q

# The secret-sharing field is the signing group's order, so signing keys
# and plain secrets share one field.
PRIME = Q
MAX_SECRET_BYTES = (PRIME.bit_length() - 1) // 8


@dataclass(frozen=True)
class Share:
    """A single share of a split secret."""
    index: int      # The x-coordinate (1-indexed, never 0)
    value: int      # The y-coordinate (the share value)
    threshold: int  # K, how many shares needed to reconstruct
    total: int      # N, total number of shares

    def to_hex(self) -> str:
        """Serialize to a portable hex string."""
        return f"{self.index}:{self.value:x}:{self.threshold}:{self.total}"

    @classmethod
    def from_hex(cls, hex_str: str) -> "Share":
        """Deserialize from hex string."""
        parts = hex_str.split(":")
        if len(parts) != 4:
            raise ConfigError(f"Malformed share string: expected 4 fields, got {len(parts)}")
        return cls(
            index=int(parts[0]),
            value=int(parts[1], 16),
            threshold=int(parts[2]),
            total=int(parts[3]),
        )


def _eval_polynomial(coefficients: list[int], x: int, prime: int) -> int:
    """Evaluate a polynomial at x in the prime field (Horner's method)."""
    result = 0
    for coeff in reversed(coefficients):
        result = (result * x + coeff) % prime
    return result


def lagrange_coefficient(index: int, indices: list[int], prime: int = PRIME) -> int:
    """
    Lagrange basis polynomial for `index`, evaluated at x=0.

    Used both for reconstruction and for combining partial signatures
    in the exponent.
    """
    numerator = 1
    denominator = 1
    for other in indices:
        if other == index:
            continue
        numerator = (numerator * (-other)) % prime
        denominator = (denominator * (index - other)) % prime
    return (numerator * pow(denominator, -1, prime)) % prime


def generate_shares(secret: int, threshold: int, total_shares: int) -> list[Share]:
    """
    Split a field element into shares.

    Args:
        secret: The secret, 0 <= secret < PRIME.
        threshold: Minimum shares needed to reconstruct (K).
        total_shares: Total shares to generate (N).

    Returns:
        List of N Share objects at x = 1..N. Any K reconstruct the secret.

    Raises:
        ConfigError: If parameters are invalid.
    """
    if threshold < 2:
        raise ConfigError("Threshold must be at least 2")
    if threshold > total_shares:
        raise ConfigError("Threshold cannot exceed number of shares")
    if not 0 <= secret < PRIME:
        raise ConfigError("Secret is outside the sharing field")

    # f(x) = secret + a1*x + ... + a(k-1)*x^(k-1), so f(0) = secret
    coefficients = [secret]
    for _ in range(threshold - 1):
        coefficients.append(secrets.randbelow(PRIME))

    return [
        Share(index=i, value=_eval_polynomial(coefficients, i, PRIME), threshold=threshold, total=total_shares)
        for i in range(1, total_shares + 1)
    ]


def _distinct_shares(shares: list[Share]) -> list[Share]:
    """Drop exact duplicates; reject conflicting shares at one index."""
    by_index: dict[int, Share] = {}
    for share in shares:
        if share.index < 1:
            raise ConfigError(f"Share index must be positive, got {share.index}")
        existing = by_index.get(share.index)
        if existing is not None and existing.value != share.value:
            raise ConfigError(f"Conflicting shares supplied for index {share.index}")
        by_index[share.index] = share
    return list(by_index.values())


def reconstruct_secret(shares: list[Share]) -> int:
    """
    Reconstruct the secret from K or more shares using Lagrange interpolation.

    Args:
        shares: At least K distinct shares of one secret.

    Returns:
        The secret field element.

    Raises:
        InsufficientSharesError: If fewer than K distinct shares are given.
        ConfigError: If the shares disagree about the threshold.
    """
    if not shares:
        raise InsufficientSharesError("No shares supplied")

    thresholds = {s.threshold for s in shares}
    if len(thresholds) != 1:
        raise ConfigError(f"Shares disagree on threshold: {sorted(thresholds)}")
    threshold = thresholds.pop()

    distinct = _distinct_shares(shares)
    if len(distinct) < threshold:
        raise InsufficientSharesError(f"Need at least {threshold} shares, got {len(distinct)}")

    # Any K will do
    distinct = distinct[:threshold]
    indices = [s.index for s in distinct]

    secret = 0
    for share in distinct:
        secret = (secret + share.value * lagrange_coefficient(share.index, indices)) % PRIME
    return secret


def split(secret: bytes, threshold: int, num_shares: int) -> list[Share]:
    """Split a byte string (at most MAX_SECRET_BYTES long) into shares."""
    if len(secret) > MAX_SECRET_BYTES:
        raise ConfigError(f"Secret must be {MAX_SECRET_BYTES} bytes or less")
    return generate_shares(int.from_bytes(secret, "big"), threshold, num_shares)


def combine(shares: list[Share], length: int = 32) -> bytes:
    """Reconstruct a byte secret, left-padded to `length` bytes."""
    return reconstruct_secret(shares).to_bytes(length, "big")


def verify_shares(shares: list[Share], secret: bytes) -> bool:
    """Verify that a set of shares correctly reconstructs the secret."""
    try:
        reconstructed = combine(shares, max(len(secret), 32))
    except (ConfigError, InsufficientSharesError, OverflowError):
        return False
    return reconstructed == secret.rjust(max(len(secret), 32), b"\x00")

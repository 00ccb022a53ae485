"""
Primitives
The hashing, group and signature building blocks everything else uses.

- SHA3-256 digests (hex) for commitments, nullifiers and proof binding
- A prime-order group for threshold signing: the quadratic residues modulo
  the RFC 3526 2048-bit MODP safe prime P. The group order q = (P - 1) / 2
  is prime, so GF(q) doubles as the secret-sharing field.
- Ed25519 for subjects signing their own authorization requests
"""

import json
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ed25519

# RFC 3526 2048-bit MODP group (group 14)
P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)
Q = (P - 1) // 2
G = 4  # 2^2, generates the order-q subgroup

DIGEST_HEX_LEN = 64
_HASH_TO_GROUP_CONTEXT = b"quorumgate-hash-to-group-v1"


def _to_bytes(part) -> bytes:
    if isinstance(part, bytes):
        return part
    return str(part).encode("utf-8")


def sha3_hex(*parts) -> str:
    """SHA3-256 over the concatenation of parts (str, bytes or numbers)."""
    digest = hashes.Hash(hashes.SHA3_256())
    for part in parts:
        digest.update(_to_bytes(part))
    return digest.finalize().hex()


def canonical_json(obj) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def is_digest(value) -> bool:
    """True if value looks like a hex SHA3-256 digest."""
    if not isinstance(value, str) or len(value) != DIGEST_HEX_LEN:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def hash_to_group(message: str | bytes) -> int:
    """Map a message to an element of the order-q subgroup of Z_P*."""
    xof = hashes.Hash(hashes.SHAKE256(digest_size=(P.bit_length() // 8) + 32))
    xof.update(_HASH_TO_GROUP_CONTEXT)
    xof.update(_to_bytes(message))
    e = int.from_bytes(xof.finalize(), "big") % P
    # Squaring lands in the quadratic residues, which is exactly the subgroup
    return pow(e, 2, P)


def public_key_for(secret: int) -> int:
    """g^secret mod P."""
    return pow(G, secret, P)


# --------- Ed25519 (subject request signatures) ----------

def ed25519_generate() -> Tuple[bytes, bytes]:
    sk = ed25519.Ed25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()


def ed25519_sign(priv_raw: bytes, data: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.sign(data)


def ed25519_verify(pub_raw: bytes, sig: bytes, data: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def auth_request_bytes(subject_id: str, resource: str, action: str) -> bytes:
    """The payload a subject signs to request access."""
    return canonical_json({"subject": subject_id, "resource": resource, "action": action}).encode("utf-8")

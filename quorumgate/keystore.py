"""
Key Share Store
Holds threshold key shares addressed by (key_id, share_index).

Shares are immutable once stored. The only mutation is `destroy`, used
when a key is rotated. Two backends:

- MemoryKeyShareStore: lock-guarded dict, single process
- FileKeyShareStore  : one AES-256-GCM encrypted file per share
"""

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from quorumgate.errors import ConfigError
from quorumgate.primitives import sha3_hex
from quorumgate.shamir import Share

NONCE_SIZE = 12  # AES-256-GCM standard
KEY_SIZE = 32


@dataclass(frozen=True)
class KeyShare:
    """One holder's share of a threshold signing key."""
    key_id: str
    share_index: int
    share_value: int
    threshold: int
    total_shares: int
    created_at: float
    participant: str = ""
    generation: int = 0  # bumped on every rotation of the key

    def as_share(self) -> Share:
        return Share(index=self.share_index, value=self.share_value,
                     threshold=self.threshold, total=self.total_shares)

    def to_dict(self) -> dict:
        return {
            "key_id": self.key_id,
            "share_index": self.share_index,
            "share_value": f"{self.share_value:x}",
            "threshold": self.threshold,
            "total_shares": self.total_shares,
            "created_at": self.created_at,
            "participant": self.participant,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KeyShare":
        return cls(
            key_id=data["key_id"],
            share_index=int(data["share_index"]),
            share_value=int(data["share_value"], 16),
            threshold=int(data["threshold"]),
            total_shares=int(data["total_shares"]),
            created_at=float(data["created_at"]),
            participant=data.get("participant", ""),
            generation=int(data.get("generation", 0)),
        )

    @classmethod
    def from_share(
        cls,
        key_id: str,
        share: Share,
        participant: str = "",
        created_at: float | None = None,
        generation: int = 0,
    ) -> "KeyShare":
        return cls(
            key_id=key_id,
            share_index=share.index,
            share_value=share.value,
            threshold=share.threshold,
            total_shares=share.total,
            created_at=time.time() if created_at is None else created_at,
            participant=participant,
            generation=generation,
        )


class KeyShareStore(ABC):
    """Keyed store for KeyShare records."""

    @abstractmethod
    def put(self, share: KeyShare) -> None:
        """
        Store a share.

        Raises:
            ConfigError: If (key_id, share_index) is already present.
        """

    @abstractmethod
    def get(self, key_id: str, share_index: int) -> KeyShare | None:
        """Fetch one share, or None."""

    @abstractmethod
    def shares_for(self, key_id: str) -> list[KeyShare]:
        """All shares of a key, ordered by index."""

    @abstractmethod
    def key_ids(self) -> list[str]:
        """Every key with at least one stored share."""

    @abstractmethod
    def destroy(self, key_id: str) -> int:
        """Delete every share of a key. Returns how many were removed."""

    def close(self) -> None:
        """Release backend resources."""


class MemoryKeyShareStore(KeyShareStore):
    """In-process store. Adequate for a single node."""

    def __init__(self):
        self._shares: dict[str, dict[int, KeyShare]] = {}
        self._lock = threading.Lock()

    def put(self, share: KeyShare) -> None:
        with self._lock:
            bucket = self._shares.setdefault(share.key_id, {})
            if share.share_index in bucket:
                raise ConfigError(f"Share {share.share_index} of key {share.key_id!r} already stored")
            bucket[share.share_index] = share

    def get(self, key_id: str, share_index: int) -> KeyShare | None:
        with self._lock:
            return self._shares.get(key_id, {}).get(share_index)

    def shares_for(self, key_id: str) -> list[KeyShare]:
        with self._lock:
            bucket = self._shares.get(key_id, {})
            return [bucket[i] for i in sorted(bucket)]

    def key_ids(self) -> list[str]:
        with self._lock:
            return sorted(k for k, v in self._shares.items() if v)

    def destroy(self, key_id: str) -> int:
        with self._lock:
            return len(self._shares.pop(key_id, {}))


class FileKeyShareStore(KeyShareStore):
    """
    Encrypted file-backed store.
    Each share is sealed with AES-256-GCM; the (key_id, index) address is
    bound in as associated data so files cannot be swapped between slots.
    """

    def __init__(self, storage_dir: str | Path, encryption_key: bytes):
        """
        Args:
            storage_dir: Directory holding the encrypted shares.
            encryption_key: 32-byte AES key protecting every share.
        """
        if len(encryption_key) != KEY_SIZE:
            raise ConfigError(f"Encryption key must be {KEY_SIZE} bytes")
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._aesgcm = AESGCM(encryption_key)
        self._lock = threading.Lock()

    def _stem(self, key_id: str, share_index: int) -> str:
        return f"{sha3_hex(key_id)[:24]}-share-{share_index}"

    def _share_file(self, key_id: str, share_index: int) -> Path:
        return self.storage_dir / f"{self._stem(key_id, share_index)}.enc"

    def _meta_file(self, key_id: str, share_index: int) -> Path:
        return self.storage_dir / f"{self._stem(key_id, share_index)}.meta.json"

    @staticmethod
    def _aad(key_id: str, share_index: int) -> bytes:
        return f"{key_id}:{share_index}".encode("utf-8")

    def put(self, share: KeyShare) -> None:
        with self._lock:
            share_file = self._share_file(share.key_id, share.share_index)
            if share_file.exists():
                raise ConfigError(f"Share {share.share_index} of key {share.key_id!r} already stored")

            nonce = os.urandom(NONCE_SIZE)
            plaintext = json.dumps(share.to_dict()).encode("utf-8")
            ciphertext = self._aesgcm.encrypt(nonce, plaintext, self._aad(share.key_id, share.share_index))
            share_file.write_bytes(nonce + ciphertext)

            meta = {
                "key_id": share.key_id,
                "share_index": share.share_index,
                "stored_at": int(time.time()),
                "encrypted": True,
            }
            self._meta_file(share.key_id, share.share_index).write_text(json.dumps(meta, indent=2))

    def _read(self, key_id: str, share_index: int) -> KeyShare | None:
        share_file = self._share_file(key_id, share_index)
        if not share_file.exists():
            return None
        encrypted = share_file.read_bytes()
        nonce, ciphertext = encrypted[:NONCE_SIZE], encrypted[NONCE_SIZE:]
        plaintext = self._aesgcm.decrypt(nonce, ciphertext, self._aad(key_id, share_index))
        return KeyShare.from_dict(json.loads(plaintext.decode("utf-8")))

    def _metas(self) -> list[dict]:
        return [json.loads(p.read_text()) for p in sorted(self.storage_dir.glob("*.meta.json"))]

    def get(self, key_id: str, share_index: int) -> KeyShare | None:
        with self._lock:
            return self._read(key_id, share_index)

    def shares_for(self, key_id: str) -> list[KeyShare]:
        with self._lock:
            indices = sorted(m["share_index"] for m in self._metas() if m["key_id"] == key_id)
            return [s for s in (self._read(key_id, i) for i in indices) if s is not None]

    def key_ids(self) -> list[str]:
        with self._lock:
            return sorted({m["key_id"] for m in self._metas()})

    def destroy(self, key_id: str) -> int:
        with self._lock:
            removed = 0
            for meta in self._metas():
                if meta["key_id"] != key_id:
                    continue
                index = meta["share_index"]
                self._share_file(key_id, index).unlink(missing_ok=True)
                self._meta_file(key_id, index).unlink(missing_ok=True)
                removed += 1
            return removed

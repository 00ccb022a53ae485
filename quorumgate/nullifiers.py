"""
Nullifier Registry
The set of spent nullifiers. A proof is accepted at most once.

Consuming is a single compare-and-set (`try_consume`): two verifiers
racing on the same proof cannot both see "unused". Entries are kept until
the proof they belong to has left the freshness window; after that the
expiry check rejects the proof on its own.

The in-process registry only protects a single node. Deployments with
several verifying instances must share one store (SqliteNullifierRegistry
on shared storage, or an equivalent transactional backend).
"""

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from quorumgate.audit import AuditSink
from quorumgate.commitments import ProofCache
from quorumgate.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NullifierRecord:
    nullifier: str
    first_seen_at: float
    expires_at: float


class NullifierRegistry(ABC):
    """Single-use nullifier set."""

    @abstractmethod
    def is_consumed(self, nullifier: str) -> bool:
        """Read-only membership check."""

    @abstractmethod
    def try_consume(self, nullifier: str, first_seen_at: float, expires_at: float) -> bool:
        """
        Atomically mark a nullifier spent.

        Returns:
            True if this call consumed it, False if it was already spent.
        """

    @abstractmethod
    def get(self, nullifier: str) -> NullifierRecord | None:
        """The record for a spent nullifier."""

    @abstractmethod
    def cleanup(self, now: float) -> int:
        """Drop records whose expires_at has passed. Returns how many."""

    @abstractmethod
    def _release(self, nullifier: str) -> bool:
        """Un-spend a nullifier. Only NullifierAdministration may call this."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def close(self) -> None:
        """Release backend resources."""


class MemoryNullifierRegistry(NullifierRegistry):
    """Mutex-guarded map. Single node only."""

    def __init__(self):
        self._records: dict[str, NullifierRecord] = {}
        self._lock = threading.Lock()

    def is_consumed(self, nullifier: str) -> bool:
        with self._lock:
            return nullifier in self._records

    def try_consume(self, nullifier: str, first_seen_at: float, expires_at: float) -> bool:
        with self._lock:
            if nullifier in self._records:
                return False
            self._records[nullifier] = NullifierRecord(nullifier, first_seen_at, expires_at)
            return True

    def get(self, nullifier: str) -> NullifierRecord | None:
        with self._lock:
            return self._records.get(nullifier)

    def cleanup(self, now: float) -> int:
        with self._lock:
            stale = [n for n, r in self._records.items() if r.expires_at < now]
            for nullifier in stale:
                del self._records[nullifier]
        return len(stale)

    def _release(self, nullifier: str) -> bool:
        with self._lock:
            return self._records.pop(nullifier, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SqliteNullifierRegistry(NullifierRegistry):
    """
    SQLite-backed registry.
    The PRIMARY KEY makes the insert itself the compare-and-set, so every
    process pointed at the same database file sees one nullifier set.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, timeout=timeout, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute("""
            CREATE TABLE IF NOT EXISTS nullifiers (
                nullifier TEXT PRIMARY KEY,
                first_seen_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );""")
            self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_nullifiers_expires
            ON nullifiers(expires_at);""")

    def is_consumed(self, nullifier: str) -> bool:
        with self._lock:
            cur = self._conn.execute("SELECT 1 FROM nullifiers WHERE nullifier=?", (nullifier,))
            return cur.fetchone() is not None

    def try_consume(self, nullifier: str, first_seen_at: float, expires_at: float) -> bool:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO nullifiers(nullifier, first_seen_at, expires_at) VALUES(?,?,?)",
                        (nullifier, first_seen_at, expires_at),
                    )
                return True
            except sqlite3.IntegrityError:
                return False

    def get(self, nullifier: str) -> NullifierRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT nullifier, first_seen_at, expires_at FROM nullifiers WHERE nullifier=?",
                (nullifier,),
            ).fetchone()
        return NullifierRecord(*row) if row else None

    def cleanup(self, now: float) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM nullifiers WHERE expires_at < ?", (now,))
            return cur.rowcount

    def _release(self, nullifier: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM nullifiers WHERE nullifier=?", (nullifier,))
            return cur.rowcount == 1

    def __len__(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM nullifiers").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class NullifierAdministration:
    """
    The audited administrative path for releasing a spent nullifier.

    Releasing re-opens the replay window for that proof (if it is still
    fresh) and invalidates any token issued from it. Every release is
    written to the audit sink with the operator and reason.
    """

    def __init__(
        self,
        registry: NullifierRegistry,
        audit_sink: AuditSink,
        cache: ProofCache | None = None,
        token_issuer=None,
    ):
        self.registry = registry
        self.audit_sink = audit_sink
        self.cache = cache
        self.token_issuer = token_issuer

    def release(self, nullifier: str, operator: str, reason: str) -> bool:
        """
        Release a nullifier.

        Args:
            nullifier: The spent nullifier.
            operator: Who is doing this.
            reason: Why.

        Returns:
            True if the nullifier was spent and is now released.

        Raises:
            ConfigError: If operator or reason is empty.
        """
        if not operator or not reason:
            raise ConfigError("Releasing a nullifier requires an operator and a reason")

        released = self.registry._release(nullifier)
        if self.cache is not None:
            self.cache.remove(nullifier)
        tokens_revoked = False
        if self.token_issuer is not None:
            tokens_revoked = self.token_issuer.revoke(nullifier)

        self.audit_sink.record(
            "NULLIFIER_RELEASED",
            nullifier=nullifier,
            operator=operator,
            reason=reason,
            released=released,
            tokens_revoked=tokens_revoked,
            at=time.time(),
        )
        logger.warning("Nullifier %s released by %s: %s", nullifier[:16], operator, reason)
        return released

"""
Authorization Core
Wires the stores and components together with an explicit lifecycle.

Nothing in quorumgate keeps process-wide state: every store is created
here (or passed in) and handed by reference to the components that use
it. Construct one AuthorizationCore at startup, close it at shutdown.

The verifier is built with require_issued=False: a proof this node never
generated is accepted when its digests are well formed and it binds the
expected resource and action. Proofs are commitments, not zero-knowledge
proofs, so deployments that only trust their own issuer should build a
ProofVerifier with require_issued=True and pass it the shared cache.

Usage:
    with AuthorizationCore() as core:
        keygen = core.keys.generate_key_shares("payments", 3, 5, holders)
        core.signatures.create_request("req-1", "release funds", 3)
        ...
        proof = core.proofs.generate_proof(...)
        result = core.verifier.verify_proof(proof, "doc-42", "read")
"""

import logging
import threading
import time
from typing import Callable

from quorumgate import config
from quorumgate.audit import AuditSink, get_audit_sink
from quorumgate.commitments import ProofCache, ProofGenerator
from quorumgate.keystore import KeyShareStore, MemoryKeyShareStore
from quorumgate.nullifiers import (
    MemoryNullifierRegistry,
    NullifierAdministration,
    NullifierRegistry,
    SqliteNullifierRegistry,
)
from quorumgate.threshold import SignatureRequestCoordinator, ThresholdKeyManager
from quorumgate.tokens import AnonymousTokenIssuer
from quorumgate.verifier import ProofVerifier

logger = logging.getLogger(__name__)


class AuthorizationCore:
    """
    Owns every store and component of the authorization core.

    Args:
        key_store: Defaults to an in-memory store.
        registry: Defaults to SQLite at QUORUMGATE_NULLIFIER_DB if set,
            otherwise an in-memory registry.
        audit_sink: Defaults to the sink named by QUORUMGATE_AUDIT_SINK.
        freshness_window: Proof lifetime in seconds.
        request_ttl: Signature request lifetime in seconds.
        cleanup_interval: Seconds between background cleanups; 0 disables.
        clock: Time source shared by every component.
    """

    def __init__(
        self,
        key_store: KeyShareStore | None = None,
        registry: NullifierRegistry | None = None,
        audit_sink: AuditSink | None = None,
        freshness_window: float | None = None,
        request_ttl: float | None = None,
        cleanup_interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if registry is None:
            registry = (
                SqliteNullifierRegistry(config.NULLIFIER_DB_PATH)
                if config.NULLIFIER_DB_PATH
                else MemoryNullifierRegistry()
            )

        self.key_store = key_store if key_store is not None else MemoryKeyShareStore()
        self.registry = registry
        self.audit_sink = audit_sink if audit_sink is not None else get_audit_sink()
        self.cache = ProofCache()
        self.clock = clock

        self.signatures = SignatureRequestCoordinator(self.key_store, request_ttl=request_ttl, clock=clock)
        self.keys = ThresholdKeyManager(self.key_store, self.signatures, clock=clock)
        self.proofs = ProofGenerator(self.cache, clock=clock)
        self.verifier = ProofVerifier(
            self.registry,
            cache=self.cache,
            audit_sink=self.audit_sink,
            freshness_window=freshness_window,
            clock=clock,
        )
        self.tokens = AnonymousTokenIssuer(self.registry, clock=clock)
        self.admin = NullifierAdministration(self.registry, self.audit_sink, self.cache, self.tokens)

        self.cleanup_interval = config.CLEANUP_INTERVAL_SECONDS if cleanup_interval is None else cleanup_interval
        self._stop = threading.Event()
        self._cleaner: threading.Thread | None = None
        self._closed = False

    def run_cleanup(self) -> dict:
        """One cleanup pass over proofs, nullifiers, tokens and requests."""
        report = self.verifier.cleanup_expired_proofs()
        report["tokens_removed"] = self.tokens.cleanup()
        report["requests_evicted"] = self.signatures.evict_expired()
        return report

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            try:
                self.run_cleanup()
            except Exception:
                logger.exception("Background cleanup failed")

    def start(self) -> "AuthorizationCore":
        """Start the background cleanup thread (if an interval is set)."""
        if self.cleanup_interval > 0 and self._cleaner is None:
            self._cleaner = threading.Thread(target=self._cleanup_loop, name="quorumgate-cleanup", daemon=True)
            self._cleaner.start()
        return self

    def close(self) -> None:
        """Stop background work and release every store."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._cleaner is not None:
            self._cleaner.join()
            self._cleaner = None
        self.registry.close()
        self.key_store.close()
        self.audit_sink.close()
        logger.debug("Authorization core closed")

    def __enter__(self) -> "AuthorizationCore":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def statistics(self) -> dict:
        return {
            "key_ids": len(self.key_store.key_ids()),
            **self.signatures.statistics(),
            **self.proofs.statistics(),
            **self.verifier.statistics(),
            "tokens_issued": self.tokens.issued_count,
        }

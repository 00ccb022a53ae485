"""
Tests for commitments, proof verification, nullifiers and anonymous tokens.
"""

import sys
import tempfile
import threading
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from quorumgate.audit import MemoryAuditSink
from quorumgate.commitments import (
    ProofCache,
    ProofGenerator,
    ZKProof,
    commit,
    open_commitment,
    open_proof,
    recompute_proof_value,
)
from quorumgate.errors import (
    ActionMismatchError,
    ConfigError,
    ExpiredProofError,
    InvalidProofError,
    ReplayError,
    ResourceMismatchError,
)
from quorumgate.nullifiers import MemoryNullifierRegistry, NullifierAdministration, SqliteNullifierRegistry
from quorumgate.primitives import auth_request_bytes, ed25519_generate, ed25519_sign, sha3_hex
from quorumgate.tokens import AnonymousTokenIssuer
from quorumgate.verifier import ProofVerifier

SIG = b"subject-signature"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _setup(registry=None, require_issued=False):
    clock = FakeClock()
    cache = ProofCache()
    registry = registry if registry is not None else MemoryNullifierRegistry()
    sink = MemoryAuditSink()
    generator = ProofGenerator(cache, clock=clock)
    verifier = ProofVerifier(
        registry, cache=cache, audit_sink=sink, freshness_window=300,
        require_issued=require_issued, clock=clock,
    )
    return clock, cache, registry, sink, generator, verifier


def _proof(generator, resource="doc-42", action="read"):
    return generator.generate_proof("subject-7", resource, action, 70, ["user"], SIG)


def test_commitments_hide_and_open():
    print("Testing commitments...", end=" ")
    c1, n1 = commit("alice")
    c2, n2 = commit("alice")
    assert c1 != c2 and n1 != n2  # fresh nonce each time
    assert open_commitment(c1, "alice", n1)
    assert not open_commitment(c1, "bob", n1)
    assert not open_commitment(c1, "alice", n2)
    print("PASS")


def test_generate_proof_shape():
    print("Testing proof generation...", end=" ")
    clock, cache, _, _, generator, _ = _setup()
    proof, opening = generator.generate_proof(
        "subject-7", "doc-42", "read", 70, ["user", "auditor"], SIG, return_opening=True
    )
    assert proof.public_inputs.resource_hash == sha3_hex("doc-42")
    assert proof.public_inputs.action_hash == sha3_hex("read")
    assert proof.public_inputs.minimum_trust_score == 70
    assert proof.public_inputs.timestamp == clock.now
    assert proof.proof_value == recompute_proof_value(proof, SIG)
    assert proof.proof_value != recompute_proof_value(proof, b"another signature")
    assert cache.get(proof.nullifier) == proof

    # Nothing identifying in the clear
    assert "subject-7" not in str(proof.to_dict())
    assert open_proof(proof, opening)
    assert not open_proof(proof, replace(opening, trust_score=99))
    print("PASS")


def test_nullifiers_unique():
    _, _, _, _, generator, _ = _setup()
    nullifiers = {_proof(generator).nullifier for _ in range(50)}
    assert len(nullifiers) == 50


def test_generate_proof_validation():
    _, _, _, _, generator, _ = _setup()
    bad_calls = [
        ("", "doc", "read", 70, [], SIG),
        ("s", "doc", "read", "70", [], SIG),
        ("s", "doc", "read", True, [], SIG),
        ("s", "doc", "read", 70, [], b""),
    ]
    for args in bad_calls:
        try:
            generator.generate_proof(*args)
            raise AssertionError(f"accepted {args}")
        except ConfigError:
            pass


def test_generate_proof_checks_subject_signature():
    _, _, _, _, generator, _ = _setup()
    priv, pub = ed25519_generate()
    good = ed25519_sign(priv, auth_request_bytes("subject-7", "doc-42", "read"))
    proof = generator.generate_proof("subject-7", "doc-42", "read", 70, ["user"], good, subject_public_key=pub)
    assert proof.proof_value == recompute_proof_value(proof, good)

    wrong = ed25519_sign(priv, auth_request_bytes("subject-7", "doc-99", "read"))
    try:
        generator.generate_proof("subject-7", "doc-42", "read", 70, ["user"], wrong, subject_public_key=pub)
        raise AssertionError("accepted signature over a different request")
    except InvalidProofError:
        pass


def test_verify_once_then_replay():
    """Valid once; the identical proof again is a replay."""
    print("Testing verify + replay...", end=" ")
    _, _, registry, sink, generator, verifier = _setup()
    proof = _proof(generator)

    first = verifier.verify_proof(proof, "doc-42", "read")
    assert first.valid
    assert first.risk_score == 0
    assert first.metadata["trust_score_minimum"] == 70
    assert registry.is_consumed(proof.nullifier)

    second = verifier.verify_proof(proof, "doc-42", "read")
    assert not second.valid
    assert isinstance(second.error, ReplayError)
    assert second.risk_score == 100
    try:
        second.raise_for_error()
        raise AssertionError("raise_for_error did not raise")
    except ReplayError:
        pass

    decisions = [e for e in sink.events if e["event_type"] == "AUTHORIZATION_DECISION"]
    assert [e["valid"] for e in decisions] == [True, False]
    assert decisions[1]["error"] == "replay"
    print("PASS")


def test_resource_mismatch():
    print("Testing resource mismatch...", end=" ")
    _, _, registry, _, generator, verifier = _setup()
    proof = _proof(generator)
    result = verifier.verify_proof(proof, "doc-99", "read")
    assert not result.valid
    assert isinstance(result.error, ResourceMismatchError)
    assert result.risk_score == 80
    assert not registry.is_consumed(proof.nullifier)

    # Still usable for the right resource
    assert verifier.verify_proof(proof, "doc-42", "read").valid
    print("PASS")


def test_action_mismatch():
    _, _, _, _, generator, verifier = _setup()
    result = verifier.verify_proof(_proof(generator), "doc-42", "delete")
    assert isinstance(result.error, ActionMismatchError)
    assert result.risk_score == 80


def test_expired_after_window():
    print("Testing expiry...", end=" ")
    clock, _, registry, _, generator, verifier = _setup()
    proof = _proof(generator)
    clock.advance(6 * 60)
    result = verifier.verify_proof(proof, "doc-42", "read")
    assert isinstance(result.error, ExpiredProofError)
    assert result.risk_score == 50
    assert not registry.is_consumed(proof.nullifier)
    print("PASS")


def test_fresh_at_window_edge():
    clock, _, _, _, generator, verifier = _setup()
    proof = _proof(generator)
    clock.advance(300)
    assert verifier.verify_proof(proof, "doc-42", "read").valid


def test_check_order_is_fixed():
    print("Testing check order...", end=" ")
    clock, _, _, _, generator, verifier = _setup()
    proof = _proof(generator)
    assert verifier.verify_proof(proof, "doc-42", "read").valid

    # Replay beats expiry and mismatch
    clock.advance(600)
    assert isinstance(verifier.verify_proof(proof, "doc-99", "delete").error, ReplayError)

    # Expiry beats mismatch
    stale = _proof(generator)
    clock.advance(600)
    assert isinstance(verifier.verify_proof(stale, "doc-99", "delete").error, ExpiredProofError)

    # Resource beats action and structure
    fresh = replace(_proof(generator), proof_value="not-a-digest")
    assert isinstance(verifier.verify_proof(fresh, "doc-99", "delete").error, ResourceMismatchError)
    assert isinstance(verifier.verify_proof(fresh, "doc-42", "delete").error, ActionMismatchError)
    assert isinstance(verifier.verify_proof(fresh, "doc-42", "read").error, InvalidProofError)
    print("PASS")


def test_malformed_proofs_rejected():
    print("Testing malformed proofs...", end=" ")
    _, _, registry, _, generator, verifier = _setup()
    proof = _proof(generator)

    short_commitment = replace(proof, commitments=replace(proof.commitments, identity_commitment="abc"))
    non_hex = replace(proof, proof_value="z" * 64)
    float_score = replace(proof, public_inputs=replace(proof.public_inputs, minimum_trust_score=70.5))
    for bad in (short_commitment, non_hex, float_score):
        result = verifier.verify_proof(bad, "doc-42", "read")
        assert isinstance(result.error, InvalidProofError), result.reason
        assert result.risk_score == 100

    assert not registry.is_consumed(proof.nullifier)
    print("PASS")


def test_tampered_proof_rejected_by_cache():
    _, _, _, _, generator, verifier = _setup()
    proof = _proof(generator)
    inflated = replace(proof, public_inputs=replace(proof.public_inputs, minimum_trust_score=100))
    result = verifier.verify_proof(inflated, "doc-42", "read")
    assert isinstance(result.error, InvalidProofError)
    assert verifier.verify_proof(proof, "doc-42", "read").valid


def test_require_issued():
    _, _, _, _, _, verifier = _setup(require_issued=True)
    outsider = ProofGenerator(ProofCache())
    result = verifier.verify_proof(_proof(outsider), "doc-42", "read")
    assert isinstance(result.error, InvalidProofError)


def test_unexpected_errors_fail_closed():
    _, _, _, sink, _, verifier = _setup()
    for garbage in ({"proof_value": "x"}, None, 42):
        result = verifier.verify_proof(garbage, "doc-42", "read")
        assert not result.valid
        assert isinstance(result.error, InvalidProofError)
        assert result.risk_score == 100
    assert all(not e["valid"] for e in sink.events)


def test_dict_form_round_trip_verifies():
    _, _, _, _, generator, verifier = _setup()
    proof = _proof(generator)
    assert ZKProof.from_dict(proof.to_dict()) == proof
    assert verifier.verify_proof(proof.to_dict(), "doc-42", "read").valid


def test_concurrent_verification_accepts_once():
    print("Testing concurrent verification...", end=" ")
    _, _, _, _, generator, verifier = _setup()
    proof = _proof(generator)
    results = []
    barrier = threading.Barrier(8)

    def verify():
        barrier.wait()
        results.append(verifier.verify_proof(proof, "doc-42", "read"))

    threads = [threading.Thread(target=verify) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.valid for r in results) == 1
    assert all(isinstance(r.error, ReplayError) for r in results if not r.valid)
    print("PASS")


def test_cleanup_respects_window():
    print("Testing cleanup...", end=" ")
    clock, cache, registry, _, generator, verifier = _setup()
    old = _proof(generator)
    assert verifier.verify_proof(old, "doc-42", "read").valid

    clock.advance(200)
    recent = _proof(generator)
    assert verifier.verify_proof(recent, "doc-42", "read").valid
    unused = _proof(generator)

    clock.advance(101)  # old is 301s old, recent and unused 101s
    report = verifier.cleanup_expired_proofs()
    assert report == {"proofs_removed": 1, "nullifiers_removed": 1, "errors": 0}
    assert not registry.is_consumed(old.nullifier)
    assert registry.is_consumed(recent.nullifier)
    assert cache.get(unused.nullifier) == unused
    assert cache.get(old.nullifier) is None

    # The collected nullifier's proof is expired, so it still cannot be replayed
    assert isinstance(verifier.verify_proof(old, "doc-42", "read").error, ExpiredProofError)
    assert isinstance(verifier.verify_proof(recent, "doc-42", "read").error, ReplayError)
    print("PASS")


def test_cleanup_failures_are_not_fatal():
    class BrokenRegistry(MemoryNullifierRegistry):
        def cleanup(self, now):
            raise RuntimeError("store offline")

    _, _, _, _, generator, verifier = _setup(registry=BrokenRegistry())
    report = verifier.cleanup_expired_proofs()
    assert report["errors"] == 1
    assert verifier.verify_proof(_proof(generator), "doc-42", "read").valid


def test_sqlite_registry_single_use():
    print("Testing SQLite registry...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Path(tmpdir) / "nullifiers.db"
        registry = SqliteNullifierRegistry(db)
        assert registry.try_consume("n1", 10.0, 310.0)
        assert not registry.try_consume("n1", 11.0, 311.0)
        assert registry.get("n1").expires_at == 310.0

        # A second handle on the same file sees the same set
        other = SqliteNullifierRegistry(db)
        assert other.is_consumed("n1")
        assert not other.try_consume("n1", 12.0, 312.0)

        assert registry.try_consume("n2", 100.0, 400.0)
        assert len(registry) == 2
        assert registry.cleanup(350.0) == 1
        assert not other.is_consumed("n1")
        assert other.is_consumed("n2")
        other.close()
        registry.close()

    _, _, _, _, generator, verifier = _setup(registry=SqliteNullifierRegistry(":memory:"))
    proof = _proof(generator)
    assert verifier.verify_proof(proof, "doc-42", "read").valid
    assert isinstance(verifier.verify_proof(proof, "doc-42", "read").error, ReplayError)
    print("PASS")


def test_administrative_release_is_audited():
    print("Testing administrative release...", end=" ")
    _, cache, registry, sink, generator, verifier = _setup()
    tokens = AnonymousTokenIssuer(registry, clock=verifier.clock)
    admin = NullifierAdministration(registry, sink, cache, tokens)
    proof = _proof(generator)
    assert verifier.verify_proof(proof, "doc-42", "read").valid
    token = tokens.issue(proof)

    for operator, reason in [("", "why"), ("ops", "")]:
        try:
            admin.release(proof.nullifier, operator, reason)
            raise AssertionError("release without operator/reason accepted")
        except ConfigError:
            pass
    assert registry.is_consumed(proof.nullifier)

    assert admin.release(proof.nullifier, "ops-oncall", "incident 12: wrongly denied request")
    assert not registry.is_consumed(proof.nullifier)
    assert cache.get(proof.nullifier) is None
    assert not tokens.verify(token)

    released = [e for e in sink.events if e["event_type"] == "NULLIFIER_RELEASED"]
    assert len(released) == 1
    assert released[0]["operator"] == "ops-oncall"
    assert released[0]["tokens_revoked"] is True

    assert not admin.release(proof.nullifier, "ops-oncall", "again")
    print("PASS")


def test_anonymous_tokens():
    print("Testing anonymous tokens...", end=" ")
    clock, _, registry, _, generator, verifier = _setup()
    tokens = AnonymousTokenIssuer(registry, ttl=3600, clock=clock)
    proof = _proof(generator)

    try:
        tokens.issue(proof)
        raise AssertionError("token issued for an unverified proof")
    except InvalidProofError:
        pass

    assert verifier.verify_proof(proof, "doc-42", "read").valid
    token = tokens.issue(proof)
    assert tokens.verify(token)
    assert tokens.verify(token, resource="doc-42")
    assert not tokens.verify(token, resource="doc-99")
    assert tokens.issued_count == 1

    body, tag = token.split(".")
    assert not tokens.verify(f"{body}.{tag[:-4]}AAAA")
    assert not tokens.verify("not-a-token")
    assert not AnonymousTokenIssuer(registry, clock=clock).verify(token)

    clock.advance(3601)
    assert not tokens.verify(token)
    assert tokens.cleanup() == 1
    print("PASS")


def test_tokens_outlive_nullifier_retention():
    clock, _, registry, _, generator, verifier = _setup()
    tokens = AnonymousTokenIssuer(registry, ttl=3600, clock=clock)
    proof = _proof(generator)
    assert verifier.verify_proof(proof, "doc-42", "read").valid
    token = tokens.issue(proof)

    clock.advance(301)
    assert verifier.cleanup_expired_proofs()["nullifiers_removed"] == 1
    assert not registry.is_consumed(proof.nullifier)
    assert tokens.verify(token, resource="doc-42")

    assert tokens.revoke(proof.nullifier)
    assert not tokens.verify(token)


def main():
    print("=" * 50)
    print("  Proof Authorization Tests")
    print("=" * 50)
    print()

    tests = [
        test_commitments_hide_and_open,
        test_generate_proof_shape,
        test_nullifiers_unique,
        test_generate_proof_validation,
        test_generate_proof_checks_subject_signature,
        test_verify_once_then_replay,
        test_resource_mismatch,
        test_action_mismatch,
        test_expired_after_window,
        test_fresh_at_window_edge,
        test_check_order_is_fixed,
        test_malformed_proofs_rejected,
        test_tampered_proof_rejected_by_cache,
        test_require_issued,
        test_unexpected_errors_fail_closed,
        test_dict_form_round_trip_verifies,
        test_concurrent_verification_accepts_once,
        test_cleanup_respects_window,
        test_cleanup_failures_are_not_fatal,
        test_sqlite_registry_single_use,
        test_administrative_release_is_audited,
        test_anonymous_tokens,
        test_tokens_outlive_nullifier_retention,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print()
    print(f"Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)

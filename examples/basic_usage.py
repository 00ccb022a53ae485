"""
quorumgate: Basic Usage Example

Demonstrates both protocols:
1. A 3-of-5 threshold key signs a deployment approval
2. A requester gets one-time anonymous access to a document
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from quorumgate import AuthorizationCore, MemoryAuditSink, configure_logging
from quorumgate.primitives import auth_request_bytes, ed25519_generate, ed25519_sign


def main():
    configure_logging("INFO", json_format=False)
    audit = MemoryAuditSink()

    print("=" * 50)
    print("  quorumgate: Threshold Signing + Proof Authorization")
    print("=" * 50)

    with AuthorizationCore(audit_sink=audit) as core:
        # --- Threshold signing ---
        holders = ["alice", "bob", "carol", "dave", "erin"]
        keygen = core.keys.generate_key_shares("release-key", threshold=3, total_shares=5, participants=holders)
        print(f"\nGenerated 3-of-5 key, public key {keygen.public_key[:24]}...")

        core.signatures.create_request("release-42", "ship release 42", threshold=3, key_id="release-key")
        for index in (1, 3, 5):
            share = core.key_store.get("release-key", index)
            progress = core.signatures.add_partial_signature("release-42", index, holders[index - 1], share)
            print(f"  {holders[index - 1]:>6} signed: {progress.collected}/3 complete={progress.is_complete}")

        print(f"Combined signature: {progress.combined_signature[:32]}...")

        # --- Anonymous authorization ---
        priv, pub = ed25519_generate()
        signature = ed25519_sign(priv, auth_request_bytes("subject-9", "doc-42", "read"))
        proof = core.proofs.generate_proof(
            "subject-9", "doc-42", "read", trust_score=70, roles=["user"],
            auth_signature=signature, subject_public_key=pub,
        )

        print()
        for attempt in ("first", "replayed"):
            result = core.verifier.verify_proof(proof, "doc-42", "read")
            print(f"  {attempt:>8} verification: valid={result.valid} risk={result.risk_score} ({result.reason})")

    print(f"\nAudit events recorded: {len(audit.events)}")


if __name__ == "__main__":
    main()

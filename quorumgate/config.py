"""
Configuration for quorumgate.

Every setting can be overridden with a QUORUMGATE_* environment variable.
Values are read once at import; components also accept them as
constructor arguments, which take precedence.
"""

import os

# Proofs older than this are rejected and their nullifiers become collectable
FRESHNESS_WINDOW_SECONDS = float(os.getenv("QUORUMGATE_FRESHNESS_WINDOW", "300"))

# Abandoned signature requests are evicted after this long
SIGNATURE_REQUEST_TTL_SECONDS = float(os.getenv("QUORUMGATE_REQUEST_TTL", "3600"))

# Lifetime of anonymous access tokens issued from verified proofs
TOKEN_TTL_SECONDS = float(os.getenv("QUORUMGATE_TOKEN_TTL", "3600"))

# Background cleanup period for AuthorizationCore (0 disables the thread)
CLEANUP_INTERVAL_SECONDS = float(os.getenv("QUORUMGATE_CLEANUP_INTERVAL", "60"))

# Logging
LOG_LEVEL = os.getenv("QUORUMGATE_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("QUORUMGATE_LOG_JSON", "1") not in ("0", "false", "no")
LOG_FILE = os.getenv("QUORUMGATE_LOG_FILE", "")

# Audit sink: "log" (structured logger) or a path to a JSON-lines file
AUDIT_SINK = os.getenv("QUORUMGATE_AUDIT_SINK", "log")

# Optional shared nullifier store; empty means in-process registry
NULLIFIER_DB_PATH = os.getenv("QUORUMGATE_NULLIFIER_DB", "")

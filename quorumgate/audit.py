"""
Audit sinks
Append-only record of authorization decisions and administrative actions.

The core only writes. Reading, retention and shipping belong to whatever
sits behind the sink.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path

from quorumgate import config


class AuditSink(ABC):
    """Write-only destination for audit events."""

    @abstractmethod
    def write(self, event: dict) -> None:
        """Append one event. Must not mutate earlier events."""

    def record(self, event_type: str, **fields) -> dict:
        """Stamp and write an event; returns what was written."""
        event = {"event_type": event_type, "recorded_at": time.time(), **fields}
        self.write(event)
        return event

    def close(self) -> None:
        """Flush and release resources."""


class LoggingAuditSink(AuditSink):
    """Audit events as structured log records on `quorumgate.audit`."""

    def __init__(self, name: str = "quorumgate.audit"):
        self._logger = logging.getLogger(name)

    def write(self, event: dict) -> None:
        level = logging.INFO
        if event.get("valid") is False or event.get("event_type") == "NULLIFIER_RELEASED":
            level = logging.WARNING
        self._logger.log(level, "%s", event.get("event_type", "AUDIT"), extra={"extra_fields": event})


class JsonlAuditSink(AuditSink):
    """Append-only JSON-lines file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, event: dict) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")


class MemoryAuditSink(AuditSink):
    """Keeps events in a list. For tests and local development."""

    def __init__(self):
        self._events: list[dict] = []
        self._lock = threading.Lock()

    def write(self, event: dict) -> None:
        with self._lock:
            self._events.append(dict(event))

    @property
    def events(self) -> list[dict]:
        with self._lock:
            return list(self._events)


def get_audit_sink(target: str | None = None) -> AuditSink:
    """Build the sink named by `target` (or QUORUMGATE_AUDIT_SINK)."""
    target = target or config.AUDIT_SINK
    if target == "log":
        return LoggingAuditSink()
    if target == "memory":
        return MemoryAuditSink()
    return JsonlAuditSink(target)

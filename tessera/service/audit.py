from __future__ import annotations

from typing import Any, Optional, Protocol

from tessera.logging import get_logger

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        event: str,
        outcome: str,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...


class LogAuditSink:
    """Writes audit events to the structured log. Never raises."""

    def record(
        self,
        event: str,
        outcome: str,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            logger.info(
                "audit_event",
                audit_event=event,
                outcome=outcome,
                actor_id=actor_id,
                **(metadata or {}),
            )
        except Exception as exc:
            logger.warning("audit_record_failed", audit_event=event, error=str(exc))


class MemoryAuditSink:
    """Collects events in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record(
        self,
        event: str,
        outcome: str,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.events.append(
            {
                "event": event,
                "outcome": outcome,
                "actor_id": actor_id,
                "metadata": dict(metadata or {}),
            }
        )

    def find(self, event: str, outcome: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            e
            for e in self.events
            if e["event"] == event and (outcome is None or e["outcome"] == outcome)
        ]

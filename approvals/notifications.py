"""
approvals/notifications.py

Best-effort stage-change notifications.

The dispatcher turns a transition into a StageEvent addressed to the role that has to act
next and hands it to every registered sink. Delivery (push, email) lives outside this
service; the default sink writes the event to the application log.

IMPORTANT:
- notify() never raises. The transition is already committed when it runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageEvent:
    entity_type: str
    entity_id: int
    sequence_id: str
    action: str
    message: str
    target_role: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


Sink = Callable[[StageEvent], None]


def log_sink(event: StageEvent) -> None:
    logger.info(
        "notify role=%s %s %s %s: %s",
        event.target_role or "-",
        event.entity_type,
        event.sequence_id,
        event.action,
        event.message,
    )


class NotificationDispatcher:
    def __init__(self, sinks: Optional[List[Sink]] = None, enabled: bool = True):
        self.sinks: List[Sink] = list(sinks) if sinks is not None else [log_sink]
        self.enabled = enabled

    def add_sink(self, sink: Sink) -> None:
        self.sinks.append(sink)

    def notify(
        self,
        record,
        action: str,
        message: str,
        *,
        target_role: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return

        event = StageEvent(
            entity_type=record.__class__.__name__,
            entity_id=record.id,
            sequence_id=record.sequence_id,
            action=action,
            message=message,
            target_role=target_role,
            actor=actor,
        )
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:  # noqa: BLE001 - notifications are best-effort
                logger.exception("Notification sink %r failed for %s %s", sink, event.entity_type, event.sequence_id)

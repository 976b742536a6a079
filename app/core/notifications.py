"""
Notification hook for grant lifecycle events.

The notification layer (email, websockets, ...) lives outside this service.
The engine calls ``notify`` after a mutation has been committed; a failing
notifier is logged and never affects the mutation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class GrantEvent:
    action: str
    user_id: str
    permission_id: str
    grant_id: Optional[str]
    actor_id: Optional[str]
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(self, event: GrantEvent) -> None: ...


class LoggingNotifier:
    """Default notifier: records events in the application log."""

    async def notify(self, event: GrantEvent) -> None:
        log.info(
            "Notify: action=%s user=%s permission=%s actor=%s",
            event.action, event.user_id, event.permission_id, event.actor_id
        )


class RecordingNotifier:
    """Keeps events in memory. Used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: List[GrantEvent] = []

    async def notify(self, event: GrantEvent) -> None:
        self.events.append(event)


async def dispatch(notifier: Optional[Notifier], events: List[GrantEvent]) -> None:
    """Fire-and-forget delivery of committed events."""
    if notifier is None:
        return
    for event in events:
        try:
            await notifier.notify(event)
        except Exception:
            log.exception("Notifier failed for %s on grant %s", event.action, event.grant_id)

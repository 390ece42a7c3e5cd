"""
Audit sink for operation outcomes.

Records what happened to each outbound call (success, error, circuit
transitions) and the compliance events around it. Recording is
best-effort: the sink never raises into the code it is observing.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bytesteps_guard.log import get_logger
from bytesteps_guard.storage.models import AuditEvent

logger = get_logger(__name__)

# Actions written by the pipeline itself
API_SUCCESS = "api_success"
API_ERROR = "api_error"
CIRCUIT_BREAKER_OPENED = "circuit_breaker_opened"
DATA_DELETED = "data_deleted"
HELP_REQUESTED = "help_requested"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditSink:
    """Append-only, best-effort recorder in front of an audit store.

    The store (InMemoryAuditStore or SqliteAuditStore) owns retention.
    """

    def __init__(self, store, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    async def record(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> None:
        """Record one event. Never raises.

        The store write runs in a worker thread, off the event loop.

        Args:
            action: Event name, e.g. "api_success" or "circuit_breaker_opened"
            details: Open key/value payload (operation, attempt, error, ...)
            user_id: Owning user, None for anonymous or system events
        """
        try:
            event = AuditEvent(
                id=uuid.uuid4().hex,
                timestamp=self._clock(),
                action=action,
                details=dict(details or {}),
                user_id=user_id,
            )
            await asyncio.to_thread(self.store.append, event)
        except Exception as e:
            # Losing an audit line must never break the audited call
            logger.warning("audit_record_failed", action=action, error=str(e))

    def recent(self, limit: int = 100, user_id: Optional[str] = None) -> List[AuditEvent]:
        return self.store.recent(limit=limit, user_id=user_id)

    async def delete_user_data(self, user_id: str) -> int:
        """Remove every event owned by user_id.

        The deletion itself is recorded as an anonymous data_deleted event
        so the trail shows that a request was honoured without keeping the
        user's id.

        Returns:
            Number of events removed
        """
        removed = await asyncio.to_thread(self.store.delete_user, user_id)
        logger.info("audit_user_data_deleted", removed=removed)
        await self.record(DATA_DELETED, {"reason": "user_request", "events_removed": removed})
        return removed

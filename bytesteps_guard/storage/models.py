"""
Data models for storage layer.

Defines the records written by the rate limiter and the audit sink.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RateLimitRecord:
    """One observed call attempt for an (identity, endpoint) pair.

    Records older than the limiter window are expired and never count
    toward the limit. They are never mutated, only pruned.
    """
    identity: str
    endpoint: str
    timestamp: float  # epoch seconds


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of an operation outcome.

    Append-only: once written an event is only ever removed by
    retention or by a user's data deletion request.
    """
    id: str
    timestamp: datetime
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

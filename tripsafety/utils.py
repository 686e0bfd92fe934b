import uuid
from datetime import datetime, timezone
from typing import Optional

EPISODE_NAMESPACE = uuid.UUID("6f1c2d4e-8a3b-4c5d-9e7f-0a1b2c3d4e5f")

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"

def episode_id(prefix: str, trip_id: str, started_at: datetime) -> str:
    """Stable id for a detector episode so re-persisting it is idempotent."""
    key = f"{trip_id}:{prefix}:{started_at.isoformat()}"
    return f"{prefix}_{uuid.uuid5(EPISODE_NAMESPACE, key).hex[:16]}"

def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

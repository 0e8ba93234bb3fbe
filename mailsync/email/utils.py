"""Email utility functions shared across connectors and the orchestrator."""
from datetime import UTC, datetime
from typing import Optional

from .models import Direction


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse provider ISO-8601 timestamps such as ``2024-01-01T10:00:00Z``."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def resolve_direction(sender: Optional[str], account_address: Optional[str]) -> Direction:
    """Messages sent from the account's own address are outgoing."""
    if sender and account_address and sender.strip().lower() == account_address.strip().lower():
        return Direction.SENT
    return Direction.RECEIVED


from datetime import datetime, timezone

# Every timestamp column (last_checked, trigger_date, scheduled_at, ...) holds
# naive UTC. Convert at the edges, compare naive values everywhere else.


def naive_utc_now() -> datetime:
    """Wall-clock now in the store's representation (naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalize a client-supplied datetime for storage.

    Aware values are shifted to UTC before the offset is dropped; naive values
    are taken to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

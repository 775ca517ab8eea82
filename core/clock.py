from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now; every datetime column in the ledger is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> datetime | None:
    """Provider epoch seconds to naive UTC datetime (None passes through)."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)

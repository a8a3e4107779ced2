from datetime import datetime, timezone


def utcnow():
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(value):
    """Unix seconds from the payment provider to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() + "Z" if value else None


def to_unix(value):
    """Naive UTC datetime to unix seconds."""
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp())

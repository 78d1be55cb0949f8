from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every table column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_from_now(seconds: float) -> datetime:
    return utc_now() + timedelta(seconds=seconds)

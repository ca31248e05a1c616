from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as naive UTC.

    Mongo hands datetimes back without tzinfo, so everything stored or
    compared by the engine stays naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)

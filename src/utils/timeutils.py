from datetime import datetime, timedelta, timezone


def utc_now():
    """
    Naive UTC timestamp. The stores compare datetimes in SQL, so every value written uses the same convention.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_from(now, seconds):
    return now + timedelta(seconds=seconds)

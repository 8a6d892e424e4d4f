from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo


@lru_cache
def venue_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def utc_now_naive() -> datetime:
    # DateTime columns are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def venue_now(tz: ZoneInfo) -> datetime:
    return datetime.now(timezone.utc).astimezone(tz)

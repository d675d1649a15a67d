from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def seconds_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds()

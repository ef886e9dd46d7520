import pytz
from datetime import datetime
from app.core.config import settings

TZ = pytz.timezone(settings.TZ)

def utcnow() -> datetime:
    # naive UTC, the way DateTime columns are stored
    return datetime.now(pytz.utc).replace(tzinfo=None)

def to_naive(dt: datetime) -> datetime:
    if dt.tzinfo:
        return dt.astimezone(pytz.utc).replace(tzinfo=None)
    return dt

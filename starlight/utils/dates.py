import dateparser
from datetime import date, datetime, timedelta
from typing import Optional
import pytz
import re

from starlight.bussystem.errors import ErrorCode, ValidationError

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PROVIDER_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_current_datetime(tz: str = "UTC") -> datetime:
    """Current datetime in the given zone."""
    return datetime.now(pytz.timezone(tz))


def parse_iso_date(text: str) -> Optional[date]:
    """Strict YYYY-MM-DD, None when malformed or impossible (2024-02-30)."""
    if not text or not _ISO_DATE.match(text.strip()):
        return None
    try:
        return datetime.strptime(text.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def normalize_search_date(text: str, tz: str = "UTC") -> str:
    """Turn user input ("2024-06-01", "tomorrow", "1 June 2024") into ISO date.

    ISO input is passed through untouched; anything else goes through
    dateparser relative to now in ``tz``.
    """
    if text and parse_iso_date(text):
        return text.strip()
    base = get_current_datetime(tz)
    lowered = (text or "").lower().strip()
    if lowered == "today":
        return base.date().isoformat()
    if lowered == "tomorrow":
        return (base + timedelta(days=1)).date().isoformat()

    dt = dateparser.parse(text or "", settings={"RELATIVE_BASE": base.replace(tzinfo=None),
                                                "PREFER_DATES_FROM": "future"})
    if dt is None:
        raise ValidationError(f"Unrecognized date: {text!r}", code=ErrorCode.INVALID_PARAMS)
    return dt.date().isoformat()


def parse_provider_datetime(text: str, tz: str) -> Optional[datetime]:
    """Localize a provider ``YYYY-MM-DD HH:MM:SS`` string to an aware datetime."""
    if not text:
        return None
    try:
        naive = datetime.strptime(text.strip(), PROVIDER_DATETIME_FORMAT)
    except ValueError:
        return None
    return pytz.timezone(tz).localize(naive)


def age_on(birth: date, today: date) -> int:
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years


def format_remaining(seconds: float) -> str:
    """Seconds -> "MM:SS" (or "H:MM:SS" past an hour), never negative."""
    total = max(0, int(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"

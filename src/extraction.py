"""Pull structured fields out of a free-text customer message.

Only the current message is read; accumulation across turns happens when
the orchestrator merges the result into the conversation's extracted data
(last write wins per field).  Relative dates are resolved against the
supplied ``today`` so results are deterministic under test.
"""

from __future__ import annotations

import re
from datetime import date, timedelta

from src.models import ExtractedData

PHONE_RE = re.compile(r"(?:\+964|0)?7\d{9}|\+\d{10,14}")
EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.\w+")
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2,4}))?\b")
RELATIVE_DATE_RE = re.compile(
    r"\b(today|tomorrow|next week|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
    re.IGNORECASE,
)
TIME_12H_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
TIME_24H_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
TIME_AT_RE = re.compile(r"\bat (\d{1,2})\b(?![:/\-\d])", re.IGNORECASE)
# Only the lead-in is case-insensitive; a second word must be capitalized to count as a surname
NAME_RE = re.compile(r"(?i:\bmy name is|\bi am called)\s+([A-Za-z][\w'-]*(?:\s+[A-Z][\w'-]*)?)")
DOCTOR_RE = re.compile(r"(?i:\b(?:dr\.?|doctor))\s+([A-Z][a-z]+)")

SERVICE_TERMS = (
    "root canal", "check-up", "checkup", "cleaning", "whitening", "filling",
    "extraction", "braces", "implant", "crown", "consultation",
)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# "at 3" during clinic hours means the afternoon
_AFTERNOON_CUTOFF = 8


def _resolve_relative(word: str, today: date) -> date:
    word = word.lower()
    if word == "today":
        return today
    if word == "tomorrow":
        return today + timedelta(days=1)
    if word == "next week":
        return today + timedelta(days=7 - today.weekday())
    days_ahead = (_WEEKDAYS.index(word) - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


def _numeric_date(match: re.Match[str], today: date) -> date | None:
    day, month = int(match[1]), int(match[2])
    year = int(match[3]) if match[3] else today.year
    if year < 100:
        year += 2000
    try:
        resolved = date(year, month, day)
    except ValueError:
        return None
    # A day/month without a year that has already passed means next year
    if not match[3] and resolved < today:
        resolved = resolved.replace(year=year + 1)
    return resolved


def extract_date(text: str, today: date) -> str | None:
    """Return an ISO date for the first date mention, or ``None``."""
    iso = ISO_DATE_RE.search(text)
    if iso:
        try:
            return date(int(iso[1]), int(iso[2]), int(iso[3])).isoformat()
        except ValueError:
            return None

    relative = RELATIVE_DATE_RE.search(text)
    if relative:
        return _resolve_relative(relative[1], today).isoformat()

    numeric = NUMERIC_DATE_RE.search(text)
    if numeric:
        resolved = _numeric_date(numeric, today)
        return resolved.isoformat() if resolved else None
    return None


def extract_time(text: str) -> str | None:
    """Return the first time mention as ``HH:MM``, or ``None``."""
    twelve = TIME_12H_RE.search(text)
    if twelve:
        hour, minute = int(twelve[1]) % 12, int(twelve[2] or 0)
        if twelve[3].lower() == "pm":
            hour += 12
        if minute < 60:
            return f"{hour:02d}:{minute:02d}"

    clock = TIME_24H_RE.search(text)
    if clock:
        return f"{int(clock[1]):02d}:{clock[2]}"

    bare = TIME_AT_RE.search(text)
    if bare:
        hour = int(bare[1])
        if 1 <= hour <= 12:
            if hour < _AFTERNOON_CUTOFF:
                hour += 12
            return f"{hour:02d}:00"
    return None


def extract(
    message: str,
    *,
    today: date,
    customer_name: str | None = None,
    customer_phone: str | None = None,
) -> ExtractedData:
    """Build an :class:`ExtractedData` from one message.

    Values the transport already knows (``customerName``/``customerPhone``)
    are used when the text itself does not supply them.
    """
    fields: dict[str, str | None] = {
        "phone": customer_phone,
        "name": customer_name,
    }

    phone = PHONE_RE.search(message)
    if phone:
        fields["phone"] = phone[0]
    email = EMAIL_RE.search(message)
    if email:
        fields["email"] = email[0]
    name = NAME_RE.search(message)
    if name:
        fields["name"] = name[1].strip().title()
    doctor = DOCTOR_RE.search(message)
    if doctor:
        fields["preferred_doctor"] = f"Dr. {doctor[1]}"

    lowered = message.lower()
    for term in SERVICE_TERMS:
        if term in lowered:
            fields["preferred_service"] = term
            break

    # Strip contact details first so phone digits are never read as dates or times
    scrubbed = EMAIL_RE.sub(" ", PHONE_RE.sub(" ", message))
    fields["preferred_date"] = extract_date(scrubbed, today)
    fields["preferred_time"] = extract_time(scrubbed)

    return ExtractedData(**{k: v for k, v in fields.items() if v})

"""Fulfillment slot planning.

Slots are whole hours inside a day's opening hours, never earlier than
``now + prep buffer``. Planning walks forward at most seven days and stops at
the first day that yields anything, so a checkout never holds a long, stale
list.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from libs.common.datetime_utils import ensure_aware, resolve_timezone

LOOKAHEAD_DAYS = 7
SLOT_INTERVAL = timedelta(hours=1)

_WEEKDAYS = {
    "en": ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"),
    "fr": ("lun.", "mar.", "mer.", "jeu.", "ven.", "sam.", "dim."),
}
_MONTHS = {
    "en": (
        "Jan", "Feb", "Mar", "Apr", "May", "Jun",
        "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
    ),
    "fr": (
        "janv.", "févr.", "mars", "avr.", "mai", "juin",
        "juil.", "août", "sept.", "oct.", "nov.", "déc.",
    ),
}


@dataclass(frozen=True)
class TimeSlot:
    """A candidate fulfillment time."""

    starts_at: datetime
    value: str
    label: str


def normalize_locale(locale: Optional[str]) -> str:
    """Map ``fr``, ``fr-CA``, ``fr_CA`` ... to ``fr``; everything else to ``en``."""
    if locale and locale.lower().startswith("fr"):
        return "fr"
    return "en"


def format_slot_label(starts_at: datetime, locale: str = "en") -> str:
    """``Mon, Jan 5 · 11:00`` in English, ``lun. 5 janv. · 11:00`` in French."""
    locale = normalize_locale(locale)
    weekday = _WEEKDAYS[locale][starts_at.weekday()]
    month = _MONTHS[locale][starts_at.month - 1]
    clock = starts_at.strftime("%H:%M")
    if locale == "fr":
        return f"{weekday} {starts_at.day} {month} · {clock}"
    return f"{weekday}, {month} {starts_at.day} · {clock}"


def slot_value(starts_at: datetime) -> str:
    """ISO-8601 UTC form used as the slot's wire value."""
    return starts_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _ceil_to_hour(value: datetime) -> datetime:
    if value.minute or value.second or value.microsecond:
        value = value.replace(minute=0, second=0, microsecond=0) + SLOT_INTERVAL
    return value


def _at(day: date, clock: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, clock.replace(tzinfo=None), tzinfo=tz)


def _day_slots(
    day: date,
    hours,
    floor: datetime,
    locale: str,
    tz: ZoneInfo,
) -> List[TimeSlot]:
    opens_at = _at(day, hours.open_time, tz)
    closes_at = _at(day, hours.close_time, tz)
    if closes_at <= opens_at:
        # Kitchen closes after midnight (00:00 close means open until midnight)
        closes_at = _at(day + timedelta(days=1), hours.close_time, tz)

    earliest = max(opens_at, floor)
    # Step in UTC so DST changes never produce a non-existent wall time
    cursor = _ceil_to_hour(earliest.astimezone(tz)).astimezone(timezone.utc)
    closes_utc = closes_at.astimezone(timezone.utc)

    slots = []
    while cursor < closes_utc:
        local = cursor.astimezone(tz)
        slots.append(
            TimeSlot(
                starts_at=local,
                value=slot_value(cursor),
                label=format_slot_label(local, locale),
            )
        )
        cursor += SLOT_INTERVAL
    return slots


def plan_slots(
    business_hours: Iterable,
    prep_buffer_minutes: int,
    now: datetime,
    locale: str = "en",
    tz: Optional[ZoneInfo] = None,
) -> List[TimeSlot]:
    """
    Compute the available fulfillment slots.

    Args:
        business_hours: rows with ``day_of_week`` (0 = Monday), ``open_time``,
            ``close_time`` and ``is_closed``. A weekday without a row is closed.
        prep_buffer_minutes: kitchen lead time counted from ``now``.
        now: current instant (naive values are read as UTC).
        locale: label language, ``en`` or ``fr``.
        tz: the organization's timezone; defaults to ``Settings.TIMEZONE``.

    Returns:
        Strictly increasing slots of the first day that has any, or an empty
        list when nothing is open in the next seven days.
    """
    tz = tz or resolve_timezone()
    locale = normalize_locale(locale)
    local_now = ensure_aware(now).astimezone(tz)
    floor = local_now + timedelta(minutes=max(prep_buffer_minutes or 0, 0))

    by_weekday = {hours.day_of_week: hours for hours in business_hours}

    for offset in range(LOOKAHEAD_DAYS):
        day = local_now.date() + timedelta(days=offset)
        hours = by_weekday.get(day.weekday())
        if (
            hours is None
            or hours.is_closed
            or hours.open_time is None
            or hours.close_time is None
        ):
            continue

        # The floor only bites today unless the buffer crosses midnight
        slots = _day_slots(day, hours, floor, locale, tz)
        if slots:
            return slots

    return []


def find_slot(slots: Iterable[TimeSlot], requested: datetime) -> Optional[TimeSlot]:
    """Return the planned slot starting exactly at ``requested``, if any."""
    requested = ensure_aware(requested)
    for slot in slots:
        if slot.starts_at == requested:
            return slot
    return None

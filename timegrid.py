# timegrid.py
"""
Сетка времени: (слот, день недели) ↔ момент времени.

Слот — 30 минут. Слот 0 = OPERATING_START_HOUR, окно работы переходит через
полночь (END > 24 означает часы следующего дня). Смещение дня считается от
начала текущей недели (по умолчанию — воскресенье, 00:00).
Моменты в хранилище — epoch в миллисекундах.
"""
from datetime import datetime, timedelta, time
from zoneinfo import ZoneInfo

from config import (
    TIMEZONE,
    OPERATING_START_HOUR,
    OPERATING_END_HOUR,
    SLOT_MINUTES,
    FIRST_WEEKDAY,
    DRYER_DELAY_SLOTS,
)

TZ = ZoneInfo(TIMEZONE)


def now_local() -> datetime:
    return datetime.now(TZ)


def to_ms(dt: datetime) -> int:
    return int(round(dt.timestamp() * 1000))


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, TZ)


def slot_count() -> int:
    return (OPERATING_END_HOUR - OPERATING_START_HOUR) * 60 // SLOT_MINUTES


def slots_to_ms(slots: int) -> int:
    return slots * SLOT_MINUTES * 60 * 1000


def dryer_delay_ms() -> int:
    return slots_to_ms(DRYER_DELAY_SLOTS)


def week_start(now: datetime | None = None) -> datetime:
    """Полночь последнего FIRST_WEEKDAY (включая сегодняшний)."""
    now = (now or now_local()).astimezone(TZ)
    days_back = (now.weekday() - FIRST_WEEKDAY) % 7
    d = now.date() - timedelta(days=days_back)
    return datetime.combine(d, time(0), tzinfo=TZ)


def slot_to_datetime(slot: int, day_offset: int = 0, anchor: datetime | None = None) -> datetime:
    anchor = anchor or week_start()
    day = anchor.date() + timedelta(days=day_offset)
    midnight = datetime.combine(day, time(0), tzinfo=TZ)
    # aware + timedelta — это арифметика по настенным часам
    return midnight + timedelta(minutes=OPERATING_START_HOUR * 60 + slot * SLOT_MINUTES)


def slot_to_timestamp(slot: int, day_offset: int = 0, anchor: datetime | None = None) -> int:
    return to_ms(slot_to_datetime(slot, day_offset, anchor))


def slot_interval(
    slot: int, day_offset: int, block_slots: int, anchor: datetime | None = None
) -> tuple[int, int]:
    return (
        slot_to_timestamp(slot, day_offset, anchor),
        slot_to_timestamp(slot + block_slots, day_offset, anchor),
    )


def slot_local_hour(slot: int) -> int:
    hour = (OPERATING_START_HOUR * 60 + slot * SLOT_MINUTES) // 60
    if hour >= 24:
        hour -= 24
    return hour


def timestamp_to_local_hour(ts: int) -> int:
    return from_ms(ts).hour


# ---------- часы работы ----------
def _window_for_day(day) -> tuple[datetime, datetime]:
    midnight = datetime.combine(day, time(0), tzinfo=TZ)
    return (
        midnight + timedelta(hours=OPERATING_START_HOUR),
        midnight + timedelta(hours=OPERATING_END_HOUR),
    )


def operating_window(ts: int) -> tuple[datetime, datetime] | None:
    """Окно работы, в которое попадает момент ts, или None (прачечная закрыта)."""
    local = from_ms(ts)
    # после полуночи момент может принадлежать окну вчерашнего дня
    for day in (local.date(), local.date() - timedelta(days=1)):
        opens, closes = _window_for_day(day)
        if opens <= local < closes:
            return opens, closes
    return None


def is_open(ts: int) -> bool:
    return operating_window(ts) is not None


def fits_operating_window(start: int, end: int) -> bool:
    """[start, end) целиком внутри одного окна работы (конец ровно в закрытие — можно)."""
    window = operating_window(start)
    if window is None:
        return False
    return end <= to_ms(window[1])

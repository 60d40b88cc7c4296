# scheduler.py
import logging
from datetime import datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

import database
import timegrid
from config import (
    DRYER,
    HISTORY_WEEKS,
    REMINDER_HORIZON_HOURS,
    REMINDER_OFFSET_MINUTES,
)
from errors import NotFound, StoreFailure

logger = logging.getLogger(__name__)

LATE_WINDOW_SEC = 300  # окно опоздания для напоминания (секунд)

# --- Запрещаем «догонять» пропущенные напоминания слишком поздно ---
job_defaults = {
    "misfire_grace_time": 1,
    "coalesce": True,
    "max_instances": 1,
}


def reminder_text(booking) -> str:
    if booking.machine_type == DRYER:
        kind, emoji = "сушилке", "🌬️"
    else:
        kind, emoji = "стиральной машине", "🧺"
    start = timegrid.from_ms(booking.start_time)
    end = timegrid.from_ms(booking.end_time)
    return (
        "⏰ <b>Напоминание</b>\n\n"
        f"Ваше время в {kind} закончилось. Пожалуйста, заберите вещи.\n"
        f"{emoji} {start:%d.%m %H:%M}–{end:%H:%M}"
    )


def _job_id(booking_id: int) -> str:
    return f"rem_{booking_id}"


class ReminderScheduler:
    """
    Одно отложенное напоминание на запись (job id = rem_<booking_id>).

    Задачи живут только в памяти процесса: после рестарта их можно
    восстановить через rebuild(), но это не гарантия доставки.
    При срабатывании запись перечитывается из базы — если её уже удалили,
    ничего не отправляем.
    """

    def __init__(self, gateway, scheduler: AsyncIOScheduler | None = None):
        self.gateway = gateway
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=timegrid.TZ,
            job_defaults=job_defaults,
        )

    def start(self):
        if not self.scheduler.running:
            # ежедневная очистка старых бронирований
            self.scheduler.add_job(
                cleanup_history,
                trigger="cron",
                hour=0,
                minute=0,
                id="cleanup_daily",
                replace_existing=True,
            )
            self.scheduler.start()
        return self.scheduler

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    # =========================================================
    #        Постановка / отмена
    # =========================================================
    def schedule(self, booking_id: int, fires_at: datetime, payload_builder=reminder_text) -> bool:
        """Ставит (или заменяет) напоминание. Время в прошлом — молча пропускаем."""
        if fires_at <= timegrid.now_local():
            logger.debug("reminder for booking %s is in the past, dropped", booking_id)
            return False

        self.scheduler.add_job(
            self.dispatch,
            trigger=DateTrigger(run_date=fires_at),
            id=_job_id(booking_id),
            args=[booking_id, payload_builder],
            replace_existing=True,
            misfire_grace_time=LATE_WINDOW_SEC,
        )
        return True

    def cancel(self, booking_id: int) -> bool:
        try:
            self.scheduler.remove_job(_job_id(booking_id))
        except JobLookupError:
            return False
        return True

    def is_pending(self, booking_id: int) -> bool:
        return self.scheduler.get_job(_job_id(booking_id)) is not None

    # =========================================================
    #        Отправка
    # =========================================================
    async def dispatch(self, booking_id: int, payload_builder=reminder_text) -> bool:
        # 1) запись ещё существует?
        try:
            booking = database.get_booking(booking_id)
            contact = database.get_member_contact(booking.room_id, booking.owner_id)
        except NotFound:
            # запись отменена, не шлём
            return False
        except StoreFailure:
            logger.exception("reminder for booking %s skipped: store unavailable", booking_id)
            return False

        if not contact:
            logger.info("no contact for %s in room %s, reminder skipped", booking.owner_id, booking.room_id)
            return False

        try:
            ok = await self.gateway.send(contact, payload_builder(booking))
        except Exception:
            # без ретраев: на бронь это не влияет
            logger.exception("reminder for booking %s failed", booking_id)
            return False
        if not ok:
            logger.warning("gateway rejected reminder for booking %s", booking_id)
        return bool(ok)

    # =========================================================
    #   Восстановление напоминаний после рестарта
    # =========================================================
    def rebuild(self, hours: int = REMINDER_HORIZON_HOURS) -> int:
        now = timegrid.now_local()
        offset = timedelta(minutes=REMINDER_OFFSET_MINUTES)
        rows = database.list_bookings_ending_between(
            timegrid.to_ms(now - offset),
            timegrid.to_ms(now + timedelta(hours=hours) - offset),
        )
        scheduled = 0
        for b in rows:
            if self.schedule(b.id, timegrid.from_ms(b.end_time) + offset):
                scheduled += 1
        logger.info("rebuilt %s reminders", scheduled)
        return scheduled


def cleanup_history(weeks: int = HISTORY_WEEKS) -> int:
    cutoff = timegrid.week_start() - timedelta(weeks=weeks)
    return database.cleanup_old_bookings(timegrid.to_ms(cutoff))

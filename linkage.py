# linkage.py
"""
Связка стирка → сушка.

Стирка на (слот, день) автоматически тянет за собой сушку того же владельца:
начало сушки = конец стирки + DRYER_DELAY_SLOTS, длительность = блок комнаты.
Связь пишется один раз при вставке (bookings.linked_to); для старых записей
пара ищется по времени: та же комната, тот же владелец, начало сушки совпадает
с концом стирки + задержка (±LINK_TOLERANCE_MS).

Проверка и запись идут под asyncio.Lock своей партиции (комната, тип машины).
Две ноги стирки и сушки не атомарны: если сушку записать не удалось, стирка
остаётся, а вызывающий получает статус partial_commit.
"""
import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timedelta

import conflicts
import database
import timegrid
from config import (
    WASHER,
    DRYER,
    MACHINE_TYPES,
    DEFAULT_BLOCK_SLOTS,
    DRYER_DELAY_SLOTS,
    LINK_TOLERANCE_MS,
    REMINDER_OFFSET_MINUTES,
)
from errors import (
    SlotUnavailable,
    LinkedSlotUnavailable,
    LinkedSlotInvalidHours,
    Unauthorized,
    NotFound,
    StoreFailure,
)
from models import Booking, BookingResult, RemovalResult

logger = logging.getLogger(__name__)

COMMITTED = "committed"
ALREADY_LINKED = "already_linked"
PARTIAL_COMMIT = "partial_commit"


class LinkageEngine:
    def __init__(self, reminders=None):
        self.reminders = reminders
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    def _lock(self, room_id: int, machine_type: str) -> asyncio.Lock:
        return self._locks.setdefault((room_id, machine_type), asyncio.Lock())

    # =========================================================
    #        Создание
    # =========================================================
    async def create_booking(
        self,
        room_id: int,
        owner_id: str,
        owner_name: str,
        machine_type: str,
        slot: int,
        day_offset: int,
        block_slots: int = DEFAULT_BLOCK_SLOTS,
        anchor: datetime | None = None,
    ) -> BookingResult:
        if machine_type not in MACHINE_TYPES:
            raise ValueError(f"unknown machine type: {machine_type}")
        if block_slots < 1:
            raise ValueError("block_slots must be positive")

        start, end = timegrid.slot_interval(slot, day_offset, block_slots, anchor)
        if machine_type == WASHER:
            result = await self._book_washer(
                room_id, owner_id, owner_name, start, end, block_slots, slot, day_offset
            )
        else:
            result = await self._book_dryer(room_id, owner_id, owner_name, start, end)

        self._schedule_reminders(result)
        return result

    async def _book_washer(self, room_id, owner_id, owner_name, start, end, block_slots, slot, day_offset):
        async with AsyncExitStack() as stack:
            # обе партиции в фиксированном порядке — без взаимных блокировок
            for key in sorted([(room_id, WASHER), (room_id, DRYER)]):
                await stack.enter_async_context(self._lock(*key))

            # 1) сама стирка: проверяем только час начала,
            # хвост после 03:00 отсечёт проверка сушки
            if not timegrid.is_open(start):
                raise SlotUnavailable(
                    "Прачечная в это время закрыта", reason="closed_hours", start_time=start
                )
            if not conflicts.is_available(room_id, WASHER, start, end):
                raise SlotUnavailable(reason="taken", start_time=start)

            # 2) парная сушка
            dryer_start = end + timegrid.dryer_delay_ms()
            dryer_end = dryer_start + timegrid.slots_to_ms(block_slots)
            if not timegrid.fits_operating_window(dryer_start, dryer_end):
                raise LinkedSlotInvalidHours(start_time=dryer_start, end_time=dryer_end)

            # 3) сушка уже есть у этого же владельца
            existing = self._existing_dryer(room_id, owner_id, dryer_start)

            # 4) иначе слот сушки должен быть свободен
            if existing is None and not conflicts.is_available(room_id, DRYER, dryer_start, dryer_end):
                raise LinkedSlotUnavailable(start_time=dryer_start, end_time=dryer_end)

            # 5) стирка; ошибка здесь — выходим, ничего не создано
            washer = self._commit(
                room_id, owner_id, owner_name, WASHER, start, end,
                linked_to=existing.id if existing else None,
            )
            if existing is not None:
                logger.info("washer %s linked to existing dryer %s", washer.id, existing.id)
                return BookingResult(ALREADY_LINKED, washer, linked=existing)

            # 6) сушка; при ошибке стирка остаётся
            try:
                dryer = self._commit(
                    room_id, owner_id, owner_name, DRYER, dryer_start, dryer_end, linked_to=washer.id
                )
            except StoreFailure as e:
                logger.warning("washer %s committed, dryer leg failed: %s", washer.id, e)
                return BookingResult(
                    PARTIAL_COMMIT,
                    washer,
                    warning="Стирка записана, но сушку записать не удалось. Запишитесь на сушку вручную.",
                    missing_leg={
                        "machine_type": DRYER,
                        "slot": slot + block_slots + DRYER_DELAY_SLOTS,
                        "day_offset": day_offset,
                        "start_time": dryer_start,
                        "end_time": dryer_end,
                    },
                )
            return BookingResult(COMMITTED, washer, linked=dryer)

    async def _book_dryer(self, room_id, owner_id, owner_name, start, end):
        async with self._lock(room_id, DRYER):
            if not timegrid.fits_operating_window(start, end):
                raise SlotUnavailable(
                    "Сушка возможна только с 8:00 до 3:00", reason="closed_hours", start_time=start
                )
            if not conflicts.is_available(room_id, DRYER, start, end):
                raise SlotUnavailable(reason="taken", start_time=start)

            # только подсказка: есть ли стирка, к которой эта сушка подходит
            washer = self._existing_washer(room_id, owner_id, start)
            link = washer.id if washer is not None and not self._has_counterpart(washer) else None
            dryer = self._commit(room_id, owner_id, owner_name, DRYER, start, end, linked_to=link)
            return BookingResult(COMMITTED, dryer, linked=washer)

    def _commit(self, room_id, owner_id, owner_name, machine_type, start, end, linked_to=None) -> Booking:
        booking_id = database.create_booking(
            room_id, owner_id, owner_name, machine_type, start, end, linked_to=linked_to
        )
        logger.info("booking %s: %s room=%s owner=%s", booking_id, machine_type, room_id, owner_id)
        return Booking(booking_id, room_id, owner_id, owner_name, machine_type, start, end, linked_to)

    # =========================================================
    #        Поиск пары
    # =========================================================
    def _existing_dryer(self, room_id: int, owner_id: str, dryer_start: int) -> Booking | None:
        rows = database.list_bookings_by_room_and_type(
            room_id, DRYER, dryer_start - LINK_TOLERANCE_MS, dryer_start + LINK_TOLERANCE_MS
        )
        for b in rows:
            if b.owner_id == owner_id and abs(b.start_time - dryer_start) < LINK_TOLERANCE_MS:
                return b
        return None

    def _existing_washer(self, room_id: int, owner_id: str, dryer_start: int) -> Booking | None:
        washer_end = dryer_start - timegrid.dryer_delay_ms()
        rows = database.list_bookings_by_room_and_type(
            room_id, WASHER, washer_end - LINK_TOLERANCE_MS, washer_end + LINK_TOLERANCE_MS
        )
        for b in rows:
            if b.owner_id == owner_id and abs(b.end_time - washer_end) < LINK_TOLERANCE_MS:
                return b
        return None

    def _has_counterpart(self, booking: Booking) -> bool:
        return booking.linked_to is not None or bool(database.find_bookings_linked_to(booking.id))

    def find_counterpart(self, booking: Booking) -> Booking | None:
        """Парная запись: сначала явная ссылка, потом правило по времени."""
        if booking.linked_to is not None:
            try:
                other = database.get_booking(booking.linked_to)
            except NotFound:
                other = None
            if other is not None and other.owner_id == booking.owner_id:
                return other
        for other in database.find_bookings_linked_to(booking.id):
            if other.owner_id == booking.owner_id and other.machine_type != booking.machine_type:
                return other
        if booking.is_washer:
            return self._existing_dryer(
                booking.room_id, booking.owner_id, booking.end_time + timegrid.dryer_delay_ms()
            )
        return self._existing_washer(booking.room_id, booking.owner_id, booking.start_time)

    # =========================================================
    #        Удаление
    # =========================================================
    async def remove_booking(self, booking_id: int, requester_id: str) -> RemovalResult:
        booking = database.get_booking(booking_id)
        if booking.owner_id != requester_id:
            raise Unauthorized(booking_id=booking_id)

        counterpart = self.find_counterpart(booking)

        async with self._lock(*booking.partition):
            database.delete_booking(booking.id)
        result = RemovalResult(removed=[booking.id])
        self._cancel_reminder(booking.id)

        if counterpart is None:
            return result

        result.linked_id = counterpart.id
        try:
            async with self._lock(*counterpart.partition):
                database.delete_booking(counterpart.id)
            result.removed.append(counterpart.id)
        except NotFound as e:
            result.linked_error = str(e)
        except StoreFailure as e:
            # основная запись уже удалена — не откатываем
            logger.warning("booking %s removed, linked %s was not: %s", booking.id, counterpart.id, e)
            result.linked_error = str(e)
            return result
        self._cancel_reminder(counterpart.id)
        return result

    # =========================================================
    #        Напоминания
    # =========================================================
    def _schedule_reminders(self, result: BookingResult):
        if self.reminders is None:
            return
        created = [result.booking]
        # новая сушка создаётся только в обычной связке стирки
        if result.status == COMMITTED and result.booking.is_washer and result.linked is not None:
            created.append(result.linked)
        for b in created:
            fires_at = timegrid.from_ms(b.end_time) + timedelta(minutes=REMINDER_OFFSET_MINUTES)
            try:
                self.reminders.schedule(b.id, fires_at)
            except Exception:
                logger.exception("failed to schedule reminder for booking %s", b.id)

    def _cancel_reminder(self, booking_id: int):
        if self.reminders is None:
            return
        try:
            self.reminders.cancel(booking_id)
        except Exception:
            logger.exception("failed to cancel reminder for booking %s", booking_id)

# service.py
"""Операции, доступные наверх: список, создание и удаление броней в комнате."""
import database
from errors import NotMember
from linkage import LinkageEngine


class BookingService:
    def __init__(self, engine: LinkageEngine | None = None):
        self.engine = engine or LinkageEngine()

    def _require_member(self, room_id: int, user_id: str):
        if not database.is_member(room_id, user_id):
            raise NotMember(room_id=room_id)

    def list_bookings(self, room_id: int, user_id: str):
        self._require_member(room_id, user_id)
        return database.list_bookings_by_room(room_id)

    async def create_booking(self, room_id: int, user_id: str, user_name: str,
                             machine_type: str, slot: int, day_offset: int, anchor=None):
        self._require_member(room_id, user_id)
        # длина блока — по настройке комнаты на момент записи
        room = database.get_room(room_id)
        return await self.engine.create_booking(
            room_id, user_id, user_name, machine_type, slot, day_offset,
            block_slots=room["block_slots"], anchor=anchor,
        )

    async def delete_booking(self, booking_id: int, user_id: str):
        return await self.engine.remove_booking(booking_id, user_id)

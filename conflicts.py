# conflicts.py
import database


def overlaps(s1: int, e1: int, s2: int, e2: int) -> bool:
    """Полуинтервалы [s1, e1) и [s2, e2): касание концами — не конфликт."""
    return s1 < e2 and s2 < e1


def conflicting_bookings(room_id: int, machine_type: str, start: int, end: int):
    return [
        b for b in database.list_bookings_by_room_and_type(room_id, machine_type, start, end)
        if overlaps(b.start_time, b.end_time, start, end)
    ]


def is_available(room_id: int, machine_type: str, start: int, end: int) -> bool:
    # другие комнаты не учитываются: у каждой свои машины
    return not conflicting_bookings(room_id, machine_type, start, end)

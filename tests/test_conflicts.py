import conflicts
from conftest import at


def test_overlaps_half_open():
    assert conflicts.overlaps(0, 10, 5, 15)
    assert conflicts.overlaps(0, 10, 2, 3)
    assert conflicts.overlaps(2, 3, 0, 10)
    # касание концами — не конфликт
    assert not conflicts.overlaps(0, 10, 10, 20)
    assert not conflicts.overlaps(10, 20, 0, 10)


def test_is_available_scoped_to_partition(db, room, other_room, anchor):
    db.create_booking(room["id"], "alice", "Alice", "washer", at(anchor, 1, 8), at(anchor, 1, 9, 30))

    assert not conflicts.is_available(room["id"], "washer", at(anchor, 1, 8), at(anchor, 1, 9, 30))
    assert not conflicts.is_available(room["id"], "washer", at(anchor, 1, 9), at(anchor, 1, 10))
    assert not conflicts.is_available(room["id"], "washer", at(anchor, 1, 7), at(anchor, 1, 8, 30))

    assert conflicts.is_available(room["id"], "washer", at(anchor, 1, 9, 30), at(anchor, 1, 11))
    assert conflicts.is_available(room["id"], "washer", at(anchor, 1, 6, 30), at(anchor, 1, 8))
    assert conflicts.is_available(room["id"], "dryer", at(anchor, 1, 8), at(anchor, 1, 9, 30))
    assert conflicts.is_available(other_room["id"], "washer", at(anchor, 1, 8), at(anchor, 1, 9, 30))

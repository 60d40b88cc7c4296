from datetime import datetime, timedelta

import pytest

import database
import timegrid


class FakeReminders:
    def __init__(self):
        self.scheduled = {}
        self.cancelled = []

    def schedule(self, booking_id, fires_at, payload_builder=None):
        self.scheduled[booking_id] = fires_at
        return True

    def cancel(self, booking_id):
        self.cancelled.append(booking_id)
        return self.scheduled.pop(booking_id, None) is not None


class FakeGateway:
    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.calls = []

    async def send(self, contact, text):
        self.calls.append((contact, text))
        if self.error:
            raise self.error
        return self.ok

    async def close(self):
        pass


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "laundry.db"))
    database.init_db()
    return database


@pytest.fixture
def anchor():
    # воскресенье — начало недели
    return datetime(2026, 10, 11, tzinfo=timegrid.TZ)


@pytest.fixture
def room(db):
    return db.create_room("Общага №1", "alice", "Alice", contact="111")


@pytest.fixture
def other_room(db):
    return db.create_room("Общага №2", "carol", "Carol", contact="333")


def at(anchor, day, hour, minute=0):
    """Момент (мс) внутри недели от anchor; hour >= 24 — следующий день."""
    dt = anchor + timedelta(days=day, hours=hour, minutes=minute)
    return timegrid.to_ms(dt)

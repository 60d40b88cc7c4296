import asyncio
from datetime import timedelta

import pytest

import database
import timegrid
from conftest import FakeGateway
from errors import StoreFailure
from linkage import LinkageEngine
from scheduler import ReminderScheduler, reminder_text, cleanup_history


def _booking_around_now(db, room, owner="alice", machine_type="dryer", start_h=-1.0, end_h=1.0):
    now = timegrid.now_local()
    return db.create_booking(
        room["id"], owner, owner.title(), machine_type,
        timegrid.to_ms(now + timedelta(hours=start_h)),
        timegrid.to_ms(now + timedelta(hours=end_h)),
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def reminders(db, gateway):
    r = ReminderScheduler(gateway)
    yield r
    r.shutdown()


def test_past_reminder_is_dropped(reminders):
    past = timegrid.now_local() - timedelta(minutes=1)
    assert reminders.schedule(1, past) is False
    assert not reminders.is_pending(1)


def test_schedule_and_cancel(reminders):
    soon = timegrid.now_local() + timedelta(hours=1)
    assert reminders.schedule(7, soon)
    assert reminders.is_pending(7)
    assert reminders.cancel(7) is True
    assert not reminders.is_pending(7)
    assert reminders.cancel(7) is False


async def test_second_schedule_replaces_first(reminders):
    reminders.start()
    now = timegrid.now_local()
    reminders.schedule(3, now + timedelta(hours=1))
    reminders.schedule(3, now + timedelta(hours=2))
    jobs = [j for j in reminders.scheduler.get_jobs() if j.id == "rem_3"]
    assert len(jobs) == 1
    assert jobs[0].next_run_time == now + timedelta(hours=2)


async def test_dispatch_sends_to_member_contact(reminders, gateway, room):
    bid = _booking_around_now(database, room)
    assert await reminders.dispatch(bid) is True
    [(contact, text)] = gateway.calls
    assert contact == "111"
    assert "Напоминание" in text
    assert "сушилке" in text


async def test_dispatch_for_deleted_booking_is_noop(reminders, gateway, room):
    bid = _booking_around_now(database, room)
    database.delete_booking(bid)
    assert await reminders.dispatch(bid) is False
    assert gateway.calls == []


async def test_dispatch_without_contact(reminders, gateway, room):
    database.join_room(room["code"], "bob", "Bob")
    bid = _booking_around_now(database, room, owner="bob")
    assert await reminders.dispatch(bid) is False
    assert gateway.calls == []


async def test_gateway_errors_are_swallowed(db, room):
    gateway = FakeGateway(error=RuntimeError("sms provider down"))
    reminders = ReminderScheduler(gateway)
    bid = _booking_around_now(db, room)
    assert await reminders.dispatch(bid) is False
    assert len(gateway.calls) == 1
    # бронь не тронута
    assert db.get_booking(bid).id == bid


async def test_store_failure_on_dispatch_is_logged(reminders, gateway, room, monkeypatch, caplog):
    bid = _booking_around_now(database, room)

    def broken_get(booking_id):
        raise StoreFailure("db is down")

    monkeypatch.setattr(database, "get_booking", broken_get)
    assert await reminders.dispatch(bid) is False
    assert gateway.calls == []
    assert f"reminder for booking {bid} skipped" in caplog.text


async def test_reminder_fires_in_background(reminders, gateway, room):
    reminders.start()
    bid = _booking_around_now(database, room)
    reminders.schedule(bid, timegrid.now_local() + timedelta(seconds=0.2))
    await asyncio.sleep(1.0)
    assert len(gateway.calls) == 1


async def test_deleted_booking_never_notifies(reminders, gateway, room):
    reminders.start()
    engine = LinkageEngine(reminders=reminders)
    bid = _booking_around_now(database, room)
    reminders.schedule(bid, timegrid.now_local() + timedelta(seconds=0.3))

    await engine.remove_booking(bid, "alice")
    assert not reminders.is_pending(bid)
    await asyncio.sleep(0.8)
    assert gateway.calls == []


def test_rebuild_schedules_upcoming_only(reminders, room):
    upcoming = _booking_around_now(database, room, start_h=-0.5, end_h=1)
    _booking_around_now(database, room, machine_type="washer", start_h=-3, end_h=-2)
    far = _booking_around_now(database, room, machine_type="washer", start_h=70, end_h=71)

    assert reminders.rebuild(hours=48) == 1
    assert reminders.is_pending(upcoming)
    assert not reminders.is_pending(far)


def test_cleanup_history_keeps_recent(db, room):
    old = _booking_around_now(db, room, start_h=-24 * 30, end_h=-24 * 30 + 1)
    recent = _booking_around_now(db, room, start_h=1, end_h=2)
    assert cleanup_history() == 1
    assert [b.id for b in db.list_bookings_by_room(room["id"])] == [recent]
    assert old != recent


def test_reminder_text_for_washer(db, room):
    bid = _booking_around_now(db, room, machine_type="washer")
    text = reminder_text(db.get_booking(bid))
    assert "стиральной машине" in text

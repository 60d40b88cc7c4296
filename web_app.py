# web_app.py
import asyncio
import logging
import re

from aiohttp import web

from aiogram import Bot
from aiogram.client.session.aiohttp import AiohttpSession

import database
from config import BOT_TOKEN, PORT, LOG_LEVEL
from errors import SchedulerError, StoreFailure, NotMember
from linkage import LinkageEngine
from notifier import TelegramGateway, LogGateway
from scheduler import ReminderScheduler
from service import BookingService

logger = logging.getLogger(__name__)

MAX_BLOCK_SLOTS = 12


# === имя пользователя, если провайдер не прислал его ===
def display_name_from(user_id: str, name: str | None = None) -> str:
    if name and name.strip():
        return name.strip()
    if "@" in user_id:
        local = user_id.split("@")[0]
        words = re.sub(r"[_.]", " ", local).split(" ")
        return " ".join(w[:1].upper() + w[1:] for w in words if w)
    if "-" in user_id:
        first = user_id.split("-")[0]
        if len(first) >= 3:
            return first[:1].upper() + first[1:]
        return "User"
    return user_id or "User"


# === middleware ===
@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except SchedulerError as e:
        return web.json_response(e.to_dict(), status=e.http_status)
    except ValueError as e:
        return web.json_response({"error": "bad_request", "message": str(e)}, status=400)


@web.middleware
async def readiness_middleware(request: web.Request, handler):
    # Пока база не готова — API отвечает 503, клиент повторит
    if request.path.startswith("/api/") and not request.app["ready"].is_set():
        return web.json_response({"error": "starting"}, status=503)
    return await handler(request)


@web.middleware
async def identity_middleware(request: web.Request, handler):
    if request.path.startswith("/api/"):
        user_id = (request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            return web.json_response(
                {"error": "unauthenticated", "message": "Нет идентификатора пользователя"},
                status=401,
            )
        request["user_id"] = user_id
        request["user_name"] = display_name_from(user_id, request.headers.get("X-User-Name"))
    return await handler(request)


# === утилиты ===
def _int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer") from None


async def _json(request: web.Request) -> dict:
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("JSON object expected")
    return data


# === /health ===
async def health(_):
    return web.json_response({"ok": True})


# === комнаты ===
async def list_rooms(request: web.Request):
    return web.json_response(database.list_rooms_for_user(request["user_id"]))


async def create_room(request: web.Request):
    data = await _json(request)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    room = database.create_room(
        name, request["user_id"], request["user_name"], contact=data.get("contact")
    )
    return web.json_response(room, status=201)


async def join_room(request: web.Request):
    data = await _json(request)
    code = (data.get("code") or "").strip()
    if not code:
        raise ValueError("code is required")
    room = database.join_room(code, request["user_id"], request["user_name"], contact=data.get("contact"))
    return web.json_response(room)


async def update_room_settings(request: web.Request):
    room_id = _int(request.match_info["room_id"], "room_id")
    if not database.is_member(room_id, request["user_id"]):
        raise NotMember(room_id=room_id)
    data = await _json(request)
    block_slots = _int(data.get("block_slots"), "block_slots")
    if not 1 <= block_slots <= MAX_BLOCK_SLOTS:
        raise ValueError(f"block_slots must be between 1 and {MAX_BLOCK_SLOTS}")
    return web.json_response(database.set_room_block_slots(room_id, block_slots))


async def update_contact(request: web.Request):
    data = await _json(request)
    contact = data.get("contact")
    if not contact or not isinstance(contact, str):
        raise ValueError("contact is required and must be a string")
    updated = database.update_member_contact(request["user_id"], contact.strip())
    return web.json_response({"updated": updated, "contact": contact.strip()})


# === брони ===
async def list_bookings(request: web.Request):
    room_id = _int(request.match_info["room_id"], "room_id")
    bookings = request.app["service"].list_bookings(room_id, request["user_id"])
    return web.json_response([b.to_dict() for b in bookings])


async def create_booking(request: web.Request):
    data = await _json(request)
    result = await request.app["service"].create_booking(
        _int(data.get("room_id"), "room_id"),
        request["user_id"],
        request["user_name"],
        data.get("machine_type"),
        _int(data.get("slot"), "slot"),
        _int(data.get("day_offset"), "day_offset"),
    )
    return web.json_response(result.to_dict(), status=201)


async def delete_booking(request: web.Request):
    booking_id = _int(request.match_info["booking_id"], "booking_id")
    result = await request.app["service"].delete_booking(booking_id, request["user_id"])
    return web.json_response(result.to_dict())


# === инициализация ===
async def init_db_with_retries():
    delay = 1
    while True:
        try:
            database.init_db()
            return
        except StoreFailure as e:
            logger.warning("DB unavailable: %s, retry in %ss", e, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, 60)  # 1s → 2s → 4s → … → 60s


async def background_init(app: web.Application):
    try:
        # КРИТИЧНЫЙ МИНИМУМ: таблицы и планировщик до приёма запросов
        await init_db_with_retries()
        reminders = app["reminders"]
        reminders.start()

        app["ready"].set()
        logger.info("Init: ready")

        # НЕ критично: напоминания, потерянные при рестарте
        reminders.rebuild()
    except Exception:
        # ready НЕ ставим → /api будет отдавать 503
        logger.exception("Init failed")


async def on_startup(app: web.Application):
    if app["wait_ready"]:
        await background_init(app)
    else:
        app["init_task"] = asyncio.create_task(background_init(app))


async def on_cleanup(app: web.Application):
    task = app.get("init_task")
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    app["reminders"].shutdown()
    await app["gateway"].close()


def make_gateway():
    if BOT_TOKEN:
        return TelegramGateway(Bot(token=BOT_TOKEN, session=AiohttpSession()))
    logger.warning("BOT_TOKEN не задан — уведомления только в лог")
    return LogGateway()


def create_app(gateway=None, wait_ready: bool = False) -> web.Application:
    gateway = gateway or make_gateway()
    reminders = ReminderScheduler(gateway)

    app = web.Application(middlewares=[error_middleware, readiness_middleware, identity_middleware])
    app["ready"] = asyncio.Event()
    app["wait_ready"] = wait_ready
    app["gateway"] = gateway
    app["reminders"] = reminders
    app["service"] = BookingService(LinkageEngine(reminders=reminders))

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/health", health)
    app.router.add_get("/api/rooms", list_rooms)
    app.router.add_post("/api/rooms", create_room)
    app.router.add_post("/api/rooms/join", join_room)
    app.router.add_put("/api/rooms/{room_id}/settings", update_room_settings)
    app.router.add_put("/api/user/contact", update_contact)
    app.router.add_get("/api/bookings/{room_id}", list_bookings)
    app.router.add_post("/api/bookings", create_booking)
    app.router.add_delete("/api/bookings/{booking_id}", delete_booking)
    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    web.run_app(create_app(), host="0.0.0.0", port=PORT)

# database.py
import logging
import secrets
import string
import time

from config import DB_PATH, DATABASE_URL, DEFAULT_BLOCK_SLOTS, MACHINE_TYPES
from errors import StoreFailure, ConstraintViolation, NotFound
from models import Booking

logger = logging.getLogger(__name__)

BOOKING_COLUMNS = "id, room_id, owner_id, owner_name, machine_type, start_time, end_time, linked_to"


# ---------- выбор backend: Postgres или SQLite ----------
def _rewrite_qmarks(sql: str) -> str:
    # SQLite использует '?', Postgres — %s
    return sql.replace("?", "%s")

def _rewrite_insert_or_ignore(sql: str) -> str:
    s = sql.lstrip()
    if s.upper().startswith("INSERT OR IGNORE"):
        s = "INSERT" + s[len("INSERT OR IGNORE"):]
        s = s + " ON CONFLICT DO NOTHING"
        return sql[:len(sql) - len(sql.lstrip())] + s
    return sql

class _CursorWrapper:
    def __init__(self, cur): self._cur = cur
    def fetchone(self): return self._cur.fetchone()
    def fetchall(self): return self._cur.fetchall()
    @property
    def rowcount(self): return self._cur.rowcount
    @property
    def lastrowid(self): return getattr(self._cur, "lastrowid", None)
    def close(self):
        try: self._cur.close()
        except Exception: pass

if DATABASE_URL:
    import psycopg2
    from psycopg2 import pool

    _pg_pool = None

    def _get_pool():
        global _pg_pool
        if _pg_pool is None:
            try:
                _pg_pool = pool.SimpleConnectionPool(1, 10, DATABASE_URL)
            except psycopg2.Error as e:
                raise StoreFailure(f"Postgres недоступен: {e}") from e
        return _pg_pool

    class _PgConn:
        def __init__(self):
            try:
                self._conn = _get_pool().getconn()
            except psycopg2.Error as e:
                raise StoreFailure(str(e)) from e
            self._conn.autocommit = True
            self._opened = []
            self._in_tx = False

        def execute(self, sql: str, params=()):
            sql = _rewrite_insert_or_ignore(sql)
            sql = _rewrite_qmarks(sql)
            try:
                cur = self._conn.cursor()
                cur.execute(sql, params)
            except psycopg2.Error as e:
                raise StoreFailure(str(e)) from e
            w = _CursorWrapper(cur)
            self._opened.append(w)
            return w

        def insert(self, sql: str, params=()) -> int:
            return self.execute(sql + " RETURNING id", params).fetchone()[0]

        def begin_write(self):
            # проверка+вставка должны идти под одной блокировкой таблицы
            self.execute("BEGIN")
            self._in_tx = True
            self.execute("LOCK TABLE bookings IN SHARE ROW EXCLUSIVE MODE")

        def commit(self): pass
        def close(self):
            for w in self._opened: w.close()
            _get_pool().putconn(self._conn)
        def __enter__(self): return self
        def __exit__(self, exc_type, exc, tb):
            try:
                if self._in_tx:
                    self._conn.cursor().execute("COMMIT" if exc_type is None else "ROLLBACK")
            finally:
                self.close()

    def get_conn(): return _PgConn()

else:
    import sqlite3
    class _SqliteConn:
        def __init__(self):
            try:
                self._conn = sqlite3.connect(DB_PATH)
                self._conn.execute("PRAGMA foreign_keys=ON")  # важно для каскадов
            except sqlite3.Error as e:
                raise StoreFailure(str(e)) from e

        def execute(self, *args, **kwargs):
            try:
                return self._conn.execute(*args, **kwargs)
            except sqlite3.Error as e:
                raise StoreFailure(str(e)) from e

        def insert(self, sql: str, params=()) -> int:
            return self.execute(sql, params).lastrowid

        def begin_write(self):
            self.execute("BEGIN IMMEDIATE")

        def commit(self): self._conn.commit()
        def close(self): self._conn.close()
        def __enter__(self): return self
        def __exit__(self, exc_type, exc, tb):
            try:
                if exc_type is None: self._conn.commit()
                else: self._conn.rollback()
            finally:
                self._conn.close()

    def get_conn(): return _SqliteConn()


# ---------- инициализация схемы ----------
def init_db():
    if DATABASE_URL:
        ddl = [
            """
            CREATE TABLE IF NOT EXISTS rooms (
                id SERIAL PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT NOT NULL UNIQUE,
                created_by TEXT NOT NULL,
                created_at BIGINT NOT NULL,
                block_slots INTEGER NOT NULL DEFAULT 3
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS room_members (
                id SERIAL PRIMARY KEY,
                room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                user_name TEXT NOT NULL,
                contact TEXT,
                UNIQUE (room_id, user_id)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS bookings (
                id SERIAL PRIMARY KEY,
                room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                owner_name TEXT NOT NULL,
                machine_type TEXT NOT NULL CHECK (machine_type IN ('washer','dryer')),
                start_time BIGINT NOT NULL,
                end_time BIGINT NOT NULL,
                linked_to INTEGER,
                created_at TIMESTAMPTZ DEFAULT now(),
                CHECK (start_time < end_time)
            );
            """,
            "CREATE INDEX IF NOT EXISTS idx_bookings_partition ON bookings (room_id, machine_type, start_time);",
            "CREATE INDEX IF NOT EXISTS idx_bookings_linked ON bookings (linked_to);",
        ]
    else:
        ddl = [
            """
            CREATE TABLE IF NOT EXISTS rooms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                code TEXT NOT NULL UNIQUE,
                created_by TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                block_slots INTEGER NOT NULL DEFAULT 3
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS room_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                user_name TEXT NOT NULL,
                contact TEXT,
                UNIQUE (room_id, user_id)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS bookings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                owner_name TEXT NOT NULL,
                machine_type TEXT NOT NULL CHECK (machine_type IN ('washer','dryer')),
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                linked_to INTEGER,
                created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%S','now')),
                CHECK (start_time < end_time)
            );
            """,
            "CREATE INDEX IF NOT EXISTS idx_bookings_partition ON bookings (room_id, machine_type, start_time);",
            "CREATE INDEX IF NOT EXISTS idx_bookings_linked ON bookings (linked_to);",
        ]
    with get_conn() as conn:
        for stmt in ddl: conn.execute(stmt)


# ---------- комнаты и участники ----------
_CODE_ALPHABET = string.ascii_uppercase + string.digits

def _new_room_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))

def _room_dict(row) -> dict:
    return {
        "id": row[0],
        "name": row[1],
        "code": row[2],
        "created_by": row[3],
        "created_at": row[4],
        "block_slots": row[5],
    }

def create_room(name: str, created_by: str, user_name: str, contact: str | None = None,
                block_slots: int = DEFAULT_BLOCK_SLOTS) -> dict:
    """Создаёт комнату с уникальным кодом и сразу добавляет автора в участники."""
    created_at = int(time.time() * 1000)
    with get_conn() as conn:
        code = _new_room_code()
        while conn.execute("SELECT 1 FROM rooms WHERE code=?", (code,)).fetchone():
            code = _new_room_code()
        room_id = conn.insert(
            "INSERT INTO rooms (name, code, created_by, created_at, block_slots) VALUES (?, ?, ?, ?, ?)",
            (name, code, created_by, created_at, block_slots),
        )
        conn.execute(
            "INSERT INTO room_members (room_id, user_id, user_name, contact) VALUES (?, ?, ?, ?)",
            (room_id, created_by, user_name, contact),
        )
    logger.info("room %s created by %s (code %s)", room_id, created_by, code)
    return get_room(room_id)

def get_room(room_id: int) -> dict:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT id, name, code, created_by, created_at, block_slots FROM rooms WHERE id=?",
            (room_id,),
        ).fetchone()
        if not row:
            raise NotFound("Комната не найдена", room_id=room_id)
        members = conn.execute(
            "SELECT user_id, user_name FROM room_members WHERE room_id=? ORDER BY id",
            (room_id,),
        ).fetchall()
    room = _room_dict(row)
    room["members"] = [{"user_id": u, "name": n} for u, n in members]
    return room

def join_room(code: str, user_id: str, user_name: str, contact: str | None = None) -> dict:
    with get_conn() as conn:
        row = conn.execute("SELECT id FROM rooms WHERE code=?", ((code or "").strip().upper(),)).fetchone()
        if not row:
            raise NotFound("Комната с таким кодом не найдена", code=code)
        conn.execute(
            "INSERT OR IGNORE INTO room_members (room_id, user_id, user_name, contact) VALUES (?, ?, ?, ?)",
            (row[0], user_id, user_name, contact),
        )
    return get_room(row[0])

def list_rooms_for_user(user_id: str) -> list[dict]:
    with get_conn() as conn:
        ids = [r[0] for r in conn.execute(
            "SELECT room_id FROM room_members WHERE user_id=? ORDER BY room_id", (user_id,)
        ).fetchall()]
    return [get_room(rid) for rid in ids]

def set_room_block_slots(room_id: int, block_slots: int) -> dict:
    with get_conn() as conn:
        cur = conn.execute("UPDATE rooms SET block_slots=? WHERE id=?", (block_slots, room_id))
        if cur.rowcount == 0:
            raise NotFound("Комната не найдена", room_id=room_id)
    return get_room(room_id)

def is_member(room_id: int, user_id: str) -> bool:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM room_members WHERE room_id=? AND user_id=? LIMIT 1",
            (room_id, user_id),
        ).fetchone()
    return bool(row)

def get_member_contact(room_id: int, user_id: str) -> str | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT contact FROM room_members WHERE room_id=? AND user_id=?",
            (room_id, user_id),
        ).fetchone()
    return row[0] if row and row[0] else None

def update_member_contact(user_id: str, contact: str) -> int:
    """Обновляет контакт во всех комнатах пользователя, возвращает число строк."""
    with get_conn() as conn:
        cur = conn.execute("UPDATE room_members SET contact=? WHERE user_id=?", (contact, user_id))
        return cur.rowcount


# ---------- бронирования ----------
def create_booking(room_id: int, owner_id: str, owner_name: str, machine_type: str,
                   start_time: int, end_time: int, linked_to: int | None = None) -> int:
    if machine_type not in MACHINE_TYPES:
        raise ValueError(f"unknown machine type: {machine_type}")
    if start_time >= end_time:
        raise ValueError("start_time must be before end_time")
    with get_conn() as conn:
        conn.begin_write()
        # страховка: основная проверка уже сделана под замком партиции
        clash = conn.execute("""
            SELECT id FROM bookings
             WHERE room_id=? AND machine_type=? AND start_time < ? AND end_time > ?
             LIMIT 1
        """, (room_id, machine_type, end_time, start_time)).fetchone()
        if clash:
            raise ConstraintViolation(booking_id=clash[0])
        return conn.insert("""
            INSERT INTO bookings (room_id, owner_id, owner_name, machine_type, start_time, end_time, linked_to)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (room_id, owner_id, owner_name, machine_type, start_time, end_time, linked_to))

def get_booking(booking_id: int) -> Booking:
    with get_conn() as conn:
        row = conn.execute(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE id=?", (booking_id,)
        ).fetchone()
    if not row:
        raise NotFound("Запись не найдена", booking_id=booking_id)
    return Booking.from_row(row)

def list_bookings_by_room(room_id: int) -> list[Booking]:
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE room_id=? ORDER BY start_time, id",
            (room_id,),
        ).fetchall()
    return [Booking.from_row(r) for r in rows]

def list_bookings_by_room_and_type(room_id: int, machine_type: str, start: int, end: int) -> list[Booking]:
    """Брони партиции, пересекающиеся с [start, end)."""
    with get_conn() as conn:
        rows = conn.execute(f"""
            SELECT {BOOKING_COLUMNS} FROM bookings
             WHERE room_id=? AND machine_type=? AND start_time < ? AND end_time > ?
             ORDER BY start_time
        """, (room_id, machine_type, end, start)).fetchall()
    return [Booking.from_row(r) for r in rows]

def find_bookings_linked_to(booking_id: int) -> list[Booking]:
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE linked_to=? ORDER BY id",
            (booking_id,),
        ).fetchall()
    return [Booking.from_row(r) for r in rows]

def list_bookings_ending_between(start: int, end: int) -> list[Booking]:
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE end_time >= ? AND end_time <= ? ORDER BY end_time",
            (start, end),
        ).fetchall()
    return [Booking.from_row(r) for r in rows]

def delete_booking(booking_id: int):
    with get_conn() as conn:
        cur = conn.execute("DELETE FROM bookings WHERE id=?", (booking_id,))
        if cur.rowcount == 0:
            raise NotFound("Запись не найдена", booking_id=booking_id)

def cleanup_old_bookings(cutoff: int) -> int:
    with get_conn() as conn:
        cur = conn.execute("DELETE FROM bookings WHERE end_time < ?", (cutoff,))
        removed = cur.rowcount
    if removed:
        logger.info("cleanup: removed %s old bookings", removed)
    return removed

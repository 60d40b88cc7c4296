import os

TIMEZONE = os.getenv("TIMEZONE", "Europe/Moscow")

BOT_TOKEN = os.getenv("BOT_TOKEN")
DB_PATH = os.getenv("DB_PATH", "laundry.db")
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
PORT = int(os.getenv("PORT", "10000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

WASHER = "washer"
DRYER = "dryer"
MACHINE_TYPES = (WASHER, DRYER)

# Рабочее окно: 8:00 → 3:00 следующего дня (27 = 24 + 3)
OPERATING_START_HOUR = int(os.getenv("OPERATING_START_HOUR", "8"))
OPERATING_END_HOUR = int(os.getenv("OPERATING_END_HOUR", "27"))
SLOT_MINUTES = 30
FIRST_WEEKDAY = int(os.getenv("FIRST_WEEKDAY", "6"))  # 0 = пн, 6 = вс

DRYER_DELAY_SLOTS = 4  # 2 часа между концом стирки и началом сушки
DEFAULT_BLOCK_SLOTS = int(os.getenv("DEFAULT_BLOCK_SLOTS", "3"))
LINK_TOLERANCE_MS = 1000

REMINDER_OFFSET_MINUTES = int(os.getenv("REMINDER_OFFSET_MINUTES", "0"))
REMINDER_HORIZON_HOURS = 48
HISTORY_WEEKS = 1

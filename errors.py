# errors.py
"""Ошибки планировщика: у каждой свой код и HTTP-статус."""


class SchedulerError(Exception):
    code = "scheduler_error"
    http_status = 400
    message = "Ошибка планировщика"

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.message)
        self.details = details

    def to_dict(self) -> dict:
        data = {"error": self.code, "message": str(self)}
        if self.details:
            data["details"] = self.details
        return data


# ---------- валидация (до любых изменений) ----------
class SlotUnavailable(SchedulerError):
    code = "slot_unavailable"
    http_status = 409
    message = "Этот слот недоступен"


class LinkedSlotUnavailable(SchedulerError):
    code = "linked_slot_unavailable"
    http_status = 409
    message = "Слот сушки после стирки уже занят"


class LinkedSlotInvalidHours(SchedulerError):
    code = "linked_slot_invalid_hours"
    http_status = 409
    message = "Сушка закончилась бы после закрытия прачечной"


# ---------- доступ ----------
class Unauthorized(SchedulerError):
    code = "unauthorized"
    http_status = 403
    message = "Можно удалять только свои записи"


class NotMember(SchedulerError):
    code = "not_member"
    http_status = 403
    message = "Вы не состоите в этой комнате"


class NotFound(SchedulerError):
    code = "not_found"
    http_status = 404
    message = "Не найдено"


# ---------- хранилище ----------
class StoreFailure(SchedulerError):
    code = "store_failure"
    http_status = 503
    message = "База данных недоступна"


class ConstraintViolation(StoreFailure):
    code = "constraint_violation"
    http_status = 409
    message = "Слот только что заняли"

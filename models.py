# models.py
from dataclasses import dataclass, field, asdict

from config import WASHER, DRYER


@dataclass(frozen=True)
class Booking:
    id: int
    room_id: int
    owner_id: str
    owner_name: str
    machine_type: str
    start_time: int  # epoch, мс
    end_time: int
    linked_to: int | None = None

    @classmethod
    def from_row(cls, row):
        # порядок колонок — как в BOOKING_COLUMNS (database.py)
        return cls(
            id=int(row[0]),
            room_id=int(row[1]),
            owner_id=row[2],
            owner_name=row[3],
            machine_type=row[4],
            start_time=int(row[5]),
            end_time=int(row[6]),
            linked_to=int(row[7]) if row[7] is not None else None,
        )

    @property
    def partition(self) -> tuple[int, str]:
        return (self.room_id, self.machine_type)

    @property
    def is_washer(self) -> bool:
        return self.machine_type == WASHER

    @property
    def is_dryer(self) -> bool:
        return self.machine_type == DRYER

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BookingResult:
    """Итог запроса на бронь.

    status: committed | already_linked | partial_commit
    """
    status: str
    booking: Booking
    linked: Booking | None = None
    warning: str | None = None
    missing_leg: dict | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "booking": self.booking.to_dict(),
            "linked": self.linked.to_dict() if self.linked else None,
            "warning": self.warning,
            "missing_leg": self.missing_leg,
        }


@dataclass
class RemovalResult:
    removed: list[int] = field(default_factory=list)
    linked_id: int | None = None
    linked_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "removed": list(self.removed),
            "linked_id": self.linked_id,
            "linked_error": self.linked_error,
        }

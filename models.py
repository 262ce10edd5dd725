"""
Data models for Medbox medications.
Medications are kept as one JSON document in the key-value store.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from clock import SystemClock
from storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_TIME = time(9, 0)


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_date(value) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_datetime(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class ReminderTime:
    """One scheduled reminder during the day."""

    time_of_day: time
    enabled: bool = True
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "time_of_day": self.time_of_day.strftime("%H:%M"),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReminderTime":
        return cls(
            time_of_day=time.fromisoformat(data["time_of_day"]),
            enabled=data.get("enabled", True),
            id=data.get("id") or _new_id(),
        )


@dataclass
class Medication:
    """A prescription being tracked.

    `frequency_description` is display text only; scheduling comes from
    `reminder_times`.
    """

    name: str
    dose: str = ""
    frequency_description: str = ""
    reminder_times: list = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_taken: bool = False
    last_taken: Optional[datetime] = None
    pills_remaining: Optional[int] = None
    total_pills: Optional[int] = None
    has_conflicts: bool = False
    conflicts: list = field(default_factory=list)
    pharmacy: str = ""
    physician_name: str = ""
    prescription_number: str = ""
    refill_date: Optional[date] = None
    notes: str = ""
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        self.normalize()

    def normalize(self):
        """Default reminder, and pills_remaining within [0, total_pills]."""
        if not self.reminder_times:
            self.reminder_times = [ReminderTime(DEFAULT_REMINDER_TIME)]
        if self.pills_remaining is not None:
            self.pills_remaining = max(0, self.pills_remaining)
            if self.total_pills is not None:
                self.pills_remaining = min(self.pills_remaining, self.total_pills)

    @property
    def daily_frequency(self) -> int:
        """Number of enabled reminders, never less than one."""
        return max(1, sum(1 for r in self.reminder_times if r.enabled))

    def is_active_on(self, day: date) -> bool:
        """True if `day` falls inside the start/end window (both inclusive)."""
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True

    def reminder_timestamps(self, day: date) -> list:
        """Concrete reminder datetimes for `day`, enabled reminders only."""
        return [
            datetime.combine(day, r.time_of_day)
            for r in sorted(self.reminder_times, key=lambda r: r.time_of_day)
            if r.enabled
        ]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "dose": self.dose,
            "frequency_description": self.frequency_description,
            "daily_frequency": self.daily_frequency,
            "reminder_times": [r.to_dict() for r in self.reminder_times],
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_taken": self.is_taken,
            "last_taken": _iso(self.last_taken),
            "pills_remaining": self.pills_remaining,
            "total_pills": self.total_pills,
            "has_conflicts": self.has_conflicts,
            "conflicts": list(self.conflicts),
            "pharmacy": self.pharmacy,
            "physician_name": self.physician_name,
            "prescription_number": self.prescription_number,
            "refill_date": _iso(self.refill_date),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Medication":
        return cls(
            id=data.get("id") or _new_id(),
            name=data["name"],
            dose=data.get("dose", ""),
            frequency_description=data.get("frequency_description", ""),
            reminder_times=[ReminderTime.from_dict(r) for r in data.get("reminder_times", [])],
            start_date=_parse_date(data.get("start_date")),
            end_date=_parse_date(data.get("end_date")),
            is_taken=data.get("is_taken", False),
            last_taken=_parse_datetime(data.get("last_taken")),
            pills_remaining=data.get("pills_remaining"),
            total_pills=data.get("total_pills"),
            has_conflicts=data.get("has_conflicts", False),
            conflicts=list(data.get("conflicts", [])),
            pharmacy=data.get("pharmacy", ""),
            physician_name=data.get("physician_name", ""),
            prescription_number=data.get("prescription_number", ""),
            refill_date=_parse_date(data.get("refill_date")),
            notes=data.get("notes", ""),
        )


class MedicationStore:
    """Reads and writes the medication list through a key-value store."""

    KEY = "medications"

    def __init__(self, store: KeyValueStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def load_medications(self) -> list[Medication]:
        """Load all medications. Unreadable data is treated as an empty list."""
        raw = self.store.get(self.KEY)
        if raw is None:
            logger.info("No saved medications found. Starting with an empty list.")
            return []
        try:
            data = json.loads(raw.decode("utf-8"))
            return [Medication.from_dict(m) for m in data.get("medications", [])]
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error loading medications: {e}")
            return []

    def save_medications(self, medications: list[Medication]):
        data = {
            "medications": [m.to_dict() for m in medications],
            "updated_at": self.clock.now().isoformat(),
        }
        self.store.set(self.KEY, json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8"))
        logger.info(f"Saved {len(medications)} medications")

"""
Adherence Ledger — Scheduled vs. taken doses, per medication per day.

The ledger is the source of truth for adherence:
1. One DailyMedicationRecord per (day, medication), created lazily
2. Records are immutable; a change replaces the record
3. Each month's rollup is rebuilt from all of that month's records
4. Streak and weekly progress are computed from the day rollups

Persisted as one JSON list of records per month key (YYYY-MM), plus an
index of month keys.
"""

import calendar
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from storage import KeyValueStore

logger = logging.getLogger(__name__)

ADHERENT_PERCENTAGE = 80.0
STREAK_WINDOW_DAYS = 30
WEEK_DAYS = 7
INDEX_KEY = "adherence-index"


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


def day_key(day: date) -> str:
    return day.strftime("%Y-%m-%d")


class AdherenceLevel(Enum):
    PERFECT = "perfect"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    MISSED = "missed"
    NO_MEDICATIONS = "none"

    @property
    def description(self) -> str:
        return {
            AdherenceLevel.PERFECT: "Perfect (100%)",
            AdherenceLevel.GOOD: "Good (80-99%)",
            AdherenceLevel.FAIR: "Fair (50-79%)",
            AdherenceLevel.POOR: "Poor (1-49%)",
            AdherenceLevel.MISSED: "Missed (0%)",
            AdherenceLevel.NO_MEDICATIONS: "No medications",
        }[self]

    @classmethod
    def classify(cls, scheduled: int, percentage: float) -> "AdherenceLevel":
        if scheduled <= 0:
            return cls.NO_MEDICATIONS
        if percentage >= 100:
            return cls.PERFECT
        if percentage >= 80:
            return cls.GOOD
        if percentage >= 50:
            return cls.FAIR
        if percentage > 0:
            return cls.POOR
        return cls.MISSED


def _percentage(taken: int, scheduled: int) -> float:
    return (taken / scheduled * 100.0) if scheduled > 0 else 0.0


@dataclass(frozen=True)
class DailyMedicationRecord:
    day: date
    medication_id: str
    medication_name: str
    scheduled_doses: int
    taken_doses: int = 0
    reminder_times: tuple = ()
    taken_times: tuple = ()
    adherence_percentage: float = field(init=False)

    def __post_init__(self):
        scheduled = max(1, self.scheduled_doses)
        taken = min(max(0, self.taken_doses), scheduled)
        object.__setattr__(self, "scheduled_doses", scheduled)
        object.__setattr__(self, "taken_doses", taken)
        object.__setattr__(self, "reminder_times", tuple(self.reminder_times))
        object.__setattr__(self, "taken_times", tuple(self.taken_times))
        object.__setattr__(self, "adherence_percentage", _percentage(taken, scheduled))

    @property
    def adherence_level(self) -> AdherenceLevel:
        return AdherenceLevel.classify(self.scheduled_doses, self.adherence_percentage)

    def to_dict(self) -> dict:
        return {
            "day": day_key(self.day),
            "medication_id": self.medication_id,
            "medication_name": self.medication_name,
            "scheduled_doses": self.scheduled_doses,
            "taken_doses": self.taken_doses,
            "reminder_times": [t.isoformat() for t in self.reminder_times],
            "taken_times": [t.isoformat() for t in self.taken_times],
            "adherence_percentage": round(self.adherence_percentage, 1),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DailyMedicationRecord":
        return cls(
            day=date.fromisoformat(data["day"]),
            medication_id=data["medication_id"],
            medication_name=data.get("medication_name", ""),
            scheduled_doses=int(data["scheduled_doses"]),
            taken_doses=int(data.get("taken_doses", 0)),
            reminder_times=tuple(datetime.fromisoformat(t) for t in data.get("reminder_times", [])),
            taken_times=tuple(datetime.fromisoformat(t) for t in data.get("taken_times", [])),
        )


@dataclass(frozen=True)
class DayAdherenceData:
    day: date
    total_scheduled: int
    total_taken: int
    adherence_percentage: float
    medication_records: tuple

    @property
    def adherence_level(self) -> AdherenceLevel:
        return AdherenceLevel.classify(self.total_scheduled, self.adherence_percentage)

    @classmethod
    def build(cls, day: date, records) -> "DayAdherenceData":
        records = tuple(sorted(records, key=lambda r: r.medication_name.lower()))
        scheduled = sum(r.scheduled_doses for r in records)
        taken = sum(r.taken_doses for r in records)
        return cls(
            day=day,
            total_scheduled=scheduled,
            total_taken=taken,
            adherence_percentage=_percentage(taken, scheduled),
            medication_records=records,
        )

    def to_dict(self) -> dict:
        return {
            "day": day_key(self.day),
            "total_scheduled": self.total_scheduled,
            "total_taken": self.total_taken,
            "adherence_percentage": round(self.adherence_percentage, 1),
            "adherence_level": self.adherence_level.value,
            "medication_records": [r.to_dict() for r in self.medication_records],
        }


@dataclass(frozen=True)
class MonthlyAdherenceData:
    year: int
    month: int
    daily_records: dict
    overall_adherence: float
    total_days: int
    active_days: int

    @classmethod
    def build(cls, year: int, month: int, records) -> "MonthlyAdherenceData":
        """Roll up a month from its complete list of records."""
        by_day: dict[date, list] = {}
        for record in records:
            by_day.setdefault(record.day, []).append(record)

        daily = {day_key(d): DayAdherenceData.build(d, recs) for d, recs in sorted(by_day.items())}
        scheduled = sum(d.total_scheduled for d in daily.values())
        taken = sum(d.total_taken for d in daily.values())
        return cls(
            year=year,
            month=month,
            daily_records=daily,
            overall_adherence=_percentage(taken, scheduled),
            total_days=calendar.monthrange(year, month)[1],
            active_days=sum(1 for d in daily.values() if d.total_scheduled > 0),
        )

    @property
    def records(self) -> list:
        return [r for d in self.daily_records.values() for r in d.medication_records]

    def to_dict(self) -> dict:
        return {
            "month": f"{self.year:04d}-{self.month:02d}",
            "overall_adherence": round(self.overall_adherence, 1),
            "total_days": self.total_days,
            "active_days": self.active_days,
            "daily_records": {k: v.to_dict() for k, v in self.daily_records.items()},
        }


class AdherenceLedger:
    """Ground-truth ledger of scheduled vs. taken doses."""

    def __init__(self, store: KeyValueStore, clock):
        self.store = store
        self.clock = clock
        self._months: dict[str, MonthlyAdherenceData] = {}
        self._month_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._index_lock = threading.Lock()
        self._load()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_taken(self, medication, at: Optional[datetime] = None) -> DailyMedicationRecord:
        """Count one dose of `medication` as taken at `at` (default: now)."""
        at = at or self.clock.now()
        day = at.date()

        def change(records: dict) -> bool:
            existing = records.get(medication.id)
            taken = existing.taken_doses if existing else 0
            taken_times = existing.taken_times if existing else ()
            records[medication.id] = self._new_record(
                medication, day, taken + 1, taken_times + (at,)
            )
            return True

        record = self._update_day(day, change)[medication.id]
        logger.info(
            f"Recorded dose of {medication.name} on {day_key(day)}: "
            f"{record.taken_doses}/{record.scheduled_doses}"
        )
        return record

    def record_not_taken(self, medication, day: Optional[date] = None) -> DailyMedicationRecord:
        """Log a skip. The taken count is left as it was."""
        day = day or self.clock.today()

        def change(records: dict) -> bool:
            existing = records.get(medication.id)
            if existing:
                records[medication.id] = self._new_record(
                    medication, day, existing.taken_doses, existing.taken_times
                )
            else:
                records[medication.id] = self._new_record(medication, day, 0, ())
            return True

        record = self._update_day(day, change)[medication.id]
        logger.info(f"Recorded skipped dose of {medication.name} on {day_key(day)}")
        return record

    def initialize_daily_records(self, medications, day: Optional[date] = None) -> list:
        """Make sure every medication active on `day` has a record for it.

        Existing records are left untouched. Returns the records created.
        """
        day = day or self.clock.today()
        created = []

        def change(records: dict) -> bool:
            for medication in medications:
                if not medication.is_active_on(day) or medication.id in records:
                    continue
                record = self._new_record(medication, day, 0, ())
                records[medication.id] = record
                created.append(record)
            return bool(created)

        self._update_day(day, change)
        if created:
            logger.info(f"Initialized {len(created)} daily records for {day_key(day)}")
        return created

    def reset(self):
        """Delete every record. The only way records are removed."""
        with self._index_lock:
            for key in list(self._months):
                self.store.delete(key)
            self._months = {}
            self.store.set(INDEX_KEY, json.dumps([]).encode("utf-8"))
        logger.warning("Adherence ledger reset; all records deleted")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_day_data(self, day: date) -> Optional[DayAdherenceData]:
        month = self._months.get(month_key(day))
        if month is None:
            return None
        return month.daily_records.get(day_key(day))

    def get_monthly_data(self, day: date) -> Optional[MonthlyAdherenceData]:
        return self._months.get(month_key(day))

    def get_current_month_data(self) -> Optional[MonthlyAdherenceData]:
        return self.get_monthly_data(self.clock.today())

    def get_records(self, medication_id: str) -> list:
        """All records for a medication, most recent first."""
        records = [
            r
            for month in list(self._months.values())
            for r in month.records
            if r.medication_id == medication_id
        ]
        return sorted(records, key=lambda r: r.day, reverse=True)

    def get_adherence_streak(self) -> int:
        """Consecutive days ending today with a record at >= 80% adherence."""
        today = self.clock.today()
        streak = 0
        for offset in range(STREAK_WINDOW_DAYS):
            day_data = self.get_day_data(today - timedelta(days=offset))
            if day_data is None or day_data.adherence_percentage < ADHERENT_PERCENTAGE:
                break
            streak += 1
        return streak

    def get_weekly_progress(self) -> list:
        """Seven booleans, oldest first, True where the day reached 80%."""
        today = self.clock.today()
        progress = []
        for offset in range(WEEK_DAYS - 1, -1, -1):
            day_data = self.get_day_data(today - timedelta(days=offset))
            progress.append(
                day_data is not None and day_data.adherence_percentage >= ADHERENT_PERCENTAGE
            )
        return progress

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _new_record(medication, day: date, taken: int, taken_times) -> DailyMedicationRecord:
        return DailyMedicationRecord(
            day=day,
            medication_id=medication.id,
            medication_name=medication.name,
            scheduled_doses=medication.daily_frequency,
            taken_doses=taken,
            reminder_times=tuple(medication.reminder_timestamps(day)),
            taken_times=tuple(taken_times),
        )

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._month_locks.get(key)
            if lock is None:
                lock = self._month_locks[key] = threading.Lock()
            return lock

    def _update_day(self, day: date, change) -> dict:
        """Read-modify-write one day's records under the month lock.

        `change` gets the day's records keyed by medication id, edits the
        dict in place and returns True if anything changed. The month is then
        rebuilt from all of its records and persisted.
        """
        key = month_key(day)
        dkey = day_key(day)
        with self._lock_for(key):
            month = self._months.get(key)
            others = []
            day_records = {}
            if month is not None:
                for record in month.records:
                    if day_key(record.day) == dkey:
                        day_records[record.medication_id] = record
                    else:
                        others.append(record)

            if not change(day_records):
                return day_records

            rebuilt = MonthlyAdherenceData.build(day.year, day.month, others + list(day_records.values()))
            self._save_month(key, rebuilt)
            self._months[key] = rebuilt
            if month is None:
                self._save_index()
            return day_records

    def _save_month(self, key: str, month: MonthlyAdherenceData):
        payload = [r.to_dict() for r in sorted(month.records, key=lambda r: (r.day, r.medication_id))]
        self.store.set(key, json.dumps(payload, indent=2).encode("utf-8"))

    def _save_index(self):
        with self._index_lock:
            keys = sorted(self._months)
            self.store.set(INDEX_KEY, json.dumps(keys).encode("utf-8"))

    def _load(self):
        """Load all months. Anything unreadable is treated as missing."""
        raw_index = self.store.get(INDEX_KEY)
        if raw_index is None:
            logger.info("No adherence history found. Starting fresh.")
            return
        try:
            keys = json.loads(raw_index.decode("utf-8"))
            if not isinstance(keys, list):
                raise ValueError("index is not a list")
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Adherence index unreadable ({e}). Starting fresh.")
            return

        for key in keys:
            raw = self.store.get(key)
            if raw is None:
                continue
            try:
                year, month = (int(part) for part in key.split("-"))
                records = [DailyMedicationRecord.from_dict(r) for r in json.loads(raw.decode("utf-8"))]
                self._months[key] = MonthlyAdherenceData.build(year, month, records)
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Adherence data for {key} unreadable ({e}). Skipping month.")
        logger.info(f"Loaded adherence history for {len(self._months)} months")

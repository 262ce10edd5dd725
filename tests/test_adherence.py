"""
Unit tests for the adherence ledger.
Run with: python -m pytest tests/ -v
"""

import json
import os
import sys
import threading
from datetime import date, datetime, time, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from adherence import (
    INDEX_KEY,
    AdherenceLedger,
    AdherenceLevel,
    DailyMedicationRecord,
    MonthlyAdherenceData,
    month_key,
)
from clock import FixedClock
from models import Medication, ReminderTime
from storage import MemoryStore


def twice_daily(name="Metformin", **kwargs):
    return Medication(
        name=name,
        dose="500mg",
        reminder_times=[ReminderTime(time(8, 0)), ReminderTime(time(20, 0))],
        **kwargs,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 15, 10, 0))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store, clock):
    return AdherenceLedger(store, clock)


class TestAdherenceLevel:
    """Tests for the adherence level table."""

    @pytest.mark.parametrize(
        "scheduled,percentage,level",
        [
            (0, 0, AdherenceLevel.NO_MEDICATIONS),
            (2, 100, AdherenceLevel.PERFECT),
            (5, 80, AdherenceLevel.GOOD),
            (2, 50, AdherenceLevel.FAIR),
            (4, 25, AdherenceLevel.POOR),
            (2, 0, AdherenceLevel.MISSED),
        ],
    )
    def test_classify(self, scheduled, percentage, level):
        assert AdherenceLevel.classify(scheduled, percentage) == level

    def test_descriptions(self):
        assert AdherenceLevel.GOOD.description == "Good (80-99%)"
        assert AdherenceLevel.NO_MEDICATIONS.description == "No medications"


class TestDailyMedicationRecord:
    """Tests for record invariants."""

    def test_taken_clamped_to_scheduled(self):
        record = DailyMedicationRecord(
            day=date(2024, 3, 15), medication_id="m1", medication_name="A",
            scheduled_doses=2, taken_doses=5,
        )
        assert record.taken_doses == 2
        assert record.adherence_percentage == 100.0

    def test_scheduled_at_least_one(self):
        record = DailyMedicationRecord(
            day=date(2024, 3, 15), medication_id="m1", medication_name="A",
            scheduled_doses=0, taken_doses=-1,
        )
        assert record.scheduled_doses == 1
        assert record.taken_doses == 0

    def test_to_dict_and_from_dict(self):
        record = DailyMedicationRecord(
            day=date(2024, 3, 15), medication_id="m1", medication_name="A",
            scheduled_doses=2, taken_doses=1,
            reminder_times=(datetime(2024, 3, 15, 8, 0),),
            taken_times=(datetime(2024, 3, 15, 8, 5),),
        )
        restored = DailyMedicationRecord.from_dict(record.to_dict())
        assert restored == record


class TestRecording:
    """Tests for taken / not taken / initialization."""

    def test_record_taken_increments(self, ledger, clock):
        med = twice_daily()
        record = ledger.record_taken(med)
        assert record.taken_doses == 1
        assert record.scheduled_doses == 2
        assert record.adherence_percentage == 50.0
        assert record.taken_times == (clock.now(),)

    def test_taking_more_than_scheduled_clamps(self, ledger):
        med = twice_daily()
        for _ in range(3):
            record = ledger.record_taken(med)
        assert record.taken_doses == 2
        assert record.adherence_percentage == 100.0
        assert len(record.taken_times) == 3

    def test_record_taken_uses_day_of_timestamp(self, ledger, clock):
        med = twice_daily()
        yesterday = clock.now() - timedelta(days=1)
        ledger.record_taken(med, yesterday)
        assert ledger.get_day_data(yesterday.date()).total_taken == 1
        assert ledger.get_day_data(clock.today()) is None

    def test_record_not_taken_never_decrements(self, ledger, clock):
        med = twice_daily()
        ledger.record_taken(med)
        record = ledger.record_not_taken(med)
        assert record.taken_doses == 1

    def test_record_not_taken_creates_record(self, ledger, clock):
        med = twice_daily()
        record = ledger.record_not_taken(med)
        assert record.taken_doses == 0
        assert ledger.get_day_data(clock.today()).total_scheduled == 2

    def test_schedule_refreshed_on_update(self, ledger):
        med = twice_daily()
        ledger.record_taken(med)
        ledger.record_taken(med)
        med.reminder_times = [ReminderTime(time(9, 0))]
        record = ledger.record_not_taken(med)
        assert record.scheduled_doses == 1
        assert record.taken_doses == 1

    def test_initialize_is_idempotent(self, ledger, clock):
        meds = [twice_daily(), twice_daily("Lisinopril")]
        created = ledger.initialize_daily_records(meds)
        assert len(created) == 2
        before = ledger.get_day_data(clock.today())

        assert ledger.initialize_daily_records(meds) == []
        assert ledger.get_day_data(clock.today()) == before

    def test_initialize_keeps_existing_counts(self, ledger, clock):
        med = twice_daily()
        ledger.record_taken(med)
        ledger.initialize_daily_records([med])
        assert ledger.get_day_data(clock.today()).total_taken == 1

    def test_initialize_skips_inactive(self, ledger, clock):
        ended = twice_daily(end_date=clock.today() - timedelta(days=1))
        future = twice_daily("Later", start_date=clock.today() + timedelta(days=1))
        assert ledger.initialize_daily_records([ended, future]) == []
        assert ledger.get_day_data(clock.today()) is None


class TestMonthlyData:
    """Tests for the month rollup."""

    def test_overall_matches_records(self, ledger, clock):
        a, b = twice_daily("A"), twice_daily("B")
        today = clock.now()
        ledger.record_taken(a, today)
        ledger.record_taken(a, today)
        ledger.record_taken(b, today - timedelta(days=1))
        ledger.record_not_taken(b, clock.today())

        month = ledger.get_monthly_data(clock.today())
        records = month.records
        taken = sum(r.taken_doses for r in records)
        scheduled = sum(r.scheduled_doses for r in records)
        assert month.overall_adherence == pytest.approx(taken / scheduled * 100)
        assert month.active_days == 2
        assert month.total_days == 31

    def test_build_from_records(self):
        records = [
            DailyMedicationRecord(date(2024, 2, 1), "a", "A", 2, 2),
            DailyMedicationRecord(date(2024, 2, 2), "a", "A", 2, 0),
        ]
        month = MonthlyAdherenceData.build(2024, 2, records)
        assert month.total_days == 29
        assert month.overall_adherence == 50.0
        assert list(month.daily_records) == ["2024-02-01", "2024-02-02"]

    def test_current_month(self, ledger, clock):
        assert ledger.get_current_month_data() is None
        ledger.record_taken(twice_daily())
        assert ledger.get_current_month_data().month == 3

    def test_get_records_most_recent_first(self, ledger, clock):
        med = twice_daily()
        for offset in (3, 0, 1):
            ledger.record_taken(med, clock.now() - timedelta(days=offset))
        days = [r.day for r in ledger.get_records(med.id)]
        assert days == sorted(days, reverse=True)
        assert ledger.get_records("unknown") == []


class TestStreaks:
    """Tests for streak and weekly progress."""

    def _take(self, ledger, med, day, count):
        ledger.record_not_taken(med, day)
        for _ in range(count):
            ledger.record_taken(med, datetime.combine(day, time(9, 0)))

    def test_streak_broken_by_half_day(self, ledger, clock):
        med = twice_daily()
        today = clock.today()
        self._take(ledger, med, today - timedelta(days=2), 2)
        self._take(ledger, med, today - timedelta(days=1), 1)
        self._take(ledger, med, today, 2)
        assert ledger.get_adherence_streak() == 1

    def test_streak_zero_when_today_missing(self, ledger, clock):
        med = twice_daily()
        self._take(ledger, med, clock.today() - timedelta(days=1), 2)
        assert ledger.get_adherence_streak() == 0

    def test_streak_crosses_month_boundary(self, store):
        clock = FixedClock(datetime(2024, 3, 1, 12, 0))
        ledger = AdherenceLedger(store, clock)
        med = twice_daily()
        for day in (date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)):
            self._take(ledger, med, day, 2)
        assert ledger.get_adherence_streak() == 3

    def test_streak_capped_at_window(self, ledger, clock):
        med = twice_daily()
        for offset in range(35):
            self._take(ledger, med, clock.today() - timedelta(days=offset), 2)
        assert ledger.get_adherence_streak() == 30

    def test_weekly_progress_oldest_first(self, ledger, clock):
        med = twice_daily()
        today = clock.today()
        self._take(ledger, med, today - timedelta(days=6), 2)
        self._take(ledger, med, today, 1)
        progress = ledger.get_weekly_progress()
        assert progress == [True, False, False, False, False, False, False]


class TestPersistence:
    """Tests for reload and corrupt data."""

    def test_reload_from_store(self, store, clock):
        med = twice_daily()
        AdherenceLedger(store, clock).record_taken(med)
        reloaded = AdherenceLedger(store, clock)
        assert reloaded.get_day_data(clock.today()).total_taken == 1
        assert json.loads(store.get(INDEX_KEY).decode("utf-8")) == ["2024-03"]

    def test_corrupt_index_starts_empty(self, store, clock):
        store.set(INDEX_KEY, b"not json")
        ledger = AdherenceLedger(store, clock)
        assert ledger.get_current_month_data() is None
        ledger.record_taken(twice_daily())
        assert ledger.get_day_data(clock.today()).total_taken == 1

    def test_corrupt_month_skipped(self, store, clock):
        med = twice_daily()
        AdherenceLedger(store, clock).record_taken(med, datetime(2024, 2, 10, 9, 0))
        AdherenceLedger(store, clock).record_taken(med)
        store.set(month_key(date(2024, 2, 1)), b"\xff\xfe")

        ledger = AdherenceLedger(store, clock)
        assert ledger.get_monthly_data(date(2024, 2, 1)) is None
        assert ledger.get_day_data(clock.today()).total_taken == 1

    def test_reset_deletes_everything(self, store, clock):
        ledger = AdherenceLedger(store, clock)
        ledger.record_taken(twice_daily())
        ledger.reset()
        assert ledger.get_current_month_data() is None
        assert store.get("2024-03") is None
        assert AdherenceLedger(store, clock).get_current_month_data() is None


def run_together(targets):
    """Start every callable at once on its own thread and wait for all."""
    barrier = threading.Barrier(len(targets))

    def wrap(target):
        def run():
            barrier.wait()
            target()
        return run

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)


class TestConcurrentWrites:
    """Tests for writes racing on the same month."""

    def test_no_lost_increments_same_day(self, ledger, clock):
        med = Medication(
            name="Insulin",
            reminder_times=[ReminderTime(time(hour, 0)) for hour in range(20)],
        )
        run_together([lambda: ledger.record_taken(med) for _ in range(20)])

        record = ledger.get_records(med.id)[0]
        assert record.taken_doses == 20
        assert len(record.taken_times) == 20
        assert ledger.get_day_data(clock.today()).total_taken == 20

    def test_two_medications_same_month_both_persisted(self, store, clock):
        ledger = AdherenceLedger(store, clock)
        a, b = twice_daily("A"), twice_daily("B")
        yesterday = clock.now() - timedelta(days=1)
        targets = []
        for _ in range(2):
            targets.append(lambda: ledger.record_taken(a))
            targets.append(lambda: ledger.record_taken(b, yesterday))
        run_together(targets)

        reloaded = AdherenceLedger(store, clock)
        assert reloaded.get_day_data(clock.today()).total_taken == 2
        assert reloaded.get_day_data(yesterday.date()).total_taken == 2
        saved = json.loads(store.get("2024-03").decode("utf-8"))
        assert sorted((r["medication_name"], r["taken_doses"]) for r in saved) == [("A", 2), ("B", 2)]

"""
Medication Manager — Keeps the medication list and the three engines in step.

Every event goes through here:
1. Add / update / delete a medication
2. Take or skip a dose (adherence ledger, pill inventory, refill predictions)
3. Refill received
4. Start of a new day (reset today's flags, create the day's ledger records)

Interaction checks run in the background and their results are copied onto
each medication's `conflicts`. A failure in the refill or interaction step
is logged and never undoes a ledger write.
"""

import asyncio
import logging
import threading
from datetime import date, datetime
from typing import Optional

from adherence import AdherenceLedger, day_key
from adherence_report import AdherenceReporter
from clock import SystemClock
from drug_info import DrugInformation, get_drug_information
from interactions import InteractionChecker, known_pair_interactions
from models import Medication, MedicationStore
from refill import RefillManager
from storage import KeyValueStore

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name",
    "dose",
    "frequency_description",
    "reminder_times",
    "start_date",
    "end_date",
    "pills_remaining",
    "total_pills",
    "pharmacy",
    "physician_name",
    "prescription_number",
    "notes",
}


class MedicationManager:
    """Orchestrates medications, adherence, refills and interactions."""

    def __init__(
        self,
        store: KeyValueStore,
        clock=None,
        lookup=None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.clock = clock or SystemClock()
        self.lookup = lookup
        self.loop = loop
        self.med_store = MedicationStore(store, self.clock)
        self.ledger = AdherenceLedger(store, self.clock)
        self.refills = RefillManager(self.ledger, self.clock)
        self.reporter = AdherenceReporter(self.ledger, self.clock, store)
        self.interactions = InteractionChecker(
            lookup=lookup, loop=loop, on_publish=self._apply_interactions
        )
        self._lock = threading.RLock()
        self.medications = self.med_store.load_medications()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_medication(self, medication_id: str) -> Optional[Medication]:
        with self._lock:
            for med in self.medications:
                if med.id == medication_id:
                    return med
        return None

    def list_medications(self) -> list:
        with self._lock:
            return list(self.medications)

    def active_medications(self, day: Optional[date] = None) -> list:
        day = day or self.clock.today()
        with self._lock:
            return [m for m in self.medications if m.is_active_on(day)]

    # ------------------------------------------------------------------
    # Medication events
    # ------------------------------------------------------------------

    def add_medication(self, med: Medication) -> dict:
        """Add a medication and bring the engines up to date."""
        if not isinstance(med.name, str) or not med.name.strip():
            raise ValueError("Medication name is required")
        med.name = med.name.strip()
        today = self.clock.today()
        if med.start_date is None:
            med.start_date = today

        with self._lock:
            existing = [m.name for m in self.medications if m.is_active_on(today)]
            self.medications.append(med)
            self._save()

        self.ledger.initialize_daily_records([med], today)
        self._after_medication_change()

        result = {
            "status": "added",
            "medication_id": med.id,
            "medication": med.name,
            "schedule": ", ".join(t.strftime("%H:%M") for t in med.reminder_timestamps(today)),
        }
        warnings = [
            i.description for i in known_pair_interactions(existing + [med.name]) if i.involves(med.name)
        ]
        if warnings:
            result["warnings"] = warnings
            logger.warning(f"Drug interactions found for {med.name}: {warnings}")
        return result

    def update_medication(self, medication_id: str, **changes) -> dict:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "name" in changes:
            if not isinstance(changes["name"], str) or not changes["name"].strip():
                raise ValueError("Medication name is required")
            changes["name"] = changes["name"].strip()

        with self._lock:
            med = self.get_medication(medication_id)
            if med is None:
                return {"status": "not_found", "medication_id": medication_id}
            for key, value in changes.items():
                setattr(med, key, value)
            med.normalize()
            self._save()

        self.ledger.initialize_daily_records([med], self.clock.today())
        self._after_medication_change()
        logger.info(f"Updated medication {med.name}: {sorted(changes)}")
        return {"status": "updated", "medication_id": med.id, "medication": med.name}

    def remove_medication(self, medication_id: str) -> dict:
        """Remove a medication. Its ledger history is kept."""
        with self._lock:
            med = self.get_medication(medication_id)
            if med is None:
                return {"status": "not_found", "medication_id": medication_id}
            self.medications.remove(med)
            self._save()

        self._after_medication_change()
        return {"status": "removed", "medication_id": medication_id, "medication": med.name}

    # ------------------------------------------------------------------
    # Dose events
    # ------------------------------------------------------------------

    def take_dose(self, medication_id: str, at: Optional[datetime] = None) -> dict:
        """Record a dose as taken."""
        at = at or self.clock.now()
        with self._lock:
            med = self.get_medication(medication_id)
            if med is None:
                return {"status": "not_found", "medication_id": medication_id}
            if not med.is_active_on(at.date()):
                return {"status": "inactive", "medication_id": medication_id, "medication": med.name}

            record = self.ledger.record_taken(med, at)
            remaining = self.refills.record_pill_taken(med)
            med.is_taken = True
            med.last_taken = at
            self._save()

        self._run_step("Refill prediction", self.refills.update_predictions, self.active_medications())
        self._run_step("Streak update", self.reporter.update_streak)

        return {
            "status": "recorded",
            "medication_id": med.id,
            "medication": med.name,
            "date": day_key(record.day),
            "taken_doses": record.taken_doses,
            "scheduled_doses": record.scheduled_doses,
            "adherence_percentage": round(record.adherence_percentage, 1),
            "pills_remaining": remaining,
        }

    def skip_dose(self, medication_id: str, day: Optional[date] = None) -> dict:
        """Log a skipped dose."""
        day = day or self.clock.today()
        with self._lock:
            med = self.get_medication(medication_id)
            if med is None:
                return {"status": "not_found", "medication_id": medication_id}
            record = self.ledger.record_not_taken(med, day)

        self._run_step("Refill prediction", self.refills.update_predictions, self.active_medications())
        self._run_step("Streak update", self.reporter.update_streak)

        return {
            "status": "skipped",
            "medication_id": med.id,
            "medication": med.name,
            "date": day_key(record.day),
            "taken_doses": record.taken_doses,
            "scheduled_doses": record.scheduled_doses,
        }

    def record_refill(self, medication_id: str, pills: Optional[int] = None) -> dict:
        """Mark a refill as received. Defaults to a full supply of total_pills."""
        with self._lock:
            med = self.get_medication(medication_id)
            if med is None:
                return {"status": "not_found", "medication_id": medication_id}
            new_supply = pills if pills is not None else med.total_pills
            if new_supply is None:
                return {"status": "unknown_supply", "medication_id": medication_id, "medication": med.name}
            if med.total_pills is None or new_supply > med.total_pills:
                med.total_pills = new_supply
            med.pills_remaining = new_supply
            med.refill_date = self.clock.today()
            med.normalize()
            self._save()

        self._run_step("Refill prediction", self.refills.update_predictions, self.active_medications())
        logger.info(f"Refill recorded for {med.name}: {med.pills_remaining} pills")
        return {"status": "refilled", "medication": med.name, "new_supply": med.pills_remaining}

    def start_day(self, day: Optional[date] = None) -> dict:
        """Reset yesterday's taken flags and create today's ledger records.

        Medications that ended yesterday drop out of the interaction check.
        """
        day = day or self.clock.today()
        reset = 0
        with self._lock:
            for med in self.medications:
                if med.is_taken and (med.last_taken is None or med.last_taken.date() != day):
                    med.is_taken = False
                    reset += 1
            if reset:
                self._save()
            medications = list(self.medications)

        created = self.ledger.initialize_daily_records(medications, day)
        active = self.active_medications(day)
        self._run_step("Refill prediction", self.refills.update_predictions, active)
        self._run_step("Interaction check", self.interactions.check_interactions, active)
        self._run_step("Streak update", self.reporter.update_streak)
        logger.info(f"Started {day_key(day)}: {len(created)} records created, {reset} flags reset")
        return {"date": day_key(day), "initialized": len(created), "reset": reset}

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------

    def refresh_predictions(self) -> list:
        return self.refills.update_predictions(self.active_medications())

    def recheck_interactions(self):
        return self.interactions.check_interactions(self.active_medications())

    def drug_information(self, drug_name: str) -> DrugInformation:
        """Drug information from the lookup, or placeholder content."""
        if self.lookup is None:
            return DrugInformation(name=drug_name, is_placeholder=True)
        coro = get_drug_information(self.lookup, drug_name)
        if self.loop is not None:
            return asyncio.run_coroutine_threadsafe(coro, self.loop).result()
        return asyncio.run(coro)

    def today_summary(self) -> dict:
        today = self.clock.today()
        day_data = self.ledger.get_day_data(today)
        return {
            "date": day_key(today),
            "medications": len(self.active_medications(today)),
            "today": day_data.to_dict() if day_data else None,
            "streak": self.reporter.streak_stats(),
            "refill_alerts": len(self.refills.alerts_snapshot()),
            "refill_unavailable": sorted(self.refills.unavailable_snapshot()),
            "has_active_interactions": self.interactions.has_active_interactions,
            "interaction_check_degraded": self.interactions.external_lookup_failed,
        }

    def _after_medication_change(self):
        active = self.active_medications()
        self._run_step("Refill prediction", self.refills.update_predictions, active)
        self._run_step("Interaction check", self.interactions.check_interactions, active)

    def _apply_interactions(self, interactions):
        """Copy published interactions onto each medication's conflicts."""
        with self._lock:
            for med in self.medications:
                conflicts = [i.other_drug(med.name) for i in interactions if i.involves(med.name)]
                med.conflicts = conflicts
                med.has_conflicts = bool(conflicts)
            self._save()

    def _run_step(self, step: str, func, *args):
        try:
            return func(*args)
        except Exception as e:
            logger.error(f"{step} failed: {e}")
            return None

    def _save(self):
        self.med_store.save_medications(self.medications)

"""
Adherence Reports — Summaries built on top of the adherence ledger.

Features:
1. Period report: overall and per-medication adherence with an assessment
2. Trend of daily adherence across the period
3. Streak bookkeeping: current streak, longest streak, weekly completion
4. Weekly plain-text summary
"""

import json
import logging
import statistics
from datetime import date, timedelta
from typing import Optional

from adherence import ADHERENT_PERCENTAGE, AdherenceLevel
from storage import KeyValueStore

logger = logging.getLogger(__name__)

STREAK_KEY = "streak-stats"
TREND_THRESHOLD = 5.0


def assess_adherence(rate: float) -> str:
    """Assess an adherence rate (percent)."""
    if rate >= 90:
        return "Excellent adherence. Keep it up!"
    elif rate >= 80:
        return "Good adherence. Minor improvement possible."
    elif rate >= 60:
        return "Fair adherence. Consider setting additional reminders."
    else:
        return "Low adherence. Please discuss with healthcare provider."


class AdherenceReporter:
    """Reports and streak statistics for the adherence ledger."""

    def __init__(self, ledger, clock, store: Optional[KeyValueStore] = None):
        self.ledger = ledger
        self.clock = clock
        self.store = store
        self._longest_streak = 0
        self._load_streak_stats()

    def build_report(self, medications, days: int = 30) -> dict:
        """Adherence over the last `days` days, today included."""
        today = self.clock.today()
        start = today - timedelta(days=days - 1)
        names = {m.id: m.name for m in medications}

        total_scheduled = 0
        total_taken = 0
        by_medication = {}
        daily_percentages = []

        for offset in range(days):
            day = start + timedelta(days=offset)
            day_data = self.ledger.get_day_data(day)
            if day_data is None or day_data.total_scheduled == 0:
                continue
            daily_percentages.append(day_data.adherence_percentage)
            total_scheduled += day_data.total_scheduled
            total_taken += day_data.total_taken

            for record in day_data.medication_records:
                name = names.get(record.medication_id, record.medication_name)
                counts = by_medication.setdefault(name, {"scheduled": 0, "taken": 0})
                counts["scheduled"] += record.scheduled_doses
                counts["taken"] += record.taken_doses

        overall_rate = (total_taken / total_scheduled * 100) if total_scheduled > 0 else 0

        med_rates = {}
        for name, counts in sorted(by_medication.items()):
            rate = (counts["taken"] / counts["scheduled"] * 100) if counts["scheduled"] > 0 else 0
            med_rates[name] = {
                "adherence_rate": round(rate, 1),
                "taken": counts["taken"],
                "scheduled": counts["scheduled"],
                "status": "good" if rate >= ADHERENT_PERCENTAGE else "needs_improvement",
            }

        return {
            "period_days": days,
            "start_date": start.isoformat(),
            "end_date": today.isoformat(),
            "overall_adherence_rate": round(overall_rate, 1),
            "total_scheduled": total_scheduled,
            "total_taken": total_taken,
            "active_days": len(daily_percentages),
            "adherence_level": AdherenceLevel.classify(total_scheduled, overall_rate).value,
            "trend": self._trend(daily_percentages),
            "by_medication": med_rates,
            "assessment": assess_adherence(overall_rate),
        }

    def _trend(self, percentages: list) -> str:
        """Compare the first and second half of the period."""
        if len(percentages) < 4:
            return "stable"
        half = len(percentages) // 2
        diff = statistics.mean(percentages[half:]) - statistics.mean(percentages[:half])
        if diff > TREND_THRESHOLD:
            return "improving"
        if diff < -TREND_THRESHOLD:
            return "declining"
        return "stable"

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------

    def update_streak(self) -> dict:
        """Recompute the current streak and remember the longest one."""
        stats = self.streak_stats()
        if stats["current_streak"] > self._longest_streak:
            self._longest_streak = stats["current_streak"]
            stats["longest_streak"] = self._longest_streak
            self._save_streak_stats()
        return stats

    def streak_stats(self) -> dict:
        current = self.ledger.get_adherence_streak()
        weekly = self.ledger.get_weekly_progress()
        today = self.clock.today()
        streak_start: Optional[date] = today - timedelta(days=current - 1) if current > 0 else None
        return {
            "current_streak": current,
            "longest_streak": max(self._longest_streak, current),
            "streak_start_date": streak_start.isoformat() if streak_start else None,
            "weekly_progress": weekly,
            "weekly_completion_rate": round(sum(weekly) / len(weekly), 3),
        }

    def _load_streak_stats(self):
        if self.store is None:
            return
        raw = self.store.get(STREAK_KEY)
        if raw is None:
            return
        try:
            self._longest_streak = int(json.loads(raw.decode("utf-8")).get("longest_streak", 0))
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Streak stats unreadable ({e}). Starting from zero.")
            self._longest_streak = 0

    def _save_streak_stats(self):
        if self.store is None:
            return
        self.store.set(STREAK_KEY, json.dumps({"longest_streak": self._longest_streak}).encode("utf-8"))

    # ------------------------------------------------------------------
    # Summary text
    # ------------------------------------------------------------------

    def generate_weekly_summary(self, medications, refill_alerts=None, interactions=None) -> str:
        """Plain-text summary of the last seven days."""
        today = self.clock.today()
        report = self.build_report(medications, days=7)
        stats = self.streak_stats()

        lines = [
            "Weekly Medication Summary",
            today.strftime("%b %d, %Y"),
            "─" * 30,
            f"\nAdherence: {report['overall_adherence_rate']}% ({report['total_taken']}/{report['total_scheduled']} doses)",
            f"  Trend: {report['trend']}",
            f"  {report['assessment']}",
            f"\nStreak: {stats['current_streak']} days (best {stats['longest_streak']})",
            "  " + " ".join("■" if done else "□" for done in stats["weekly_progress"]),
        ]

        if report["by_medication"]:
            lines.append("\nBy medication:")
            for name, info in report["by_medication"].items():
                lines.append(f"  {name}: {info['adherence_rate']}% ({info['taken']}/{info['scheduled']})")

        if refill_alerts:
            lines.append("\nRefills:")
            for alert in refill_alerts:
                days = alert.prediction.days_remaining if alert.prediction else None
                lines.append(f"  [{alert.alert_type.value}] {alert.medication_name}: {days} days left")

        if interactions:
            lines.append("\nInteractions:")
            for interaction in interactions:
                lines.append(
                    f"  [{interaction.severity.value}] {interaction.drug1} + {interaction.drug2}"
                )

        return "\n".join(lines)

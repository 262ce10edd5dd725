"""
Refill Manager — Predict when each medication's pill supply runs out.

Predictions are recomputed from the adherence ledger on every call:
1. Average daily usage from recent taken doses
2. Adherence rate from taken/scheduled per day
3. Days remaining and predicted/recommended refill dates
4. Critical/warning alerts and plain-text recommendations

The ledger is only read here. Inventory (pills_remaining) is the one field
this module writes, through record_pill_taken.
"""

import logging
import statistics
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)


class PredictionConfidence(Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def description(self) -> str:
        return {
            PredictionConfidence.HIGH: "High confidence based on consistent usage data",
            PredictionConfidence.MEDIUM: "Medium confidence with moderate usage data",
            PredictionConfidence.LOW: "Low confidence - consider manual tracking",
        }[self]


class RefillAlertType(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class RefillUrgency(Enum):
    IMMEDIATE = 0
    SOON = 1
    PLANNED = 2

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True)
class UsagePattern:
    average_daily_usage: float
    adherence_rate: float
    consistency_score: float
    data_points: int
    period_days: int


@dataclass(frozen=True)
class RefillPrediction:
    average_daily_usage: float
    adherence_rate: float
    days_remaining: Optional[int]
    predicted_refill_date: Optional[date]
    recommended_refill_date: Optional[date]
    confidence: PredictionConfidence
    usage_pattern: UsagePattern

    def to_dict(self) -> dict:
        return {
            "average_daily_usage": round(self.average_daily_usage, 2),
            "adherence_rate": round(self.adherence_rate, 3),
            "days_remaining": self.days_remaining,
            "predicted_refill_date": self.predicted_refill_date.isoformat() if self.predicted_refill_date else None,
            "recommended_refill_date": self.recommended_refill_date.isoformat() if self.recommended_refill_date else None,
            "confidence": self.confidence.value,
            "data_points": self.usage_pattern.data_points,
        }


@dataclass
class RefillAlert:
    medication_id: str
    medication_name: str
    alert_type: RefillAlertType
    prediction: Optional[RefillPrediction]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "medication_id": self.medication_id,
            "medication": self.medication_name,
            "alert_type": self.alert_type.value,
            "prediction": self.prediction.to_dict() if self.prediction else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RefillRecommendation:
    medication_id: str
    medication_name: str
    urgency: RefillUrgency
    recommended_refill_date: Optional[date]
    days_remaining: Optional[int]
    confidence: PredictionConfidence
    reason: str

    def to_dict(self) -> dict:
        return {
            "medication_id": self.medication_id,
            "medication": self.medication_name,
            "urgency": self.urgency.display_name,
            "recommended_refill_date": self.recommended_refill_date.isoformat() if self.recommended_refill_date else None,
            "days_remaining": self.days_remaining,
            "confidence": self.confidence.value,
            "reason": self.reason,
        }


class RefillManager:
    """Predicts refill dates from the adherence ledger's history."""

    def __init__(
        self,
        ledger,
        clock,
        history_days: Optional[int] = None,
        min_history_days: Optional[int] = None,
        high_confidence_days: Optional[int] = None,
        consistency_stdev: Optional[float] = None,
        safety_buffer_days: Optional[int] = None,
        critical_days: Optional[int] = None,
        warning_days: Optional[int] = None,
    ):
        self.ledger = ledger
        self.clock = clock
        self.history_days = history_days or Config.REFILL_HISTORY_DAYS
        self.min_history_days = min_history_days or Config.REFILL_MIN_HISTORY_DAYS
        self.high_confidence_days = high_confidence_days or Config.REFILL_HIGH_CONFIDENCE_DAYS
        self.consistency_stdev = (
            consistency_stdev if consistency_stdev is not None else Config.REFILL_CONSISTENCY_STDEV
        )
        self.safety_buffer_days = (
            safety_buffer_days if safety_buffer_days is not None else Config.REFILL_SAFETY_BUFFER_DAYS
        )
        self.critical_days = critical_days if critical_days is not None else Config.REFILL_CRITICAL_DAYS
        self.warning_days = warning_days if warning_days is not None else Config.REFILL_WARNING_DAYS

        self._lock = threading.Lock()
        self._inventory_locks: dict[str, threading.Lock] = {}
        self._alerts: list[RefillAlert] = []
        self._predictions: dict[str, RefillPrediction] = {}
        self._unavailable: set = set()

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def update_predictions(self, medications) -> list:
        """Recompute predictions and alerts for every medication."""
        alerts = []
        predictions = {}
        unavailable = set()

        for medication in medications:
            try:
                prediction = self.calculate_prediction(medication)
            except Exception as e:
                logger.error(f"Refill prediction unavailable for {medication.name}: {e}")
                unavailable.add(medication.id)
                continue

            if prediction is None:
                continue
            predictions[medication.id] = prediction

            alert_type = self.classify(prediction.days_remaining)
            if alert_type is not None:
                alerts.append(RefillAlert(
                    medication_id=medication.id,
                    medication_name=medication.name,
                    alert_type=alert_type,
                    prediction=prediction,
                    created_at=self.clock.now(),
                ))

        with self._lock:
            self._alerts = alerts
            self._predictions = predictions
            self._unavailable = unavailable

        if alerts:
            logger.warning(
                "Refill alerts: "
                + ", ".join(f"{a.medication_name} ({a.alert_type.value})" for a in alerts)
            )
        return alerts

    def calculate_prediction(self, medication) -> Optional[RefillPrediction]:
        """Prediction for one medication, or None without a pill count."""
        if medication.pills_remaining is None:
            return None

        pattern = self.usage_pattern(medication)
        today = self.clock.today()
        usage = pattern.average_daily_usage

        if usage > 0:
            days_remaining = int(medication.pills_remaining / usage)
            predicted = today + timedelta(days=days_remaining)
            recommended = predicted - timedelta(days=self.safety_buffer_days)
        else:
            days_remaining = None
            predicted = None
            recommended = None

        return RefillPrediction(
            average_daily_usage=usage,
            adherence_rate=pattern.adherence_rate,
            days_remaining=days_remaining,
            predicted_refill_date=predicted,
            recommended_refill_date=recommended,
            confidence=self._confidence(pattern),
            usage_pattern=pattern,
        )

    def usage_pattern(self, medication) -> UsagePattern:
        """Summarize the last `history_days` days of ledger records."""
        today = self.clock.today()
        cutoff = today - timedelta(days=self.history_days - 1)
        records = [
            r for r in self.ledger.get_records(medication.id)
            if cutoff <= r.day <= today and r.scheduled_doses > 0
        ]

        ratios = [min(r.taken_doses / r.scheduled_doses, 1.0) for r in records]
        adherence_rate = statistics.mean(ratios) if ratios else 1.0
        adherence_rate = min(max(adherence_rate, 0.0), 1.0)
        spread = statistics.pstdev(ratios) if len(ratios) > 1 else 0.0

        if len(records) < self.min_history_days:
            # Not enough history: assume the prescribed schedule
            average = float(medication.daily_frequency)
        else:
            average = statistics.mean(r.taken_doses for r in records)

        return UsagePattern(
            average_daily_usage=average,
            adherence_rate=adherence_rate,
            consistency_score=max(0.0, 1.0 - spread),
            data_points=len(records),
            period_days=self.history_days,
        )

    def _confidence(self, pattern: UsagePattern) -> PredictionConfidence:
        if pattern.data_points < self.min_history_days:
            return PredictionConfidence.LOW
        if (
            pattern.data_points >= self.high_confidence_days
            and 1.0 - pattern.consistency_score <= self.consistency_stdev
        ):
            return PredictionConfidence.HIGH
        return PredictionConfidence.MEDIUM

    def classify(self, days_remaining: Optional[int]) -> Optional[RefillAlertType]:
        if days_remaining is None:
            return None
        if days_remaining <= self.critical_days:
            return RefillAlertType.CRITICAL
        if days_remaining <= self.warning_days:
            return RefillAlertType.WARNING
        return None

    # ------------------------------------------------------------------
    # Pill consumption tracking
    # ------------------------------------------------------------------

    def record_pill_taken(self, medication) -> Optional[int]:
        """Take one pill out of inventory. Returns the new count.

        When the remaining pills cover no more than the critical window at
        the prescribed rate, a critical alert is raised right away.
        """
        with self._inventory_lock(medication.id):
            if medication.pills_remaining is None:
                return None
            medication.pills_remaining = max(0, medication.pills_remaining - 1)
            remaining = medication.pills_remaining

        days_left = remaining // medication.daily_frequency
        if days_left <= self.critical_days:
            today = self.clock.today()
            prediction = RefillPrediction(
                average_daily_usage=float(medication.daily_frequency),
                adherence_rate=1.0,
                days_remaining=days_left,
                predicted_refill_date=today + timedelta(days=days_left),
                recommended_refill_date=today,
                confidence=PredictionConfidence.HIGH,
                usage_pattern=UsagePattern(
                    average_daily_usage=float(medication.daily_frequency),
                    adherence_rate=1.0,
                    consistency_score=1.0,
                    data_points=1,
                    period_days=1,
                ),
            )
            with self._lock:
                if not any(a.medication_id == medication.id for a in self._alerts):
                    self._alerts.append(RefillAlert(
                        medication_id=medication.id,
                        medication_name=medication.name,
                        alert_type=RefillAlertType.CRITICAL,
                        prediction=prediction,
                        created_at=self.clock.now(),
                    ))
                    logger.warning(f"{medication.name} is almost out: {remaining} pills left")
        return remaining

    def _inventory_lock(self, medication_id: str) -> threading.Lock:
        with self._lock:
            lock = self._inventory_locks.get(medication_id)
            if lock is None:
                lock = self._inventory_locks[medication_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def alerts_snapshot(self) -> list:
        with self._lock:
            return list(self._alerts)

    def predictions_snapshot(self) -> dict:
        with self._lock:
            return dict(self._predictions)

    def unavailable_snapshot(self) -> set:
        """Medication ids whose prediction could not be computed."""
        with self._lock:
            return set(self._unavailable)

    def recommendations_snapshot(self) -> list:
        recommendations = []
        for alert in self.alerts_snapshot():
            prediction = alert.prediction
            if prediction is None:
                continue
            recommendations.append(RefillRecommendation(
                medication_id=alert.medication_id,
                medication_name=alert.medication_name,
                urgency=(
                    RefillUrgency.IMMEDIATE
                    if alert.alert_type == RefillAlertType.CRITICAL
                    else RefillUrgency.SOON
                ),
                recommended_refill_date=prediction.recommended_refill_date,
                days_remaining=prediction.days_remaining,
                confidence=prediction.confidence,
                reason=self._recommendation_reason(alert),
            ))
        return sorted(recommendations, key=lambda r: r.urgency.value)

    def _recommendation_reason(self, alert: RefillAlert) -> str:
        prediction = alert.prediction
        days = prediction.days_remaining
        low = prediction.confidence == PredictionConfidence.LOW

        if alert.alert_type == RefillAlertType.CRITICAL:
            if low:
                return (
                    f"Critical: about {days} days of {alert.medication_name} left, "
                    f"insufficient history; consult provider and refill now."
                )
            return f"Critical: Only {days} days remaining. Refill immediately."

        if low:
            return (
                f"Refill within {days} days. Estimated from the prescribed schedule "
                f"because there is little dose history yet."
            )
        adherence = int(prediction.adherence_rate * 100)
        return f"Based on your {adherence}% adherence rate, you'll need a refill in {days} days."

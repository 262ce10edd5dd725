"""
Medbox - Main Application
Flask web server with:
  - JSON API over medications, adherence, refills and interactions
  - APScheduler jobs for the start of each day and hourly refill predictions
  - A background asyncio loop that runs interaction checks
"""

import asyncio
import logging
import os
import sys
import threading
from datetime import date, datetime, timezone

from flask import Flask, request, jsonify
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from drug_info import RxClassLookup
from medication_manager import MedicationManager
from models import Medication, ReminderTime
from storage import FileStore

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

os.makedirs(Config.LOG_DIR, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(os.path.join(Config.LOG_DIR, "medbox.log")),
    ],
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Interaction check loop
# ---------------------------------------------------------------------------


def start_background_loop() -> asyncio.AbstractEventLoop:
    """Run an asyncio event loop on a daemon thread."""
    loop = asyncio.new_event_loop()

    def run():
        asyncio.set_event_loop(loop)
        loop.run_forever()

    threading.Thread(target=run, name="interaction-loop", daemon=True).start()
    return loop


background_loop = start_background_loop()

manager = MedicationManager(
    FileStore(Config.DATA_DIR),
    lookup=RxClassLookup(),
    loop=background_loop,
)

# ---------------------------------------------------------------------------
# Flask app
# ---------------------------------------------------------------------------

app = Flask(__name__)


def _bad_request(message: str):
    return jsonify({"error": message}), 400


def _not_found(message: str):
    return jsonify({"error": message}), 404


def _status_response(result: dict):
    """Map an orchestrator result to an HTTP response."""
    if result.get("status") == "not_found":
        return _not_found("Medication not found")
    return jsonify(result)


def _parse_reminders(values) -> list:
    reminders = []
    for value in values or []:
        if isinstance(value, dict):
            reminders.append(ReminderTime.from_dict(value))
        else:
            reminders.append(ReminderTime(datetime.strptime(value, "%H:%M").time()))
    return reminders


def _medication_fields(payload: dict) -> dict:
    """Convert a JSON payload into Medication keyword arguments."""
    fields = {}
    for key in ("name", "dose", "frequency_description", "pharmacy",
                "physician_name", "prescription_number", "notes"):
        if key in payload:
            fields[key] = payload[key]
    for key in ("pills_remaining", "total_pills"):
        if key in payload:
            fields[key] = int(payload[key]) if payload[key] is not None else None
    for key in ("start_date", "end_date"):
        if key in payload:
            fields[key] = date.fromisoformat(payload[key]) if payload[key] else None
    if "reminder_times" in payload:
        fields["reminder_times"] = _parse_reminders(payload["reminder_times"])
    return fields


@app.route("/", methods=["GET"])
def index():
    """Health check and status page."""
    summary = manager.today_summary()
    return jsonify(
        {
            "service": "Medbox Medication Tracker",
            "status": "running",
            "total_medications": len(manager.list_medications()),
            "active_medications": summary["medications"],
            "current_streak": summary["streak"]["current_streak"],
            "refill_alerts": summary["refill_alerts"],
            "has_active_interactions": summary["has_active_interactions"],
            "server_time_utc": datetime.now(timezone.utc).isoformat(),
        }
    )


@app.route("/api/medications", methods=["GET"])
def list_medications():
    return jsonify({"medications": [m.to_dict() for m in manager.list_medications()]})


@app.route("/api/medications", methods=["POST"])
def add_medication():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _bad_request("Expected a JSON object")
    try:
        fields = _medication_fields(payload)
        result = manager.add_medication(Medication(**{"name": "", **fields}))
    except (ValueError, TypeError, KeyError) as e:
        return _bad_request(str(e))
    return jsonify(result), 201


@app.route("/api/medications/<medication_id>", methods=["PUT"])
def update_medication(medication_id):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _bad_request("Expected a JSON object")
    try:
        result = manager.update_medication(medication_id, **_medication_fields(payload))
    except (ValueError, TypeError, KeyError) as e:
        return _bad_request(str(e))
    return _status_response(result)


@app.route("/api/medications/<medication_id>", methods=["DELETE"])
def delete_medication(medication_id):
    return _status_response(manager.remove_medication(medication_id))


@app.route("/api/medications/<medication_id>/take", methods=["POST"])
def take_medication(medication_id):
    return _status_response(manager.take_dose(medication_id))


@app.route("/api/medications/<medication_id>/skip", methods=["POST"])
def skip_medication(medication_id):
    return _status_response(manager.skip_dose(medication_id))


@app.route("/api/medications/<medication_id>/refill", methods=["POST"])
def refill_medication(medication_id):
    payload = request.get_json(silent=True) or {}
    pills = payload.get("pills") if isinstance(payload, dict) else None
    if pills is not None:
        try:
            pills = int(pills)
        except (TypeError, ValueError):
            return _bad_request("pills must be an integer")
        if pills < 0:
            return _bad_request("pills must not be negative")
    result = manager.record_refill(medication_id, pills)
    if result["status"] == "unknown_supply":
        return _bad_request("No pill count given and no total_pills on record")
    return _status_response(result)


@app.route("/api/adherence/day/<day>", methods=["GET"])
def adherence_day(day):
    try:
        parsed = datetime.strptime(day, "%Y-%m-%d").date()
    except ValueError:
        return _bad_request("Date must be YYYY-MM-DD")
    day_data = manager.ledger.get_day_data(parsed)
    if day_data is None:
        return _not_found(f"No adherence records for {day}")
    return jsonify(day_data.to_dict())


@app.route("/api/adherence/month/<month>", methods=["GET"])
def adherence_month(month):
    try:
        parsed = datetime.strptime(month, "%Y-%m").date()
    except ValueError:
        return _bad_request("Month must be YYYY-MM")
    month_data = manager.ledger.get_monthly_data(parsed)
    if month_data is None:
        return _not_found(f"No adherence records for {month}")
    return jsonify(month_data.to_dict())


@app.route("/api/adherence/streak", methods=["GET"])
def adherence_streak():
    return jsonify(manager.reporter.streak_stats())


@app.route("/api/adherence/report", methods=["GET"])
def adherence_report():
    days = request.args.get("days", default=30, type=int)
    if days is None or days < 1:
        return _bad_request("days must be a positive integer")
    return jsonify(manager.reporter.build_report(manager.list_medications(), days=days))


@app.route("/api/refills", methods=["GET"])
def refills():
    predictions = manager.refills.predictions_snapshot()
    return jsonify(
        {
            "alerts": [a.to_dict() for a in manager.refills.alerts_snapshot()],
            "recommendations": [r.to_dict() for r in manager.refills.recommendations_snapshot()],
            "predictions": {med_id: p.to_dict() for med_id, p in predictions.items()},
            "unavailable": sorted(manager.refills.unavailable_snapshot()),
        }
    )


@app.route("/api/interactions", methods=["GET"])
def interactions():
    checker = manager.interactions
    return jsonify(
        {
            "is_checking": checker.is_checking,
            "has_active_interactions": checker.has_active_interactions,
            "external_lookup_failed": checker.external_lookup_failed,
            "interactions": [i.to_dict() for i in checker.snapshot()],
        }
    )


@app.route("/api/drug-info/<name>", methods=["GET"])
def drug_info(name):
    return jsonify(manager.drug_information(name).to_dict())


# ---------------------------------------------------------------------------
# Scheduler setup
# ---------------------------------------------------------------------------


def start_scheduler():
    """Start the background scheduler for daily and hourly jobs."""
    scheduler = BackgroundScheduler(timezone=Config.TIMEZONE)
    scheduler.add_job(
        manager.start_day,
        trigger=CronTrigger(hour=0, minute=5, timezone=Config.TIMEZONE),
        id="start_day",
        name="Reset taken flags and create today's adherence records",
        replace_existing=True,
    )
    scheduler.add_job(
        manager.refresh_predictions,
        trigger=IntervalTrigger(hours=1),
        id="refill_predictions",
        name="Recompute refill predictions",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Background scheduler started. Day starts at 00:05, predictions hourly.")
    return scheduler


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logger.info("=" * 60)
    logger.info("  Medbox Medication Tracker Starting")
    logger.info("=" * 60)

    Config.validate()
    manager.start_day()
    manager.recheck_interactions()

    bg_scheduler = start_scheduler()

    try:
        app.run(
            host=Config.API_HOST,
            port=Config.API_PORT,
            debug=False,  # Don't use debug mode with APScheduler
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
        bg_scheduler.shutdown()
        background_loop.call_soon_threadsafe(background_loop.stop)

#!/usr/bin/env python3
"""
Medbox CLI - Command-line tool for tracking medications.

Usage:
    python cli.py list-meds             # List all medications
    python cli.py add-med               # Interactively add a medication
    python cli.py take <name|id>        # Record a dose as taken
    python cli.py skip <name|id>        # Record a skipped dose
    python cli.py status                # Today's adherence and streak
    python cli.py refills               # Refill predictions and alerts
    python cli.py interactions          # Check for drug interactions
    python cli.py report [--days N]     # Adherence report for the last N days

Add --offline before the command to skip RxNav lookups.
"""

import argparse
import os
import sys
from datetime import datetime

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import Config
from drug_info import RxClassLookup
from medication_manager import MedicationManager
from models import Medication, ReminderTime
from storage import FileStore


def build_manager(args) -> MedicationManager:
    lookup = None if args.offline else RxClassLookup()
    return MedicationManager(FileStore(Config.DATA_DIR), lookup=lookup)


def find_medication(manager: MedicationManager, key: str):
    """Find a medication by id or by name (case-insensitive)."""
    med = manager.get_medication(key)
    if med:
        return med
    for m in manager.list_medications():
        if m.name.lower() == key.strip().lower():
            return m
    return None


def cmd_list_meds(args):
    """List all medications."""
    manager = build_manager(args)
    medications = manager.list_medications()
    if not medications:
        print("No medications found. Run 'python cli.py add-med' to add one.")
        return

    print(f"\n{'Name':<18} {'Dose':<10} {'Times':<18} {'Pills':<10} {'Taken':<7} {'Conflicts'}")
    print("-" * 90)
    for m in medications:
        times = ",".join(r.time_of_day.strftime("%H:%M") for r in m.reminder_times if r.enabled)
        pills = f"{m.pills_remaining}/{m.total_pills}" if m.pills_remaining is not None else "-"
        print(
            f"{m.name:<18} {m.dose:<10} {times:<18} {pills:<10} "
            f"{'✅' if m.is_taken else '⬜':<7} {', '.join(m.conflicts) or '-'}"
        )
    print()


def cmd_add_med(args):
    """Interactively add a medication."""
    print("\n--- Add New Medication ---")
    name = input("Name: ").strip()
    dose = input("Dose (e.g. 10mg): ").strip()
    frequency = input("Frequency description (e.g. twice daily): ").strip()
    times_input = input("Reminder times, comma separated (HH:MM) [09:00]: ").strip() or "09:00"
    total_input = input("Pills per supply (blank if not tracked): ").strip()
    remaining_input = input(f"Pills remaining [{total_input or '-'}]: ").strip() or total_input

    try:
        reminders = [
            ReminderTime(datetime.strptime(t.strip(), "%H:%M").time())
            for t in times_input.split(",")
            if t.strip()
        ]
        med = Medication(
            name=name,
            dose=dose,
            frequency_description=frequency,
            reminder_times=reminders,
            total_pills=int(total_input) if total_input else None,
            pills_remaining=int(remaining_input) if remaining_input else None,
        )
        result = build_manager(args).add_medication(med)
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(1)

    print(f"\n✅ Medication '{result['medication']}' added. Schedule: {result['schedule']}")
    for warning in result.get("warnings", []):
        print(f"⚠️  {warning}")


def cmd_take(args):
    """Record a dose as taken."""
    manager = build_manager(args)
    med = find_medication(manager, args.medication)
    if not med:
        print(f"❌ Medication '{args.medication}' not found.")
        sys.exit(1)

    result = manager.take_dose(med.id)
    if result["status"] == "inactive":
        print(f"⚠️  {med.name} is not scheduled today.")
        return
    print(
        f"✅ {result['medication']}: {result['taken_doses']}/{result['scheduled_doses']} doses today"
    )
    if result["pills_remaining"] is not None:
        print(f"   {result['pills_remaining']} pills remaining")
    for alert in manager.refills.alerts_snapshot():
        if alert.medication_id == med.id:
            print(f"⚠️  Refill {alert.alert_type.value}: {med.name} is running low")


def cmd_skip(args):
    """Record a skipped dose."""
    manager = build_manager(args)
    med = find_medication(manager, args.medication)
    if not med:
        print(f"❌ Medication '{args.medication}' not found.")
        sys.exit(1)

    result = manager.skip_dose(med.id)
    print(
        f"Skipped {result['medication']}: {result['taken_doses']}/{result['scheduled_doses']} doses today"
    )


def cmd_status(args):
    """Show today's adherence and the current streak."""
    manager = build_manager(args)
    manager.start_day()
    summary = manager.today_summary()
    stats = summary["streak"]

    print(f"\nToday ({summary['date']}): {summary['medications']} active medications")
    today = summary["today"]
    if today:
        for record in today["medication_records"]:
            mark = "✅" if record["taken_doses"] >= record["scheduled_doses"] else "⬜"
            print(
                f"  {mark} {record['medication_name']:<18} "
                f"{record['taken_doses']}/{record['scheduled_doses']}"
            )
        print(f"  Adherence: {today['adherence_percentage']}% ({today['adherence_level']})")

    week = " ".join("■" if done else "□" for done in stats["weekly_progress"])
    print(f"\nStreak: {stats['current_streak']} days (best {stats['longest_streak']})")
    print(f"This week: {week}")
    if summary["refill_alerts"]:
        print(f"\n⚠️  {summary['refill_alerts']} refill alert(s). Run 'python cli.py refills'.")
    print()


def cmd_refills(args):
    """Show refill predictions and recommendations."""
    manager = build_manager(args)
    manager.refresh_predictions()
    predictions = manager.refills.predictions_snapshot()
    if not predictions:
        print("No pill counts tracked.")
        return

    print(f"\n{'Name':<18} {'Days left':<10} {'Refill by':<12} {'Confidence'}")
    print("-" * 60)
    for med in manager.active_medications():
        prediction = predictions.get(med.id)
        if prediction is None:
            continue
        days = prediction.days_remaining if prediction.days_remaining is not None else "-"
        refill_by = prediction.recommended_refill_date or "-"
        print(f"{med.name:<18} {days!s:<10} {refill_by!s:<12} {prediction.confidence.value}")

    recommendations = manager.refills.recommendations_snapshot()
    if recommendations:
        print("\nRecommendations:")
        for r in recommendations:
            print(f"  [{r.urgency.display_name}] {r.medication_name}: {r.reason}")
    for med_id in manager.refills.unavailable_snapshot():
        med = manager.get_medication(med_id)
        print(f"  Refill prediction unavailable for {med.name if med else med_id}")
    print()


def cmd_interactions(args):
    """Check the active medications for drug interactions."""
    manager = build_manager(args)
    manager.recheck_interactions()
    checker = manager.interactions
    found = checker.snapshot()

    if checker.external_lookup_failed:
        print("⚠️  RxNav lookup failed for some medications; showing known interactions only.")
    if not found:
        print("✅ No interactions found.")
        return

    for interaction in sorted(found, key=lambda i: -i.severity.rank):
        print(f"[{interaction.severity.value}] {interaction.drug1} + {interaction.drug2}")
        print(f"    {interaction.description}")


def cmd_report(args):
    """Print the adherence summary."""
    manager = build_manager(args)
    if args.days == 7:
        manager.refresh_predictions()
        manager.recheck_interactions()
        print(manager.reporter.generate_weekly_summary(
            manager.list_medications(),
            refill_alerts=manager.refills.alerts_snapshot(),
            interactions=manager.interactions.snapshot(),
        ))
        return

    report = manager.reporter.build_report(manager.list_medications(), days=args.days)
    print(f"\nAdherence {report['start_date']} to {report['end_date']}")
    print(f"  Overall: {report['overall_adherence_rate']}% ({report['total_taken']}/{report['total_scheduled']})")
    print(f"  Trend: {report['trend']}")
    print(f"  {report['assessment']}")
    for name, info in report["by_medication"].items():
        print(f"  {name:<18} {info['adherence_rate']}%")
    print()


def main():
    parser = argparse.ArgumentParser(
        description="Medbox CLI - Track medications, refills and interactions"
    )
    parser.add_argument("--offline", action="store_true", help="Skip RxNav lookups")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("list-meds", help="List all medications")
    subparsers.add_parser("add-med", help="Interactively add a medication")
    take = subparsers.add_parser("take", help="Record a dose as taken")
    take.add_argument("medication", help="Medication name or id")
    skip = subparsers.add_parser("skip", help="Record a skipped dose")
    skip.add_argument("medication", help="Medication name or id")
    subparsers.add_parser("status", help="Today's adherence and streak")
    subparsers.add_parser("refills", help="Refill predictions and alerts")
    subparsers.add_parser("interactions", help="Check for drug interactions")
    report = subparsers.add_parser("report", help="Adherence report")
    report.add_argument("--days", type=int, default=7, help="Report period in days (default 7)")

    args = parser.parse_args()

    commands = {
        "list-meds": cmd_list_meds,
        "add-med": cmd_add_med,
        "take": cmd_take,
        "skip": cmd_skip,
        "status": cmd_status,
        "refills": cmd_refills,
        "interactions": cmd_interactions,
        "report": cmd_report,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

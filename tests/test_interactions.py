"""
Unit tests for drug interaction detection.
Run with: python -m pytest tests/ -v
"""

import asyncio
import os
import sys
import threading

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from drug_info import RELATION_CI_WITH, ClassRelation, DrugClassInfo, DrugLookupError
from interactions import (
    InteractionChecker,
    InteractionSeverity,
    known_pair_interactions,
    lookup_known_severity,
    validate_known_interactions,
)
from models import Medication


def meds(*names):
    return [Medication(name=n) for n in names]


class FakeLookup:
    """Returns canned ci_with relations; names in `failing` raise."""

    def __init__(self, contraindications=None, failing=(), delay=0.0):
        self.contraindications = contraindications or {}
        self.failing = set(failing)
        self.delay = delay
        self.calls = []

    async def lookup_classes(self, drug_name):
        self.calls.append(drug_name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if drug_name in self.failing:
            raise DrugLookupError(f"lookup failed for {drug_name}")
        relations = tuple(
            ClassRelation(concept, RELATION_CI_WITH)
            for concept in self.contraindications.get(drug_name, [])
        )
        return DrugClassInfo(drug_name, relations)


class GatedLookup(FakeLookup):
    """Blocks every lookup until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def lookup_classes(self, drug_name):
        await self.gate.wait()
        return await super().lookup_classes(drug_name)


class TestKnownPairs:
    """Tests for the local interaction table."""

    def test_both_orderings(self):
        assert lookup_known_severity("Warfarin", "Aspirin") == InteractionSeverity.MAJOR
        assert lookup_known_severity("ASPIRIN", "warfarin") == InteractionSeverity.MAJOR

    def test_unknown_pair(self):
        assert lookup_known_severity("Warfarin", "Vitamin C") is None

    def test_known_pair_interactions(self):
        found = known_pair_interactions(["Warfarin", "Aspirin", "Ibuprofen"])
        severities = {frozenset((i.drug1, i.drug2)): i.severity for i in found}
        assert severities == {
            frozenset(("Warfarin", "Aspirin")): InteractionSeverity.MAJOR,
            frozenset(("Warfarin", "Ibuprofen")): InteractionSeverity.MODERATE,
        }
        assert "Increased bleeding risk." in found[0].description

    def test_conflicting_table_rejected(self):
        table = {
            "warfarin": {"aspirin": InteractionSeverity.MAJOR},
            "aspirin": {"warfarin": InteractionSeverity.MINOR},
        }
        with pytest.raises(ValueError, match="Conflicting"):
            validate_known_interactions(table)

    def test_duplicate_pair_rejected(self):
        table = {
            "warfarin": {"aspirin": InteractionSeverity.MAJOR},
            "Aspirin": {"Warfarin": InteractionSeverity.MAJOR},
        }
        with pytest.raises(ValueError):
            validate_known_interactions(table)

    def test_self_interaction_rejected(self):
        with pytest.raises(ValueError):
            validate_known_interactions({"warfarin": {"Warfarin": InteractionSeverity.MINOR}})

    @pytest.mark.parametrize(
        "text,severity",
        [
            ("high", InteractionSeverity.MAJOR),
            ("Severe", InteractionSeverity.MAJOR),
            ("low", InteractionSeverity.MINOR),
            ("moderate", InteractionSeverity.MODERATE),
            ("unknown", InteractionSeverity.MODERATE),
            (None, InteractionSeverity.MODERATE),
        ],
    )
    def test_parse_severity(self, text, severity):
        assert InteractionSeverity.parse(text) == severity


class TestInteractionChecker:
    """Tests for checks, deduplication and supersession."""

    def test_warfarin_aspirin_single_major_entry(self):
        lookup = FakeLookup({"Warfarin": ["Aspirin"]})
        checker = InteractionChecker(lookup=lookup)
        for _ in range(2):
            result = asyncio.run(checker.run_check(["Warfarin", "Aspirin"]))
            assert len(result) == 1
            assert result[0].severity == InteractionSeverity.MAJOR
            assert result[0].source == "known"
        assert len(checker.active_interactions) == 1
        assert checker.has_active_interactions is True
        assert checker.is_checking is False

    def test_external_contraindication_added(self):
        lookup = FakeLookup({"Metformin": ["Iodinated Contrast Media"]})
        checker = InteractionChecker(lookup=lookup)
        result = asyncio.run(checker.run_check(["Metformin"]))
        assert [(i.drug1, i.drug2, i.source) for i in result] == [
            ("Metformin", "Iodinated Contrast Media", "rxclass")
        ]
        assert result[0].severity == InteractionSeverity.MAJOR

    def test_lookup_failure_keeps_known_pairs(self):
        lookup = FakeLookup(failing={"Warfarin", "Aspirin"})
        checker = InteractionChecker(lookup=lookup)
        result = asyncio.run(checker.run_check(["Warfarin", "Aspirin"]))
        assert len(result) == 1
        assert checker.external_lookup_failed is True

    def test_lookup_timeout_keeps_known_pairs(self):
        lookup = FakeLookup({"Warfarin": ["Heparin"]}, delay=1.0)
        checker = InteractionChecker(lookup=lookup, timeout=0.05)
        result = asyncio.run(checker.run_check(["Warfarin", "Aspirin"]))
        assert [i.source for i in result] == ["known"]
        assert checker.external_lookup_failed is True

    def test_empty_list_clears_state(self):
        checker = InteractionChecker()
        asyncio.run(checker.run_check(["Warfarin", "Aspirin"]))
        assert checker.has_active_interactions is True
        assert asyncio.run(checker.run_check([])) == []
        assert checker.active_interactions == []
        assert checker.has_active_interactions is False

    def test_superseded_check_not_published(self):
        async def scenario():
            lookup = GatedLookup()
            checker = InteractionChecker(lookup=lookup)
            first = asyncio.create_task(checker.run_check(["Warfarin", "Aspirin"]))
            await asyncio.sleep(0)
            second = asyncio.create_task(checker.run_check(["Metformin"]))
            await asyncio.sleep(0)
            lookup.gate.set()
            return checker, await asyncio.gather(first, second)

        checker, (first, second) = asyncio.run(scenario())
        assert first is None
        assert second == []
        assert checker.active_interactions == []

    def test_check_interactions_cancels_previous(self):
        async def scenario():
            lookup = GatedLookup()
            checker = InteractionChecker(lookup=lookup)
            first = checker.check_interactions(meds("Warfarin", "Aspirin"))
            second = checker.check_interactions(meds("Lisinopril", "Ibuprofen"))
            lookup.gate.set()
            result = await second
            await asyncio.sleep(0)
            return checker, first, result

        checker, first, result = asyncio.run(scenario())
        assert first.cancelled()
        assert len(result) == 1
        assert checker.interactions_for("Lisinopril")[0].severity == InteractionSeverity.MODERATE
        assert checker.interactions_for("Warfarin") == []

    def test_check_without_event_loop_runs_to_completion(self):
        checker = InteractionChecker()
        assert checker.check_interactions(meds("Digoxin", "Furosemide")) is None
        assert checker.highest_severity_for("digoxin") == InteractionSeverity.MAJOR

    def test_check_on_background_loop(self):
        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=loop.run_forever, daemon=True)
        thread.start()
        try:
            checker = InteractionChecker(lookup=FakeLookup(), loop=loop)
            future = checker.check_interactions(meds("Metoprolol", "Verapamil"))
            result = future.result(timeout=5)
        finally:
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=5)
            loop.close()
        assert len(result) == 1
        assert checker.has_interactions("Verapamil")

    def test_on_publish_receives_results(self):
        published = []
        checker = InteractionChecker(on_publish=published.append)
        asyncio.run(checker.run_check(["Warfarin", "Aspirin", "Ibuprofen"]))
        assert len(published) == 1
        assert len(published[0]) == 2

    def test_highest_severity(self):
        checker = InteractionChecker()
        asyncio.run(checker.run_check(["Warfarin", "Ibuprofen", "Acetaminophen"]))
        assert checker.highest_severity_for("Warfarin") == InteractionSeverity.MODERATE
        assert checker.highest_severity_for("Acetaminophen") == InteractionSeverity.MINOR
        assert checker.highest_severity_for("Metformin") is None

    def test_duplicate_names_looked_up_once(self):
        lookup = FakeLookup()
        checker = InteractionChecker(lookup=lookup)
        asyncio.run(checker.run_check(["Warfarin", "warfarin"]))
        assert lookup.calls == ["Warfarin"]

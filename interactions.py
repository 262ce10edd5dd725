"""
Interaction Checker — Drug-drug interactions among active medications.

A check runs two passes and publishes one deduplicated list:
1. Known pairs: a curated local table, always available
2. RxClass: "ci_with" relations from the classification lookup, per
   medication, each with its own timeout; failures only drop that
   medication's contribution

Checks supersede each other. Every check takes a generation number and
only the newest generation may publish.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import Config
from drug_info import RELATION_CI_WITH, DrugLookupError

logger = logging.getLogger(__name__)


class InteractionSeverity(Enum):
    MINOR = "Minor"
    MODERATE = "Moderate"
    MAJOR = "Major"

    @property
    def rank(self) -> int:
        return {"Minor": 1, "Moderate": 2, "Major": 3}[self.value]

    @classmethod
    def parse(cls, text: str) -> "InteractionSeverity":
        """Map free-text severities onto the scale. Unknown text is Moderate."""
        value = (text or "").strip().lower()
        if value in ("minor", "low"):
            return cls.MINOR
        if value in ("major", "high", "severe"):
            return cls.MAJOR
        return cls.MODERATE


MINOR = InteractionSeverity.MINOR
MODERATE = InteractionSeverity.MODERATE
MAJOR = InteractionSeverity.MAJOR

# Canonical drug -> interacting partners. Each unordered pair appears once.
KNOWN_INTERACTIONS = {
    "warfarin": {"aspirin": MAJOR, "ibuprofen": MODERATE, "acetaminophen": MINOR},
    "metformin": {"alcohol": MODERATE, "furosemide": MODERATE},
    "lisinopril": {"potassium": MAJOR, "ibuprofen": MODERATE},
    "atorvastatin": {"gemfibrozil": MAJOR, "niacin": MODERATE},
    "digoxin": {"furosemide": MAJOR, "quinidine": MAJOR, "verapamil": MODERATE},
    "amlodipine": {"simvastatin": MODERATE},
    "metoprolol": {"verapamil": MAJOR},
}

INTERACTION_NOTES = {
    frozenset(("warfarin", "aspirin")): "Increased bleeding risk.",
    frozenset(("warfarin", "ibuprofen")): "NSAIDs increase bleeding risk with warfarin.",
    frozenset(("lisinopril", "potassium")): "ACE inhibitors with potassium supplements can cause hyperkalemia.",
    frozenset(("lisinopril", "ibuprofen")): "NSAIDs may reduce ACE inhibitor effectiveness.",
    frozenset(("metformin", "alcohol")): "Alcohol increases the risk of lactic acidosis with metformin.",
    frozenset(("amlodipine", "simvastatin")): "Amlodipine may increase simvastatin levels.",
    frozenset(("metoprolol", "verapamil")): "Risk of severe bradycardia.",
}


def validate_known_interactions(table: dict) -> dict:
    """Index the table by unordered pair.

    Raises ValueError if a pair is listed more than once (in either order)
    or a drug is listed against itself.
    """
    index = {}
    for drug, partners in table.items():
        for partner, severity in partners.items():
            a, b = drug.lower(), partner.lower()
            if a == b:
                raise ValueError(f"Known interaction lists {drug!r} against itself")
            pair = frozenset((a, b))
            if pair in index:
                existing = index[pair]
                if existing != severity:
                    raise ValueError(
                        f"Conflicting severities for {a}/{b}: {existing.value} vs {severity.value}"
                    )
                raise ValueError(f"Duplicate known interaction for {a}/{b}")
            index[pair] = severity
    return index


validate_known_interactions(KNOWN_INTERACTIONS)


def lookup_known_severity(drug_a: str, drug_b: str) -> Optional[InteractionSeverity]:
    """Severity from the known-pairs table, checked in both orderings."""
    a, b = drug_a.strip().lower(), drug_b.strip().lower()
    severity = KNOWN_INTERACTIONS.get(a, {}).get(b)
    if severity is None:
        severity = KNOWN_INTERACTIONS.get(b, {}).get(a)
    return severity


@dataclass(frozen=True)
class DrugInteraction:
    drug1: str
    drug2: str
    severity: InteractionSeverity
    description: str
    source: str = "known"

    @property
    def pair_key(self) -> frozenset:
        return frozenset((self.drug1.strip().lower(), self.drug2.strip().lower()))

    def involves(self, name: str) -> bool:
        name = name.strip().lower()
        return self.drug1.strip().lower() == name or self.drug2.strip().lower() == name

    def other_drug(self, name: str) -> str:
        return self.drug2 if self.drug1.strip().lower() == name.strip().lower() else self.drug1

    def to_dict(self) -> dict:
        return {
            "drug1": self.drug1,
            "drug2": self.drug2,
            "severity": self.severity.value,
            "description": self.description,
            "source": self.source,
        }


def deduplicate(interactions) -> list:
    """Drop repeats of the same unordered pair, keeping the first seen."""
    seen = set()
    unique = []
    for interaction in interactions:
        key = interaction.pair_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(interaction)
    return unique


def known_pair_interactions(names) -> list:
    """Interactions from the local table for every unordered pair of names."""
    found = []
    for i in range(len(names)):
        for j in range(i + 1, len(names)):
            drug1, drug2 = names[i], names[j]
            if drug1.strip().lower() == drug2.strip().lower():
                continue
            severity = lookup_known_severity(drug1, drug2)
            if severity is None:
                continue
            description = f"Known interaction between {drug1} and {drug2}."
            note = INTERACTION_NOTES.get(frozenset((drug1.strip().lower(), drug2.strip().lower())))
            if note:
                description += f" {note}"
            found.append(DrugInteraction(
                drug1=drug1,
                drug2=drug2,
                severity=severity,
                description=description + " Consult your healthcare provider.",
            ))
    return found


class InteractionChecker:
    """Publishes the current interaction list for the active medications."""

    def __init__(self, lookup=None, loop=None, timeout: Optional[float] = None, on_publish=None):
        self.lookup = lookup
        self.loop = loop
        self.timeout = timeout or Config.LOOKUP_TIMEOUT_SECONDS
        self.on_publish = on_publish

        self._lock = threading.Lock()
        self._generation = 0
        self._pending = None
        self.is_checking = False
        self.active_interactions: list[DrugInteraction] = []
        self.has_active_interactions = False
        self.external_lookup_failed = False

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    def check_interactions(self, medications):
        """Start a check for `medications`, superseding any check in flight.

        The check runs on `self.loop` when one was given, otherwise on the
        running loop. Returns the future/task. Without any event loop the
        check runs to completion before returning and None is returned.
        """
        names = [m.name for m in medications]
        with self._lock:
            self._generation += 1
            generation = self._generation
            previous = self._pending
            self._pending = None
        if previous is not None and not previous.done():
            previous.cancel()

        coro = self.run_check(names, generation)
        if self.loop is not None:
            pending = asyncio.run_coroutine_threadsafe(coro, self.loop)
        else:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is None:
                asyncio.run(coro)
                return None
            pending = running.create_task(coro)

        with self._lock:
            if self._generation == generation:
                self._pending = pending
        return pending

    async def run_check(self, names, generation: Optional[int] = None):
        """Run both passes and publish if `generation` is still current.

        Returns the deduplicated list, or None when a newer check took over.
        """
        if generation is None:
            with self._lock:
                self._generation += 1
                generation = self._generation

        if not names:
            return [] if self._publish([], generation, external_failed=False) else None

        with self._lock:
            if generation == self._generation:
                self.is_checking = True

        found = known_pair_interactions(names)
        external, failed = await self._external_pass(names)
        found.extend(external)

        unique = deduplicate(found)
        if not self._publish(unique, generation, external_failed=failed):
            logger.debug(f"Interaction check {generation} superseded; results dropped")
            return None
        return unique

    async def _external_pass(self, names):
        if self.lookup is None:
            return [], False

        distinct = []
        for name in names:
            if name.strip().lower() not in [d.strip().lower() for d in distinct]:
                distinct.append(name)

        results = await asyncio.gather(*(self._lookup_one(name) for name in distinct))
        interactions = [i for found, _ in results for i in found]
        failed = any(failed for _, failed in results)
        return interactions, failed

    async def _lookup_one(self, name: str):
        try:
            info = await asyncio.wait_for(self.lookup.lookup_classes(name), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Interaction lookup for {name} timed out after {self.timeout}s")
            return [], True
        except DrugLookupError as e:
            logger.warning(f"Interaction lookup for {name} failed: {e}")
            return [], True
        except Exception as e:
            logger.error(f"Unexpected error looking up {name}: {e}")
            return [], True

        found = []
        for concept in info.concepts(RELATION_CI_WITH):
            if concept.strip().lower() == name.strip().lower():
                continue
            found.append(DrugInteraction(
                drug1=name,
                drug2=concept,
                severity=InteractionSeverity.MAJOR,
                description=f"{name} is contraindicated with {concept}. Consult your healthcare provider.",
                source="rxclass",
            ))
        return found, False

    def _publish(self, interactions, generation: int, external_failed: bool) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self.active_interactions = list(interactions)
            self.has_active_interactions = bool(interactions)
            self.external_lookup_failed = external_failed
            self.is_checking = False
            self._pending = None
        logger.info(f"Interaction check complete: {len(interactions)} interactions")
        if self.on_publish is not None:
            self.on_publish(list(interactions))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> list:
        with self._lock:
            return list(self.active_interactions)

    def interactions_for(self, medication_name: str) -> list:
        return [i for i in self.snapshot() if i.involves(medication_name)]

    def has_interactions(self, medication_name: str) -> bool:
        return bool(self.interactions_for(medication_name))

    @staticmethod
    def severity_of(interaction) -> InteractionSeverity:
        severity = interaction.severity
        if isinstance(severity, InteractionSeverity):
            return severity
        return InteractionSeverity.parse(severity)

    def highest_severity_for(self, medication_name: str) -> Optional[InteractionSeverity]:
        severities = [i.severity for i in self.interactions_for(medication_name)]
        if not severities:
            return None
        return max(severities, key=lambda s: s.rank)

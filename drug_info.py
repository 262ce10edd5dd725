"""
Drug Info — RxNav/RxClass lookups for drug classes and relations.

The RxClass response is decoded once into DrugClassInfo; the rest of the
code only sees typed relations. Relation types used:
- may_treat: what the drug is used for
- has_pe:    physiologic effects (side effects)
- ci_with:   contraindicated with (interaction source)

HTTP calls go through `requests` on a worker thread so the event loop is
never blocked.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

from config import Config

logger = logging.getLogger(__name__)

RELATION_MAY_TREAT = "may_treat"
RELATION_HAS_PE = "has_pe"
RELATION_CI_WITH = "ci_with"

COMMON_SIDE_EFFECTS = [
    "Nausea",
    "Diarrhea",
    "Headache",
    "Dizziness",
    "Contact your healthcare provider if you experience any severe side effects",
]

GENERAL_WARNINGS = [
    "Important Safety Information:",
    "• Follow prescribed dosage carefully",
    "• Complete full course of medication unless directed otherwise",
    "• Store as directed",
    "• Keep out of reach of children",
    "• Contact your healthcare provider if you experience severe side effects",
]


class DrugLookupError(Exception):
    """The classification lookup failed."""


class DrugNotFoundError(DrugLookupError):
    """RxNav has no concept for the drug name."""


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassRelation:
    concept_name: str
    relation: str
    class_type: str = ""


@dataclass(frozen=True)
class DrugClassInfo:
    drug_name: str
    relations: tuple = ()

    def concepts(self, relation: str) -> list:
        """Distinct concept names for one relation type, in response order."""
        seen = []
        for r in self.relations:
            if r.relation == relation and r.concept_name not in seen:
                seen.append(r.concept_name)
        return seen

    @classmethod
    def from_response(cls, drug_name: str, payload) -> "DrugClassInfo":
        """
        Decode an RxClass `class/byRxcui` payload.

        Expected shape:
            {"rxclassDrugInfoList": {"rxclassDrugInfo": [
                {"rxclassMinConceptItem": {"className": ..., "classType": ...},
                 "rela": "may_treat"}, ...]}}
        Entries missing a class name or relation are skipped.
        """
        relations = []
        info_list = (payload or {}).get("rxclassDrugInfoList") or {}
        for item in info_list.get("rxclassDrugInfo") or []:
            if not isinstance(item, dict):
                continue
            concept = item.get("rxclassMinConceptItem") or {}
            name = concept.get("className")
            rela = item.get("rela")
            if not name or not rela:
                continue
            relations.append(ClassRelation(
                concept_name=name,
                relation=rela,
                class_type=concept.get("classType", ""),
            ))
        return cls(drug_name=drug_name, relations=tuple(relations))


@dataclass
class DrugInformation:
    name: str
    uses: list = field(default_factory=lambda: ["Consult healthcare provider for specific uses"])
    side_effects: list = field(default_factory=lambda: ["Consult healthcare provider for side effects"])
    warnings: str = "Always follow your prescription and consult your healthcare provider."
    contraindications: list = field(default_factory=list)
    is_placeholder: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "uses": self.uses,
            "side_effects": self.side_effects,
            "warnings": self.warnings,
            "contraindications": self.contraindications,
            "is_placeholder": self.is_placeholder,
        }


# ---------------------------------------------------------------------------
# Lookup client
# ---------------------------------------------------------------------------

class RxClassLookup:
    """Drug classification lookup backed by the public RxNav REST API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or Config.RXNAV_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.LOOKUP_TIMEOUT_SECONDS

    async def lookup_classes(self, drug_name: str) -> DrugClassInfo:
        return await asyncio.to_thread(self._lookup_classes_sync, drug_name)

    def _lookup_classes_sync(self, drug_name: str) -> DrugClassInfo:
        rxcui = self.get_rxcui(drug_name)
        payload = self._get_json("/rxclass/class/byRxcui.json", {"rxcui": rxcui})
        info = DrugClassInfo.from_response(drug_name, payload)
        logger.debug(f"RxClass returned {len(info.relations)} relations for {drug_name}")
        return info

    def get_rxcui(self, drug_name: str) -> str:
        payload = self._get_json("/rxcui.json", {"name": drug_name})
        ids = ((payload or {}).get("idGroup") or {}).get("rxnormId") or []
        if not ids:
            raise DrugNotFoundError(f"No RxCUI found for {drug_name!r}")
        return ids[0]

    def _get_json(self, path: str, params: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            r = requests.get(url, params=params, timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except requests.exceptions.Timeout as e:
            raise DrugLookupError(f"RxNav request timed out: {url}") from e
        except requests.exceptions.RequestException as e:
            raise DrugLookupError(f"RxNav request failed: {e}") from e
        except ValueError as e:
            raise DrugLookupError(f"RxNav returned invalid JSON for {url}") from e


async def get_drug_information(lookup, drug_name: str) -> DrugInformation:
    """Uses, side effects and contraindications for a drug.

    Any lookup failure gives generic placeholder content instead.
    """
    try:
        info = await lookup.lookup_classes(drug_name)
    except DrugLookupError as e:
        logger.warning(f"Drug information unavailable for {drug_name}: {e}")
        return DrugInformation(
            name=drug_name,
            uses=["Please consult your healthcare provider for specific use information"],
            side_effects=["Contact your healthcare provider for side effect information"],
            is_placeholder=True,
        )

    contraindications = info.concepts(RELATION_CI_WITH)
    side_effects = list(COMMON_SIDE_EFFECTS)
    side_effects.extend(f"May cause: {c}" for c in info.concepts(RELATION_HAS_PE))

    warnings = list(GENERAL_WARNINGS)
    if contraindications:
        warnings.append("\nContraindications:")
        warnings.extend(f"• {c}" for c in contraindications)

    return DrugInformation(
        name=drug_name,
        uses=info.concepts(RELATION_MAY_TREAT),
        side_effects=side_effects,
        warnings="\n".join(warnings),
        contraindications=contraindications,
    )

"""
Formulary, Drug Label and Evidence Store adapters.

Pure lookup layer with no decision logic. The surrounding application is
expected to materialise its storage into these in-memory catalogs before the
engine runs; a new formulary version is a new ReferenceData instance.

Lookup misses return None or an empty list. They are never errors.
"""

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union
import json
import logging
import re

from models import ClinicalFinding, DrugLabelFact, FindingType, FormularyEntry

logger = logging.getLogger(__name__)


# Brand name -> generic name (lowercase)
BRAND_TO_GENERIC = {
    "dupixent": "dupilumab",
    "humira": "adalimumab",
    "stelara": "ustekinumab",
    "skyrizi": "risankizumab",
    "tremfya": "guselkumab",
    "cosentyx": "secukinumab",
    "taltz": "ixekizumab",
    "otezla": "apremilast",
    "rinvoq": "upadacitinib",
    "cibinqo": "abrocitinib",
    "adbry": "tralokinumab",
    "ilumya": "tildrakizumab",
    "siliq": "brodalumab",
    "remicade": "infliximab",
    "enbrel": "etanercept",
    "simponi": "golimumab",
    "cimzia": "certolizumab",
    "actemra": "tocilizumab",
    "orencia": "abatacept",
    "sotyktu": "deucravacitinib",
}


def normalize_drug_name(drug_name: Optional[str]) -> str:
    """Lowercase generic name for a brand or generic input"""
    if not drug_name:
        return ""
    key = drug_name.strip().lower()
    return BRAND_TO_GENERIC.get(key, key)


_BIOSIMILAR_SUFFIX = re.compile(r"^(.+)-[a-z]{4}$")


def _base_generic(name: str) -> str:
    # adalimumab-atto -> adalimumab
    name = name.strip().lower()
    match = _BIOSIMILAR_SUFFIX.match(name)
    return match.group(1) if match else name


def same_molecule(a: Optional[str], b: Optional[str]) -> bool:
    """Brand, generic and biosimilar-suffixed names of one molecule compare equal"""
    if not a or not b:
        return False
    return _base_generic(normalize_drug_name(a)) == _base_generic(normalize_drug_name(b))


@dataclass
class ReferenceData:
    """Read-only formulary, label and evidence catalogs for one dataset version"""

    formulary: Tuple[FormularyEntry, ...] = ()
    drug_labels: Tuple[DrugLabelFact, ...] = ()
    clinical_findings: Tuple[ClinicalFinding, ...] = ()
    _formulary_index: Dict[Tuple[str, str], FormularyEntry] = field(default_factory=dict, init=False, repr=False)
    _label_index: Dict[str, DrugLabelFact] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self.formulary = tuple(self.formulary)
        self.drug_labels = tuple(self.drug_labels)
        self.clinical_findings = tuple(self.clinical_findings)

        for entry in self.formulary:
            self._formulary_index[(entry.plan_id, entry.drug_name.lower())] = entry

        for label in self.drug_labels:
            for key in (label.brand, label.generic):
                if key:
                    self._label_index.setdefault(key.lower(), label)

    # ── Formulary ──

    def get_formulary_entry(self, plan_id: str, drug_name: Optional[str]) -> Optional[FormularyEntry]:
        if not drug_name:
            return None
        return self._formulary_index.get((plan_id, drug_name.strip().lower()))

    def resolve_formulary_entry(self, plan_id: str, drug_name: Optional[str]) -> Optional[FormularyEntry]:
        """
        Resolve a prescriber-entered drug name against the plan formulary.

        Order: exact drug name, then generic name, then generic base
        (so "adalimumab" finds "Humira" and "adalimumab-atto" finds its entry).
        Reference products win over biosimilars at each step.
        """
        if not drug_name:
            return None

        entry = self.get_formulary_entry(plan_id, drug_name)
        if entry:
            return entry

        generic = normalize_drug_name(drug_name)
        plan_entries = [e for e in self.formulary if e.plan_id == plan_id]
        plan_entries.sort(key=lambda e: (e.biosimilar_of is not None, e.tier, e.drug_name.lower()))

        for e in plan_entries:
            if e.generic_name.lower() == generic:
                return e

        base = _base_generic(generic)
        for e in plan_entries:
            if _base_generic(e.generic_name) == base:
                return e
        return None

    def list_formulary_by_class(self, plan_id: str, drug_class: Optional[str], max_tier: int) -> List[FormularyEntry]:
        """Entries of one drug class at or below max_tier, ordered tier, cost, name"""
        if not drug_class:
            return []
        wanted = drug_class.lower()
        entries = [
            e for e in self.formulary
            if e.plan_id == plan_id and e.drug_class.lower() == wanted and e.tier <= max_tier
        ]
        entries.sort(key=lambda e: (
            e.tier,
            e.annual_cost_wac if e.annual_cost_wac is not None else float("inf"),
            e.drug_name.lower(),
        ))
        return entries

    # ── Drug labels ──

    def get_drug_label_facts(self, drug_name: Optional[str]) -> Optional[DrugLabelFact]:
        if not drug_name:
            return None
        key = drug_name.strip().lower()
        label = self._label_index.get(key)
        if label is None:
            label = self._label_index.get(normalize_drug_name(key))
        if label is None:
            label = self._label_index.get(_base_generic(key))
        return label

    # ── Evidence ──

    def find_clinical_findings(
        self,
        drug: Optional[str] = None,
        indication: Optional[str] = None,
        finding_types: Sequence[FindingType] = (),
    ) -> List[ClinicalFinding]:
        """
        Reviewed findings matching every supplied filter.

        `drug` matches the finding's drug or drugClass (substring, either
        direction of brand/generic); `indication` is a substring match.
        """
        wanted_types = set(finding_types)
        drug_terms = _drug_terms(drug)
        indication_term = indication.lower().replace("_", " ") if indication else None

        results = []
        for f in self.clinical_findings:
            if not f.reviewed:
                continue
            if wanted_types and f.finding_type not in wanted_types:
                continue
            if drug_terms:
                haystacks = [(f.drug or "").lower(), (f.drug_class or "").lower()]
                if not any(term in h for term in drug_terms for h in haystacks if h):
                    continue
            if indication_term:
                if indication_term not in (f.indication or "").lower().replace("_", " "):
                    continue
            results.append(f)
        return results

    def search_findings_text(self, query: str, limit: int = 5) -> List[ClinicalFinding]:
        """Keyword search over reviewed finding text, best keyword overlap first"""
        words = {w for w in query.lower().split() if len(w) > 2}
        if not words:
            return []

        scored = []
        for f in self.clinical_findings:
            if not f.reviewed:
                continue
            text = " ".join(filter(None, [f.finding, f.paper_title, f.drug, f.drug_class, f.indication])).lower()
            hits = sum(1 for w in words if w in text)
            if hits:
                scored.append((-hits, f.citation, f))
        scored.sort(key=lambda t: (t[0], t[1]))
        return [f for _, _, f in scored[:limit]]


def _drug_terms(drug: Optional[str]) -> List[str]:
    if not drug:
        return []
    raw = drug.strip().lower()
    terms = {raw, normalize_drug_name(raw), _base_generic(normalize_drug_name(raw))}
    return sorted(t for t in terms if t)


def format_findings_for_prompt(findings: Iterable[ClinicalFinding]) -> str:
    blocks = []
    for f in findings:
        title = f.paper_title or f.citation
        blocks.append(f"📄 {title}\nCitation: {f.citation}\nFinding: {f.finding}")
    return "\n\n".join(blocks)


def label_needs_refresh(label: DrugLabelFact, staleness_days: int = 90, today: Optional[date] = None) -> bool:
    age = label.age_days(today)
    return age is None or age > staleness_days


# ==================== JSON LOADER ====================

def load_reference_data(path: Union[str, Path]) -> ReferenceData:
    """Materialise a ReferenceData catalog from the camelCase JSON export"""
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)

    formulary = [_formulary_from_json(row) for row in raw.get("formulary", [])]
    labels = [_label_from_json(row) for row in raw.get("drugLabels", [])]
    findings = [_finding_from_json(row) for row in raw.get("clinicalFindings", [])]

    logger.info(
        f"📚 Loaded reference data: {len(formulary)} formulary entries, "
        f"{len(labels)} labels, {len(findings)} findings"
    )
    return ReferenceData(formulary=tuple(formulary), drug_labels=tuple(labels), clinical_findings=tuple(findings))


def _formulary_from_json(row: dict) -> FormularyEntry:
    return FormularyEntry(
        plan_id=row["planId"],
        drug_name=row["drugName"],
        generic_name=row["genericName"],
        drug_class=row["drugClass"],
        tier=int(row["tier"]),
        requires_pa=bool(row.get("requiresPA", False)),
        step_therapy_required=bool(row.get("stepTherapyRequired", False)),
        annual_cost_wac=row.get("annualCostWAC"),
        member_copay_by_tier={int(k): float(v) for k, v in (row.get("memberCopayByTier") or {}).items()},
        biosimilar_of=row.get("biosimilarOf"),
        approved_indications=tuple(row.get("approvedIndications") or ()),
    )


def _label_from_json(row: dict) -> DrugLabelFact:
    updated = row.get("lastUpdated")
    return DrugLabelFact(
        brand=row["brand"],
        generic=row["generic"],
        fda_indications=tuple(row.get("fdaIndications") or ()),
        contraindications=tuple(row.get("contraindications") or ()),
        black_box_warnings=tuple(row.get("blackBoxWarnings") or ()),
        warnings=tuple(row.get("warnings") or ()),
        last_updated=date.fromisoformat(updated) if updated else None,
    )


def _finding_from_json(row: dict) -> ClinicalFinding:
    return ClinicalFinding(
        finding=row["finding"],
        citation=row["citation"],
        finding_type=FindingType(row.get("findingType", "OTHER")),
        drug=row.get("drug"),
        drug_class=row.get("drugClass"),
        indication=row.get("indication"),
        paper_title=row.get("paperTitle"),
        reviewed=bool(row.get("reviewed", False)),
    )

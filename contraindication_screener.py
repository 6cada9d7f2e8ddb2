"""
Contraindication Screener.

Flags, never drops. Each candidate is checked against:

    (a) drug-class safety rules and FDA label text (contraindications and
        black-box warnings) matched to the patient's contraindication set
    (b) psoriatic arthritis with a drug class lacking a PsA indication
    (c) the patient's failed-therapy list

Any hit sets contraindicated=True with a human-readable reason. ABSOLUTE
reasons are listed before RELATIVE ones. The Ranker decides what surfaces.
"""

from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional
import logging
import re

from models import AssessmentInput, Candidate, ContraindicationType as CI, DrugLabelFact, Severity
from reference_data import ReferenceData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreeningReason:
    type: str
    severity: Severity
    reason: str


# ==================== DRUG-CLASS RULES ====================

TNF_RULES = {
    CI.HEART_FAILURE: (Severity.ABSOLUTE, "TNF inhibitors can worsen heart failure and increase mortality"),
    CI.MULTIPLE_SCLEROSIS: (Severity.ABSOLUTE, "TNF inhibitors can exacerbate demyelinating diseases"),
    CI.DEMYELINATING_DISEASE: (Severity.ABSOLUTE, "TNF inhibitors can exacerbate demyelinating diseases"),
    CI.LYMPHOMA: (Severity.RELATIVE, "History of lymphoma - TNF inhibitors may increase recurrence risk. Consider risk/benefit with oncology."),
    CI.MALIGNANCY: (Severity.RELATIVE, "Active or recent malignancy - TNF inhibitors may affect tumor surveillance. Discuss with oncology."),
    CI.HEPATITIS_B: (Severity.RELATIVE, "Hepatitis B can reactivate with TNF inhibitors. Requires antiviral prophylaxis and monitoring."),
    CI.LATENT_TUBERCULOSIS: (Severity.RELATIVE, "Latent TB requires prophylactic treatment before starting TNF inhibitor."),
    CI.ACTIVE_TUBERCULOSIS: (Severity.ABSOLUTE, "Active TB must be treated before starting any biologic, especially TNF inhibitors."),
}

JAK_RULES = {
    CI.THROMBOSIS: (Severity.ABSOLUTE, "JAK inhibitors significantly increase VTE risk. Contraindicated in patients with thrombosis history."),
    CI.VENOUS_THROMBOEMBOLISM: (Severity.ABSOLUTE, "JAK inhibitors significantly increase VTE risk. Contraindicated in patients with thrombosis history."),
    CI.CARDIOVASCULAR_DISEASE: (Severity.RELATIVE, "JAK inhibitors increase MACE risk. Consider in patients >50 with CV risk factors. Monitor closely."),
    CI.MALIGNANCY: (Severity.RELATIVE, "JAK inhibitors may increase cancer risk. Discuss risk/benefit in patients with cancer history."),
    CI.CYTOPENIAS: (Severity.RELATIVE, "JAK inhibitors can worsen cytopenias. Requires baseline labs and monitoring."),
}

IL17_RULES = {
    CI.INFLAMMATORY_BOWEL_DISEASE: (Severity.RELATIVE, "IL-17 inhibitors can worsen or trigger IBD. Use with caution and GI consultation."),
    CI.DIVERTICULITIS: (Severity.RELATIVE, "IL-17 inhibitors may increase intestinal perforation risk. Monitor for GI symptoms."),
}

ALL_BIOLOGIC_RULES = {
    CI.ACTIVE_INFECTION: (Severity.ABSOLUTE, "Active infection must be treated before starting any biologic therapy."),
    CI.OPPORTUNISTIC_INFECTION: (Severity.ABSOLUTE, "History of opportunistic infection requires ID consultation before biologics."),
    CI.MALIGNANCY: (Severity.RELATIVE, "Active or recent malignancy - biologics may affect tumor surveillance. Requires oncology clearance."),
    CI.IMMUNOCOMPROMISED: (Severity.RELATIVE, "Immunocompromised state increases infection risk with biologics. Monitor closely."),
    CI.PREGNANCY: (Severity.RELATIVE, "Pregnancy requires careful risk/benefit assessment. Some biologics are safer than others. Consult maternal-fetal medicine."),
    CI.LIVE_VACCINE_RECENT: (Severity.RELATIVE, "Wait 4+ weeks after live vaccine before starting biologics. No live vaccines while on therapy."),
    CI.SURGERY_PLANNED: (Severity.RELATIVE, "Hold biologics peri-operatively to reduce infection risk. Timing depends on drug half-life."),
}

# Label-text keywords per contraindication type (lowercase substrings)
LABEL_KEYWORDS = {
    CI.HEART_FAILURE: ("heart failure",),
    CI.MULTIPLE_SCLEROSIS: ("multiple sclerosis", "demyelinating"),
    CI.DEMYELINATING_DISEASE: ("demyelinating",),
    CI.LYMPHOMA: ("lymphoma",),
    CI.MALIGNANCY: ("malignan", "cancer"),
    CI.HEPATITIS_B: ("hepatitis b", "hbv"),
    CI.LATENT_TUBERCULOSIS: ("tuberculosis", "latent tb"),
    CI.ACTIVE_TUBERCULOSIS: ("tuberculosis", "active tb"),
    CI.THROMBOSIS: ("thrombosis", "thromboembolism"),
    CI.VENOUS_THROMBOEMBOLISM: ("thrombosis", "thromboembolism"),
    CI.CARDIOVASCULAR_DISEASE: ("cardiovascular", "mace"),
    CI.CYTOPENIAS: ("cytopenia", "neutropenia", "lymphopenia", "anemia"),
    CI.INFLAMMATORY_BOWEL_DISEASE: ("inflammatory bowel", "crohn", "colitis"),
    CI.DIVERTICULITIS: ("diverticulitis", "perforation"),
    CI.ACTIVE_INFECTION: ("active infection", "serious infection"),
    CI.OPPORTUNISTIC_INFECTION: ("opportunistic",),
    CI.IMMUNOCOMPROMISED: ("immunocompromised", "immunosuppress"),
    CI.PREGNANCY: ("pregnan",),
    CI.LIVE_VACCINE_RECENT: ("live vaccine",),
    CI.SURGERY_PLANNED: ("surgery", "surgical"),
}

# Normalised class prefixes (alphanumerics only, uppercase)
PSA_INDICATED_CLASSES = ("TNF", "IL17", "IL23", "IL1223", "JAK", "PDE4")
PSA_NOT_INDICATED_CLASSES = ("IL4", "IL13", "TYK2")


def _normalize_class(drug_class: Optional[str]) -> str:
    return re.sub(r"[^A-Z0-9]", "", (drug_class or "").upper())


def _class_rule_sets(drug_class: Optional[str]) -> List[Dict]:
    cls = _normalize_class(drug_class)
    rule_sets = []
    if "TNF" in cls:
        rule_sets.append(TNF_RULES)
    if "JAK" in cls or "TYK2" in cls:
        rule_sets.append(JAK_RULES)
    if "IL17" in cls:
        rule_sets.append(IL17_RULES)
    rule_sets.append(ALL_BIOLOGIC_RULES)
    return rule_sets


class ContraindicationScreener:

    @staticmethod
    def class_reasons(drug_class: Optional[str], contraindications: FrozenSet[CI]) -> List[ScreeningReason]:
        reasons = []
        seen_types = set()
        for ci in sorted(contraindications, key=lambda c: c.value):
            for rules in _class_rule_sets(drug_class):
                # Class-specific text wins over the generic all-biologics text
                if ci in rules and ci not in seen_types:
                    severity, text = rules[ci]
                    reasons.append(ScreeningReason(ci.value, severity, text))
                    seen_types.add(ci)
        return reasons

    @staticmethod
    def label_reasons(label: Optional[DrugLabelFact], contraindications: FrozenSet[CI]) -> List[ScreeningReason]:
        if label is None:
            return []
        reasons = []
        for ci in sorted(contraindications, key=lambda c: c.value):
            keywords = LABEL_KEYWORDS.get(ci, ())
            for text in label.black_box_warnings:
                if any(k in text.lower() for k in keywords):
                    reasons.append(ScreeningReason(ci.value, Severity.ABSOLUTE, f"Black box warning: {text}"))
            for text in label.contraindications:
                if any(k in text.lower() for k in keywords):
                    reasons.append(ScreeningReason(ci.value, Severity.ABSOLUTE, f"Label contraindication: {text}"))
        return reasons

    @staticmethod
    def lacks_psa_indication(candidate: Candidate, label: Optional[DrugLabelFact], reference: ReferenceData, plan_id: str) -> bool:
        cls = _normalize_class(candidate.drug_class)
        if cls.startswith(PSA_NOT_INDICATED_CLASSES):
            return True
        if cls.startswith(PSA_INDICATED_CLASSES):
            return False

        # Unknown class: fall back to label and formulary indications
        indications = list(label.fda_indications) if label else []
        entry = reference.get_formulary_entry(plan_id, candidate.drug_name)
        if entry:
            indications.extend(entry.approved_indications)
        if not indications:
            return False
        return not any("psoriatic" in ind.lower() for ind in indications)

    @staticmethod
    def screen_candidate(candidate: Candidate, assessment: AssessmentInput, reference: ReferenceData) -> Candidate:
        label = reference.get_drug_label_facts(candidate.drug_name)
        if label is None and candidate.generic_name:
            label = reference.get_drug_label_facts(candidate.generic_name)

        reasons: List[ScreeningReason] = []

        # (a)
        reasons.extend(ContraindicationScreener.class_reasons(candidate.drug_class, assessment.contraindications))
        reasons.extend(ContraindicationScreener.label_reasons(label, assessment.contraindications))

        # (b)
        if assessment.has_psoriatic_arthritis and ContraindicationScreener.lacks_psa_indication(
            candidate, label, reference, assessment.plan_id
        ):
            class_name = (candidate.drug_class or candidate.drug_name).replace("_", " ")
            reasons.append(ScreeningReason(
                "PSORIATIC_ARTHRITIS", Severity.RELATIVE,
                f"{class_name} is not approved for psoriatic arthritis",
            ))

        # (c)
        if assessment.has_failed(candidate.drug_name, candidate.generic_name):
            reasons.append(ScreeningReason(
                "FAILED_THERAPY", Severity.ABSOLUTE,
                f"{candidate.drug_name} is on the patient's failed therapy list",
            ))

        if not reasons and not candidate.contraindicated:
            return candidate

        # Stable sort: ABSOLUTE first, rule order within each severity
        reasons.sort(key=lambda r: r.severity != Severity.ABSOLUTE)
        texts: List[str] = []
        if candidate.contraindication_reason:
            texts.append(candidate.contraindication_reason)
        for r in reasons:
            if r.reason not in texts:
                texts.append(r.reason)

        logger.info(
            f"   ⚠️  {candidate.drug_name} flagged: "
            f"{', '.join(sorted({r.type for r in reasons})) or 'pre-flagged'}"
        )
        return replace(
            candidate,
            contraindicated=True,
            contraindication_reason="; ".join(texts) or "Flagged as contraindicated",
        )

    @staticmethod
    def screen(candidates: List[Candidate], assessment: AssessmentInput, reference: ReferenceData) -> List[Candidate]:
        logger.info(f"🛡️  Screening {len(candidates)} candidate(s)")
        return [ContraindicationScreener.screen_candidate(c, assessment, reference) for c in candidates]

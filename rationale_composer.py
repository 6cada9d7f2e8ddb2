"""
Rationale Composer.

Attaches a short justification, evidence citations and a monitoring plan to
each candidate. Evidence is limited to reviewed findings and to the two most
specific ones:

    0  finding names the candidate drug (brand, generic or biosimilar)
    1  finding names the candidate's drug class only
    2  finding names only the patient's indication

Findings about other drugs are never cited. With no reviewed evidence the
rationale falls back to a guideline statement and evidenceSources is empty.
"""

from dataclasses import replace
from typing import Dict, List, Optional, Tuple
import logging
import re

from models import AssessmentInput, Candidate, CandidateType, ClinicalFinding, FindingType
from reference_data import ReferenceData, same_molecule

logger = logging.getLogger(__name__)


MAX_CITED_FINDINGS = 2

RELEVANT_FINDING_TYPES = {
    CandidateType.DOSE_REDUCTION: (FindingType.DOSE_REDUCTION, FindingType.SAFETY, FindingType.EFFICACY),
    CandidateType.INTERVAL_EXTENSION: (FindingType.INTERVAL_EXTENSION, FindingType.DOSE_REDUCTION, FindingType.SAFETY),
    CandidateType.BIOSIMILAR_SWITCH: (FindingType.EFFICACY, FindingType.SAFETY, FindingType.COST_EFFECTIVENESS),
    CandidateType.TIER_SWITCH: (FindingType.EFFICACY, FindingType.SAFETY, FindingType.COST_EFFECTIVENESS),
}

SAME_DRUG_MONITORING = (
    "Close monitoring required. Assess DLQI monthly for first 3 months, then quarterly. "
    "Be prepared to resume previous dosing if disease activity increases."
)
SWITCH_MONITORING = "Assess DLQI at 12-16 weeks post-switch."

GUIDELINE_FALLBACK = {
    True: "Recommendation supported by standard dosing guidelines.",
    False: "Recommendation supported by standard prescribing guidelines and formulary preference.",
}


def _class_key(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def _indication_key(value: Optional[str]) -> str:
    return (value or "").lower().replace("_", " ").strip()


def finding_specificity(finding: ClinicalFinding, candidate: Candidate, indication: str) -> Optional[int]:
    """0/1/2 specificity, or None when the finding is not about this candidate"""
    if finding.indication and _indication_key(indication) not in _indication_key(finding.indication):
        return None

    if finding.drug:
        if same_molecule(finding.drug, candidate.drug_name) or same_molecule(finding.drug, candidate.generic_name):
            return 0
        return None

    if finding.drug_class:
        if candidate.drug_class and _class_key(finding.drug_class) == _class_key(candidate.drug_class):
            return 1
        return None

    if finding.indication:
        return 2
    return None


def _humanize(value: Optional[str]) -> str:
    return (value or "").replace("_", " ").lower()


class RationaleComposer:

    @staticmethod
    def select_evidence(candidate: Candidate, assessment: AssessmentInput, reference: ReferenceData) -> List[ClinicalFinding]:
        finding_types = RELEVANT_FINDING_TYPES[candidate.type]
        indication = assessment.diagnosis.value

        pool: List[ClinicalFinding] = []
        for drug in filter(None, (candidate.drug_name, candidate.generic_name, candidate.drug_class)):
            pool.extend(reference.find_clinical_findings(drug=drug, finding_types=finding_types))
        pool.extend(reference.find_clinical_findings(indication=indication, finding_types=finding_types))

        best: Dict[str, Tuple[int, ClinicalFinding]] = {}
        for f in pool:
            if not f.reviewed:
                continue
            level = finding_specificity(f, candidate, indication)
            if level is None:
                continue
            if f.citation not in best or level < best[f.citation][0]:
                best[f.citation] = (level, f)

        ranked = sorted(best.values(), key=lambda t: (t[0], t[1].citation))
        return [f for _, f in ranked[:MAX_CITED_FINDINGS]]

    @staticmethod
    def summary(candidate: Candidate, assessment: AssessmentInput) -> str:
        current = assessment.current_biologic.drug_name if assessment.current_biologic else "current therapy"
        diagnosis = _humanize(assessment.diagnosis.value)

        if candidate.type == CandidateType.INTERVAL_EXTENSION:
            text = (
                f"Patient is stable on {candidate.drug_name}; extending the dosing interval to "
                f"{(candidate.new_frequency or '').lower()} lowers annual drug exposure while maintaining disease control."
            )
        elif candidate.type == CandidateType.DOSE_REDUCTION:
            text = (
                f"Patient is stable on {candidate.drug_name}; reducing the dose to {candidate.new_dose} "
                f"lowers annual drug exposure while maintaining disease control."
            )
        elif candidate.type == CandidateType.BIOSIMILAR_SWITCH:
            text = (
                f"{candidate.drug_name} is a tier {candidate.tier} biosimilar of {current} "
                f"with equivalent efficacy and safety for {diagnosis}."
            )
        else:
            text = (
                f"{candidate.drug_name} is a formulary-preferred tier {candidate.tier} "
                f"{_humanize(candidate.drug_class)} approved for {diagnosis}."
            )

        if candidate.requires_pa and not candidate.is_same_drug:
            text += " Prior authorization required."
        return text

    @staticmethod
    def monitoring_plan(candidate: Candidate, assessment: AssessmentInput) -> str:
        if candidate.is_same_drug:
            return SAME_DRUG_MONITORING
        plan = SWITCH_MONITORING
        if assessment.months_stable is not None and assessment.months_stable < 6:
            plan += (
                f" Patient stable for {assessment.months_stable} months - not yet at 6-month "
                f"threshold for dose reduction consideration."
            )
        return plan

    @staticmethod
    def compose(candidate: Candidate, assessment: AssessmentInput, reference: ReferenceData) -> Candidate:
        findings = RationaleComposer.select_evidence(candidate, assessment, reference)

        rationale = RationaleComposer.summary(candidate, assessment)
        if findings:
            cited = " ".join(f"{f.finding.rstrip('.')} ({f.citation})." for f in findings)
            rationale = f"{rationale} Evidence: {cited}"
        else:
            rationale = f"{rationale} {GUIDELINE_FALLBACK[candidate.is_same_drug]}"

        return replace(
            candidate,
            rationale=rationale,
            evidence_sources=tuple(f.citation for f in findings),
            monitoring_plan=candidate.monitoring_plan or RationaleComposer.monitoring_plan(candidate, assessment),
        )

    @staticmethod
    def compose_all(candidates: List[Candidate], assessment: AssessmentInput, reference: ReferenceData) -> List[Candidate]:
        logger.info(f"📝 Composing rationale for {len(candidates)} candidate(s)")
        return [RationaleComposer.compose(c, assessment, reference) for c in candidates]

"""
Biologic Optimization - LLM Engine

One model call per assessment. The prompt carries the full AssessmentInput,
the patient's quadrant, the relevant formulary slice, label facts, the
standard dosing reference and the reviewed clinical findings. The model must
answer with a bounded JSON object:

    {"recommendations": [{type, drugName, newDose, newFrequency, rationale,
                          evidenceSources, monitoringPlan, rank, ...}]}   (<= 3)

Anything unparseable or off-schema raises LLMResponseError. Recommendations
are gated like the rule-based generator: same-drug changes only for
dose-change-eligible stable patients and never beyond the next dosing step,
switches only when the current drug is on the plan formulary. The survivors
are normalised through the deterministic Screener, Cost Calculator and
Ranker, so model-invented costs and citations never reach the caller.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from classifier import Classification
from contraindication_screener import ContraindicationScreener
from cost_calculator import CostCalculator
from dosing import get_standard_dosing, next_dosing_step, regimen_ratio
from exceptions import LLMResponseError
from models import (
    AssessmentInput, AssessmentResult, Candidate, CandidateType, ClinicalFinding, FormularyEntry,
    FormularyStatus,
)
from ranker import Ranker
from rationale_composer import RationaleComposer
from reference_data import ReferenceData, format_findings_for_prompt, same_molecule

logger = logging.getLogger(__name__)


MAX_PROMPT_FINDINGS = 12
MAX_PROMPT_FORMULARY = 15


# ==================== RESPONSE SCHEMA ====================

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["recommendations"],
    "properties": {
        "recommendations": {
            "type": "array",
            "maxItems": 3,
            "items": {
                "type": "object",
                "required": ["type", "drugName", "rationale"],
                "properties": {
                    "rank": {"type": "integer", "minimum": 1, "maximum": 3},
                    "type": {"type": "string", "enum": [t.value for t in CandidateType]},
                    "drugName": {"type": "string"},
                    "newDose": {"type": ["string", "null"]},
                    "newFrequency": {"type": ["string", "null"]},
                    "rationale": {"type": "string"},
                    "evidenceSources": {"type": "array", "items": {"type": "string"}},
                    "monitoringPlan": {"type": ["string", "null"]},
                    "contraindicated": {"type": "boolean"},
                    "contraindicationReason": {"type": ["string", "null"]},
                },
            },
        }
    },
}


class LLMRecommendation(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    type: CandidateType
    drug_name: str = Field(..., min_length=1)
    rationale: str = Field(..., min_length=1)
    rank: Optional[int] = None
    new_dose: Optional[str] = None
    new_frequency: Optional[str] = None
    evidence_sources: List[str] = Field(default_factory=list)
    monitoring_plan: Optional[str] = None
    contraindicated: bool = False
    contraindication_reason: Optional[str] = None

    @field_validator("evidence_sources", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return v or []


class LLMResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    recommendations: List[LLMRecommendation] = Field(..., max_length=3)


def parse_llm_response(payload: Dict[str, Any]) -> LLMResponse:
    try:
        return LLMResponse.model_validate(payload)
    except ValidationError as e:
        raise LLMResponseError(f"LLM response failed schema validation: {e.error_count()} error(s)") from e


# ==================== PROMPT ====================

def _formulary_line(entry: FormularyEntry) -> str:
    cost = f"${entry.annual_cost_wac:,.0f}/yr" if entry.annual_cost_wac is not None else "cost unknown"
    extras = []
    if entry.biosimilar_of:
        extras.append(f"biosimilar of {entry.biosimilar_of}")
    if entry.requires_pa:
        extras.append("PA required")
    if entry.step_therapy_required:
        extras.append("step therapy")
    indications = ", ".join(entry.approved_indications) or "none listed"
    extra = f" ({'; '.join(extras)})" if extras else ""
    return (
        f"- {entry.drug_name} [{entry.generic_name}] class={entry.drug_class} tier={entry.tier} "
        f"{cost}{extra} indications: {indications}"
    )


class LLMPromptBuilder:

    @staticmethod
    def formulary_context(assessment: AssessmentInput, classification: Classification, reference: ReferenceData) -> List[FormularyEntry]:
        entry = classification.current_entry
        if entry is None:
            return []
        options = reference.list_formulary_by_class(assessment.plan_id, entry.drug_class, 5)
        # Preferred agents of other classes that carry the diagnosis
        others = [
            e for e in reference.formulary
            if e.plan_id == assessment.plan_id and e.tier <= 2
            and e.drug_class != entry.drug_class and e.is_indicated_for(assessment.diagnosis)
        ]
        others.sort(key=lambda e: (e.tier, e.drug_name.lower()))
        return (options + others)[:MAX_PROMPT_FORMULARY]

    @staticmethod
    def evidence_context(assessment: AssessmentInput, classification: Classification,
                         formulary: List[FormularyEntry], reference: ReferenceData) -> List[ClinicalFinding]:
        terms = []
        if assessment.current_biologic:
            terms.append(assessment.current_biologic.drug_name)
        if classification.current_entry:
            terms.extend([classification.current_entry.generic_name, classification.current_entry.drug_class])
        terms.extend(e.drug_name for e in formulary)

        seen = {}
        for term in terms:
            for f in reference.find_clinical_findings(drug=term):
                seen.setdefault(f.citation, f)
        for f in reference.find_clinical_findings(indication=assessment.diagnosis.value):
            seen.setdefault(f.citation, f)
        if assessment.additional_notes:
            for f in reference.search_findings_text(assessment.additional_notes):
                seen.setdefault(f.citation, f)

        return sorted(seen.values(), key=lambda f: f.citation)[:MAX_PROMPT_FINDINGS]

    @staticmethod
    def build(assessment: AssessmentInput, classification: Classification, reference: ReferenceData) -> Tuple[str, List[ClinicalFinding]]:
        current = assessment.current_biologic
        entry = classification.current_entry
        formulary = LLMPromptBuilder.formulary_context(assessment, classification, reference)
        findings = LLMPromptBuilder.evidence_context(assessment, classification, formulary, reference)

        standard = get_standard_dosing(current.drug_name, entry.generic_name if entry else None) if current else None
        standard_text = f"every {standard.interval} {standard.unit}(s)" if standard else "unknown"
        if standard and standard.dose_mg:
            standard_text += f", {standard.dose_mg:g} mg"

        labels = []
        for name in [current.drug_name if current else None] + [e.drug_name for e in formulary]:
            label = reference.get_drug_label_facts(name)
            if label and (label.black_box_warnings or label.contraindications):
                labels.append(
                    f"- {label.brand} ({label.generic}): contraindications: {'; '.join(label.contraindications) or 'none'}"
                    f" | black box: {'; '.join(label.black_box_warnings) or 'none'}"
                )

        if current:
            regimen = " ".join(filter(None, [current.drug_name, current.dose, current.frequency]))
        else:
            regimen = "none"
        stability = "stable" if classification.is_stable else "unstable"
        dlqi = assessment.dlqi_score if assessment.dlqi_score is not None else "n/a"
        months = assessment.months_stable if assessment.months_stable is not None else "n/a"
        if assessment.severity_score_type and assessment.severity_score is not None:
            severity = f"{assessment.severity_score_type.value} {assessment.severity_score:g}"
        else:
            severity = "not reported"
        contraindications = ", ".join(sorted(c.value for c in assessment.contraindications)) or "none"
        failed = ", ".join(assessment.failed_therapies) or "none"
        formulary_text = "\n".join(_formulary_line(e) for e in formulary) or "- no formulary data"
        label_text = "\n".join(labels) or "- none on file"
        evidence_text = format_findings_for_prompt(findings) or "- no reviewed findings"

        prompt = f"""Analyze this patient's biologic therapy and recommend up to 3 cost-saving alternatives.

PATIENT
- Diagnosis: {assessment.diagnosis.value}
- Psoriatic arthritis: {'yes' if assessment.has_psoriatic_arthritis else 'no'}
- Current biologic: {regimen}
- Standard maintenance dosing: {standard_text}
- Stability: {stability} (DLQI {dlqi}, months stable {months})
- Severity score: {severity}
- Quadrant: {classification.quadrant.value}; formulary status: {classification.formulary_status.value}
- Contraindications: {contraindications}
- Failed therapies: {failed}
- Notes: {assessment.additional_notes or 'none'}

FORMULARY (plan {assessment.plan_id})
{formulary_text}

FDA LABEL WARNINGS
{label_text}

CLINICAL EVIDENCE (cite only these citations)
{evidence_text}

RULES
- Allowed types: DOSE_REDUCTION, INTERVAL_EXTENSION (same drug, stable patients only), BIOSIMILAR_SWITCH, TIER_SWITCH.
- Never recommend a drug from the failed therapies list.
- Flag contraindicated options with contraindicated=true and a contraindicationReason.
- Return an empty recommendations list if no safe cost-saving option exists.
"""
        return prompt, findings


# ==================== ENGINE ====================

class LLMEngine:

    def __init__(self, client, reference: ReferenceData, timeout_ms: int = 30000):
        self.client = client
        self.reference = reference
        self.timeout_ms = timeout_ms

    def to_candidate(self, rec: LLMRecommendation, assessment: AssessmentInput,
                     classification: Classification, allowed_citations: set) -> Optional[Candidate]:
        """
        Map one model recommendation onto a Candidate under the same gates the
        rule-based generator applies. Returns None when the recommendation is
        not allowed for this patient; the rest of the LLM answer is kept.
        """
        current = assessment.current_biologic
        current_entry = classification.current_entry
        citations = tuple(c for c in dict.fromkeys(rec.evidence_sources) if c in allowed_citations)
        dropped = len(rec.evidence_sources) - len(citations)
        if dropped:
            logger.warning(f"⚠️  Dropped {dropped} unreviewed/unknown citation(s) from {rec.drug_name}")

        if rec.type in (CandidateType.DOSE_REDUCTION, CandidateType.INTERVAL_EXTENSION):
            if current is None or not (
                same_molecule(rec.drug_name, current.drug_name)
                or (current_entry and same_molecule(rec.drug_name, current_entry.drug_name))
            ):
                raise LLMResponseError(f"{rec.type.value} must keep the current drug, got {rec.drug_name}")
            if not (rec.new_dose or rec.new_frequency):
                raise LLMResponseError(f"{rec.type.value} for {rec.drug_name} has no new regimen")

            if not (classification.quadrant.is_stable and classification.dose_change_eligible):
                logger.warning(
                    f"⚠️  Dropped {rec.type.value} for {rec.drug_name}: patient not eligible for a dose change"
                )
                return None

            generic = current_entry.generic_name if current_entry else None
            step = next_dosing_step(current.drug_name, generic, current.dose, current.frequency)
            if step is None:
                logger.warning(f"⚠️  Dropped {rec.type.value} for {rec.drug_name}: no further dosing step known")
                return None

            standard = get_standard_dosing(current.drug_name, generic)
            candidate_type = rec.type
            new_dose = rec.new_dose or current.dose
            new_frequency = rec.new_frequency or current.frequency
            ratio = regimen_ratio(standard, current.dose, current.frequency, new_dose, new_frequency)
            if ratio >= 1:
                logger.warning(f"⚠️  Dropped {rec.type.value} for {rec.drug_name}: regimen does not lower exposure")
                return None

            capped = ratio < step.regimen_ratio - 1e-9
            if capped:
                logger.warning(
                    f"⚠️  Capped {rec.drug_name} {new_dose} {new_frequency} to one step: "
                    f"{step.new_dose} {step.new_frequency}"
                )
                candidate_type = step.type
                new_dose = step.new_dose or current.dose
                new_frequency = step.new_frequency
                ratio = step.regimen_ratio

            candidate = Candidate(
                type=candidate_type,
                drug_name=current_entry.drug_name if current_entry else current.drug_name,
                generic_name=generic,
                drug_class=current_entry.drug_class if current_entry else None,
                new_dose=new_dose,
                new_frequency=new_frequency,
                tier=current_entry.tier if current_entry else None,
                requires_pa=current_entry.requires_pa if current_entry else None,
                regimen_ratio=ratio,
                contraindicated=rec.contraindicated,
                contraindication_reason=rec.contraindication_reason if rec.contraindicated else None,
                rationale=rec.rationale,
                evidence_sources=citations,
                monitoring_plan=rec.monitoring_plan,
            )
            # Model rationale describes the regimen it proposed
            return RationaleComposer.compose(candidate, assessment, self.reference) if capped else candidate

        if classification.formulary_status == FormularyStatus.UNKNOWN:
            logger.warning(
                f"⚠️  Dropped {rec.type.value} to {rec.drug_name}: current drug not on plan formulary"
            )
            return None

        entry = self.reference.resolve_formulary_entry(assessment.plan_id, rec.drug_name)
        return Candidate(
            type=rec.type,
            drug_name=entry.drug_name if entry else rec.drug_name,
            generic_name=entry.generic_name if entry else None,
            drug_class=entry.drug_class if entry else None,
            new_dose=rec.new_dose,
            new_frequency=rec.new_frequency,
            tier=entry.tier if entry else None,
            requires_pa=entry.requires_pa if entry else None,
            contraindicated=rec.contraindicated,
            contraindication_reason=rec.contraindication_reason if rec.contraindicated else None,
            rationale=rec.rationale,
            evidence_sources=citations,
            monitoring_plan=rec.monitoring_plan,
        )

    def run(self, assessment: AssessmentInput, classification: Classification) -> AssessmentResult:
        logger.info("=" * 60)
        logger.info("🤖 LLM ENGINE")
        logger.info("=" * 60)

        prompt, findings = LLMPromptBuilder.build(assessment, classification, self.reference)
        payload = self.client.complete(prompt, RESPONSE_SCHEMA, self.timeout_ms)
        response = parse_llm_response(payload)
        logger.info(f"   Model returned {len(response.recommendations)} recommendation(s)")

        allowed = {f.citation for f in findings if f.reviewed}
        candidates: List[Candidate] = []
        seen = set()
        for rec in sorted(response.recommendations, key=lambda r: r.rank or 99):
            candidate = self.to_candidate(rec, assessment, classification, allowed)
            if candidate is None:
                continue
            key = (candidate.type, candidate.drug_name.lower())
            if key in seen:
                continue
            seen.add(key)
            candidates.append(candidate)

        # Deterministic normalisation: re-screen, reprice, fill monitoring, re-rank
        candidates = ContraindicationScreener.screen(candidates, assessment, self.reference)
        candidates = CostCalculator.price_all(candidates, assessment, classification, self.reference)
        candidates = [
            c if c.monitoring_plan else replace(c, monitoring_plan=RationaleComposer.monitoring_plan(c, assessment))
            for c in candidates
        ]
        recommendations = Ranker.rank(candidates)

        return AssessmentResult(
            recommendations=recommendations,
            source="llm",
            quadrant=classification.quadrant,
            formulary_status=classification.formulary_status,
            is_stable=classification.is_stable,
        )

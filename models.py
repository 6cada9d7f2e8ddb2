"""
Biologic Optimization Engine - Data Models

Shared vocabulary for every pipeline stage:

1. Enumerations (diagnosis, contraindication vocabulary, candidate types)
2. Reference data records (formulary entries, FDA label facts, clinical findings)
3. AssessmentInput - the per-request payload validated at the boundary
4. Candidate - transient unit passed linearly through the pipeline
5. Recommendation - tagged-variant output models, one per candidate family

Reference records are frozen dataclasses: a formulary version is a distinct
dataset, never mutated in place. Request/response models use pydantic so the
boundary is validated once and every optional key is always present on output.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union
import math

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ==================== ENUMERATIONS ====================

class Diagnosis(str, Enum):
    """Primary dermatologic diagnosis for the assessment"""
    PSORIASIS = "PSORIASIS"
    ECZEMA = "ECZEMA"
    HIDRADENITIS_SUPPURATIVA = "HIDRADENITIS_SUPPURATIVA"
    OTHER = "OTHER"


class ContraindicationType(str, Enum):
    """Patient-level contraindications recorded by the clinician"""
    HEART_FAILURE = "HEART_FAILURE"
    MULTIPLE_SCLEROSIS = "MULTIPLE_SCLEROSIS"
    DEMYELINATING_DISEASE = "DEMYELINATING_DISEASE"
    LYMPHOMA = "LYMPHOMA"
    MALIGNANCY = "MALIGNANCY"
    HEPATITIS_B = "HEPATITIS_B"
    LATENT_TUBERCULOSIS = "LATENT_TUBERCULOSIS"
    ACTIVE_TUBERCULOSIS = "ACTIVE_TUBERCULOSIS"
    THROMBOSIS = "THROMBOSIS"
    VENOUS_THROMBOEMBOLISM = "VENOUS_THROMBOEMBOLISM"
    CARDIOVASCULAR_DISEASE = "CARDIOVASCULAR_DISEASE"
    CYTOPENIAS = "CYTOPENIAS"
    INFLAMMATORY_BOWEL_DISEASE = "INFLAMMATORY_BOWEL_DISEASE"
    DIVERTICULITIS = "DIVERTICULITIS"
    ACTIVE_INFECTION = "ACTIVE_INFECTION"
    OPPORTUNISTIC_INFECTION = "OPPORTUNISTIC_INFECTION"
    IMMUNOCOMPROMISED = "IMMUNOCOMPROMISED"
    PREGNANCY = "PREGNANCY"
    LIVE_VACCINE_RECENT = "LIVE_VACCINE_RECENT"
    SURGERY_PLANNED = "SURGERY_PLANNED"


class SeverityScoreType(str, Enum):
    """Disease severity instrument reported with the assessment"""
    PASI = "PASI"
    PGA = "PGA"
    EASI = "EASI"
    IGA = "IGA"


class FindingType(str, Enum):
    """Category of an extracted clinical finding"""
    EFFICACY = "EFFICACY"
    SAFETY = "SAFETY"
    DOSE_REDUCTION = "DOSE_REDUCTION"
    INTERVAL_EXTENSION = "INTERVAL_EXTENSION"
    COST_EFFECTIVENESS = "COST_EFFECTIVENESS"
    OTHER = "OTHER"


class CandidateType(str, Enum):
    """Therapy-change families the engine can propose"""
    DOSE_REDUCTION = "DOSE_REDUCTION"
    INTERVAL_EXTENSION = "INTERVAL_EXTENSION"
    BIOSIMILAR_SWITCH = "BIOSIMILAR_SWITCH"
    TIER_SWITCH = "TIER_SWITCH"


SAME_DRUG_TYPES = frozenset({CandidateType.DOSE_REDUCTION, CandidateType.INTERVAL_EXTENSION})
SWITCH_TYPES = frozenset({CandidateType.BIOSIMILAR_SWITCH, CandidateType.TIER_SWITCH})


class Quadrant(str, Enum):
    """Stability x formulary-alignment classification"""
    STABLE_FORMULARY = "stable_formulary"
    STABLE_NON_FORMULARY = "stable_non_formulary"
    UNSTABLE_FORMULARY = "unstable_formulary"
    UNSTABLE_NON_FORMULARY = "unstable_non_formulary"

    @property
    def is_stable(self) -> bool:
        return self.value.startswith("stable_")


class FormularyStatus(str, Enum):
    FORMULARY = "FORMULARY"            # tier 1-2
    NON_FORMULARY = "NON_FORMULARY"    # tier 3+
    UNKNOWN = "UNKNOWN"                # current drug not in formulary


class Severity(str, Enum):
    ABSOLUTE = "ABSOLUTE"
    RELATIVE = "RELATIVE"


# ==================== REFERENCE DATA ====================

@dataclass(frozen=True)
class FormularyEntry:
    """One covered drug in a payer formulary version, keyed by (plan_id, drug_name)"""
    plan_id: str
    drug_name: str
    generic_name: str
    drug_class: str
    tier: int
    requires_pa: bool = False
    step_therapy_required: bool = False
    annual_cost_wac: Optional[float] = None
    member_copay_by_tier: Dict[int, float] = field(default_factory=dict)
    biosimilar_of: Optional[str] = None
    approved_indications: Tuple[str, ...] = ()

    def __hash__(self) -> int:
        return hash((self.plan_id, self.drug_name.lower()))

    @property
    def annual_member_copay(self) -> Optional[float]:
        """Member cost share for this entry's own tier (annual)"""
        return self.member_copay_by_tier.get(self.tier)

    def is_indicated_for(self, diagnosis: "Diagnosis") -> bool:
        wanted = _normalize_indication(diagnosis.value)
        return any(_normalize_indication(ind) == wanted for ind in self.approved_indications)


@dataclass(frozen=True)
class DrugLabelFact:
    """FDA label facts for a drug, keyed by brand or generic name"""
    brand: str
    generic: str
    fda_indications: Tuple[str, ...] = ()
    contraindications: Tuple[str, ...] = ()
    black_box_warnings: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    last_updated: Optional[date] = None

    def age_days(self, today: Optional[date] = None) -> Optional[int]:
        if self.last_updated is None:
            return None
        return ((today or date.today()) - self.last_updated).days


@dataclass(frozen=True)
class ClinicalFinding:
    """A structured, citable finding extracted from the literature"""
    finding: str
    citation: str
    finding_type: FindingType
    drug: Optional[str] = None
    drug_class: Optional[str] = None
    indication: Optional[str] = None
    paper_title: Optional[str] = None
    reviewed: bool = False


def _normalize_indication(value: str) -> str:
    return value.strip().upper().replace(" ", "_").replace("-", "_")


# ==================== ASSESSMENT INPUT ====================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class CurrentBiologic(_CamelModel):
    drug_name: str = Field(..., min_length=1)
    dose: Optional[str] = None
    frequency: Optional[str] = None


class AssessmentInput(_CamelModel):
    """Per-request payload; owned by the caller, never mutated by the engine"""

    plan_id: str = Field(..., min_length=1)
    medication_type: str = Field(..., min_length=1)
    diagnosis: Diagnosis
    patient_id: Optional[str] = None
    current_biologic: Optional[CurrentBiologic] = None
    has_psoriatic_arthritis: bool = False
    contraindications: FrozenSet[ContraindicationType] = frozenset()
    failed_therapies: Tuple[str, ...] = ()
    is_stable: Optional[bool] = None
    dlqi_score: Optional[float] = Field(None, ge=0, le=30)
    severity_score_type: Optional[SeverityScoreType] = None
    severity_score: Optional[float] = Field(None, ge=0)
    # Months at the current severity; intake forms send severityDurationMonths
    months_stable: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("monthsStable", "severityDurationMonths", "months_stable"),
    )
    bmi: Optional[float] = Field(None, gt=0)
    additional_notes: Optional[str] = None

    @field_validator("diagnosis", mode="before")
    @classmethod
    def coerce_unmapped_diagnosis(cls, v):
        # Unmapped diagnoses become OTHER; only a missing value is an error
        if v is None or isinstance(v, Diagnosis):
            return v
        key = _normalize_indication(str(v))
        return Diagnosis.__members__.get(key, Diagnosis.OTHER)

    @field_validator("contraindications", mode="before")
    @classmethod
    def normalize_contraindications(cls, v):
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        # Free-text entries outside the vocabulary cannot be screened; drop them
        keys = {_normalize_indication(str(getattr(c, "value", c))) for c in v}
        return frozenset(ContraindicationType(k) for k in keys if k in ContraindicationType.__members__)

    @field_validator("severity_score_type", mode="before")
    @classmethod
    def upper_score_type(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("failed_therapies", mode="before")
    @classmethod
    def drop_blank_therapies(cls, v):
        if v is None:
            return ()
        return tuple(str(t).strip() for t in v if t and str(t).strip())

    def has_failed(self, *names: Optional[str]) -> bool:
        failed = {t.lower() for t in self.failed_therapies}
        return any(n and n.lower() in failed for n in names)


# ==================== PIPELINE CANDIDATE ====================

@dataclass(frozen=True)
class Candidate:
    """
    Transient therapy-change proposal.

    Created by the Candidate Generator and enriched stage by stage with
    dataclasses.replace(); no stage mutates an instance it received.
    """
    type: CandidateType
    drug_name: str
    generic_name: Optional[str] = None
    drug_class: Optional[str] = None
    new_dose: Optional[str] = None
    new_frequency: Optional[str] = None
    tier: Optional[int] = None
    requires_pa: Optional[bool] = None

    # Same-drug regimen ratio (new annual fills / current annual fills)
    regimen_ratio: Optional[float] = None

    # Screener
    contraindicated: bool = False
    contraindication_reason: Optional[str] = None

    # Cost calculator
    current_annual_cost: Optional[float] = None
    recommended_annual_cost: Optional[float] = None
    annual_savings: Optional[float] = None
    savings_percent: Optional[float] = None
    current_monthly_oop: Optional[float] = None
    recommended_monthly_oop: Optional[float] = None

    # Rationale composer
    rationale: str = ""
    evidence_sources: Tuple[str, ...] = ()
    monitoring_plan: Optional[str] = None

    @property
    def is_same_drug(self) -> bool:
        return self.type in SAME_DRUG_TYPES


# ==================== RECOMMENDATION OUTPUT ====================

class _RecommendationBase(_CamelModel):
    """Fields shared by every recommendation variant; all keys always serialised"""

    rank: int = Field(..., ge=1, le=3)
    drug_name: str = Field(..., min_length=1)
    rationale: str = Field(..., min_length=1)
    evidence_sources: List[str] = Field(default_factory=list)
    contraindicated: bool = False
    new_dose: Optional[str] = None
    new_frequency: Optional[str] = None
    current_annual_cost: Optional[float] = None
    recommended_annual_cost: Optional[float] = None
    annual_savings: Optional[float] = None
    savings_percent: Optional[float] = None
    current_monthly_oop: Optional[float] = Field(None, alias="currentMonthlyOOP")
    recommended_monthly_oop: Optional[float] = Field(None, alias="recommendedMonthlyOOP")
    monitoring_plan: Optional[str] = None
    tier: Optional[int] = Field(None, ge=1, le=5)
    requires_pa: Optional[bool] = Field(None, alias="requiresPA")
    contraindication_reason: Optional[str] = None

    @field_validator(
        "current_annual_cost", "recommended_annual_cost", "annual_savings",
        "savings_percent", "current_monthly_oop", "recommended_monthly_oop",
    )
    @classmethod
    def reject_non_finite(cls, v):
        if v is not None and not math.isfinite(v):
            raise ValueError("monetary fields must be finite or null")
        return v

    @model_validator(mode="after")
    def contraindication_needs_reason(self):
        if self.contraindicated and not (self.contraindication_reason or "").strip():
            raise ValueError("contraindicated recommendations require a contraindicationReason")
        return self

    def to_output(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class DoseChangeRecommendation(_RecommendationBase):
    """Same drug, reduced dose or extended interval"""

    type: Literal[CandidateType.DOSE_REDUCTION, CandidateType.INTERVAL_EXTENSION]

    @model_validator(mode="after")
    def regimen_change_present(self):
        if not (self.new_dose or self.new_frequency):
            raise ValueError(f"{self.type.value} requires newDose or newFrequency")
        return self


class SwitchRecommendation(_RecommendationBase):
    """Different product: biosimilar or formulary-preferred agent"""

    type: Literal[CandidateType.BIOSIMILAR_SWITCH, CandidateType.TIER_SWITCH]


Recommendation = Annotated[
    Union[DoseChangeRecommendation, SwitchRecommendation],
    Field(discriminator="type"),
]


def recommendation_from_candidate(candidate: Candidate, rank: int) -> Recommendation:
    """Freeze a fully enriched candidate into its validated output variant"""
    payload = dict(
        rank=rank,
        type=candidate.type,
        drug_name=candidate.drug_name,
        rationale=candidate.rationale,
        evidence_sources=list(candidate.evidence_sources),
        contraindicated=candidate.contraindicated,
        new_dose=candidate.new_dose,
        new_frequency=candidate.new_frequency,
        current_annual_cost=candidate.current_annual_cost,
        recommended_annual_cost=candidate.recommended_annual_cost,
        annual_savings=candidate.annual_savings,
        savings_percent=candidate.savings_percent,
        current_monthly_oop=candidate.current_monthly_oop,
        recommended_monthly_oop=candidate.recommended_monthly_oop,
        monitoring_plan=candidate.monitoring_plan,
        tier=candidate.tier,
        requires_pa=candidate.requires_pa,
        contraindication_reason=candidate.contraindication_reason,
    )
    if candidate.is_same_drug:
        return DoseChangeRecommendation(**payload)
    return SwitchRecommendation(**payload)


# ==================== ENGINE RESULT ====================

@dataclass
class AssessmentResult:
    """
    Engine output plus internal metadata.

    Only `recommendations` belongs to the output contract; `source` and the
    classification fields are kept for telemetry and never serialised by
    to_output().
    """
    recommendations: List[Recommendation]
    source: Literal["llm", "rule_based"]
    quadrant: Optional[Quadrant] = None
    formulary_status: Optional[FormularyStatus] = None
    is_stable: Optional[bool] = None
    label_age_days: Dict[str, Optional[int]] = field(default_factory=dict)

    def to_output(self) -> Dict[str, Any]:
        return {"recommendations": [r.to_output() for r in self.recommendations]}

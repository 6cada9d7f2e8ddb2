"""
Stability / Formulary Classifier.

Places the patient in one of four quadrants:

                      FORMULARY (tier 1-2)    NON_FORMULARY (tier 3+ or unknown)
    stable            stable_formulary        stable_non_formulary
    unstable          unstable_formulary      unstable_non_formulary

Stability has one canonical predicate: an explicit isStable flag wins, then a
diagnosis-specific severity score (PASI/PGA, EASI/IGA) held for 6 months with
DLQI <= 5, then DLQI <= 5 alone, otherwise unstable. Never raises; unresolved
drugs yield formularyStatus UNKNOWN, which downstream stages treat
conservatively.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from models import AssessmentInput, Diagnosis, FormularyEntry, FormularyStatus, Quadrant, SeverityScoreType
from reference_data import ReferenceData

logger = logging.getLogger(__name__)


STABLE_DLQI_THRESHOLD = 5
MIN_MONTHS_STABLE_FOR_DOSE_CHANGE = 6

# (diagnosis, instrument) -> (threshold, inclusive); controlled below / at threshold
STABLE_SEVERITY_THRESHOLDS = {
    (Diagnosis.PSORIASIS, SeverityScoreType.PASI): (5, False),
    (Diagnosis.PSORIASIS, SeverityScoreType.PGA): (1, True),
    (Diagnosis.ECZEMA, SeverityScoreType.EASI): (7, False),
    (Diagnosis.ECZEMA, SeverityScoreType.IGA): (1, True),
}

# Form entry point: "stable"/"unstable" maps to a representative DLQI
STABILITY_FLAG_DLQI = {"stable": 2, "unstable": 8}


@dataclass(frozen=True)
class Classification:
    quadrant: Quadrant
    formulary_status: FormularyStatus
    is_stable: bool
    dose_change_eligible: bool
    current_entry: Optional[FormularyEntry]


def severity_controlled(
    diagnosis: Optional[Diagnosis],
    score_type: Optional[SeverityScoreType],
    score: Optional[float],
) -> Optional[bool]:
    """Whether the severity score is in the controlled range, None if the instrument does not apply"""
    rule = STABLE_SEVERITY_THRESHOLDS.get((diagnosis, score_type))
    if rule is None or score is None:
        return None
    threshold, inclusive = rule
    return score <= threshold if inclusive else score < threshold


def is_patient_stable(
    is_stable: Optional[bool] = None,
    dlqi_score: Optional[float] = None,
    diagnosis: Optional[Diagnosis] = None,
    severity_score_type: Optional[SeverityScoreType] = None,
    severity_score: Optional[float] = None,
    months_stable: Optional[int] = None,
) -> bool:
    """
    Canonical stability predicate, first match wins:

    1. explicit isStable flag
    2. severity score for the diagnosis in range, held >= 6 months, DLQI <= 5
    3. DLQI <= 5
    4. unstable
    """
    if is_stable is not None:
        return bool(is_stable)

    controlled = severity_controlled(diagnosis, severity_score_type, severity_score)
    if controlled is not None:
        return (
            controlled
            and months_stable is not None and months_stable >= MIN_MONTHS_STABLE_FOR_DOSE_CHANGE
            and dlqi_score is not None and dlqi_score <= STABLE_DLQI_THRESHOLD
        )

    if dlqi_score is not None:
        return dlqi_score <= STABLE_DLQI_THRESHOLD
    return False


def dlqi_from_stability_flag(flag: Optional[str]) -> Optional[int]:
    if not flag:
        return None
    return STABILITY_FLAG_DLQI.get(flag.strip().lower())


def formulary_status_for(entry: Optional[FormularyEntry]) -> FormularyStatus:
    if entry is None:
        return FormularyStatus.UNKNOWN
    return FormularyStatus.FORMULARY if entry.tier <= 2 else FormularyStatus.NON_FORMULARY


class StabilityFormularyClassifier:

    @staticmethod
    def classify(assessment: AssessmentInput, reference: ReferenceData) -> Classification:
        stable = is_patient_stable(
            assessment.is_stable,
            assessment.dlqi_score,
            diagnosis=assessment.diagnosis,
            severity_score_type=assessment.severity_score_type,
            severity_score=assessment.severity_score,
            months_stable=assessment.months_stable,
        )

        drug_name = assessment.current_biologic.drug_name if assessment.current_biologic else None
        entry = reference.resolve_formulary_entry(assessment.plan_id, drug_name)
        status = formulary_status_for(entry)

        # UNKNOWN is not formulary-aligned
        aligned = status == FormularyStatus.FORMULARY
        if stable:
            quadrant = Quadrant.STABLE_FORMULARY if aligned else Quadrant.STABLE_NON_FORMULARY
        else:
            quadrant = Quadrant.UNSTABLE_FORMULARY if aligned else Quadrant.UNSTABLE_NON_FORMULARY

        dose_change_eligible = stable and (
            assessment.months_stable is None
            or assessment.months_stable >= MIN_MONTHS_STABLE_FOR_DOSE_CHANGE
        )

        if drug_name and entry is None:
            logger.warning(f"⚠️  {drug_name} not found in formulary for plan {assessment.plan_id}")
        logger.info(
            f"🧭 Quadrant: {quadrant.value} | formulary: {status.value} | "
            f"dose change eligible: {dose_change_eligible}"
        )

        return Classification(
            quadrant=quadrant,
            formulary_status=status,
            is_stable=stable,
            dose_change_eligible=dose_change_eligible,
            current_entry=entry,
        )

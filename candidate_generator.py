"""
Candidate Generator.

Produces therapy-change candidates by policy, not by enumerating the whole
formulary:

    1. Same-drug step     stable quadrant and a known next dosing step
    2. Biosimilar switch  tier 1-2 entry whose biosimilarOf is the current drug
    3. Tier switch        current drug NON_FORMULARY; same class, tier <= 2,
                          indicated for the diagnosis, not previously failed

At most 3 raw candidates, in that order. OTHER diagnoses get none.
"""

from typing import List, Optional, Set
import logging

from classifier import Classification
from dosing import next_dosing_step
from models import (
    AssessmentInput, Candidate, CandidateType, Diagnosis, FormularyEntry, FormularyStatus,
)
from reference_data import ReferenceData

logger = logging.getLogger(__name__)


MAX_RAW_CANDIDATES = 3
PREFERRED_MAX_TIER = 2


def _switch_candidate(entry: FormularyEntry, candidate_type: CandidateType, assessment: AssessmentInput) -> Candidate:
    current = assessment.current_biologic
    # A switch keeps the prescriber-entered regimen; the new label's loading schedule is the clinician's call
    return Candidate(
        type=candidate_type,
        drug_name=entry.drug_name,
        generic_name=entry.generic_name,
        drug_class=entry.drug_class,
        new_dose=current.dose if current else None,
        new_frequency=current.frequency if current else None,
        tier=entry.tier,
        requires_pa=entry.requires_pa,
    )


class CandidateGenerator:

    @staticmethod
    def same_drug_step(assessment: AssessmentInput, classification: Classification) -> Optional[Candidate]:
        if not (classification.quadrant.is_stable and classification.dose_change_eligible):
            return None

        current = assessment.current_biologic
        entry = classification.current_entry
        step = next_dosing_step(
            current.drug_name,
            entry.generic_name if entry else None,
            current.dose,
            current.frequency,
        )
        if step is None:
            logger.info(f"   No further dosing step known for {current.drug_name}")
            return None

        return Candidate(
            type=step.type,
            drug_name=entry.drug_name if entry else current.drug_name,
            generic_name=entry.generic_name if entry else None,
            drug_class=entry.drug_class if entry else None,
            new_dose=step.new_dose,
            new_frequency=step.new_frequency,
            tier=entry.tier if entry else None,
            requires_pa=entry.requires_pa if entry else None,
            regimen_ratio=step.regimen_ratio,
        )

    @staticmethod
    def biosimilar_switch(
        assessment: AssessmentInput,
        classification: Classification,
        reference: ReferenceData,
    ) -> Optional[Candidate]:
        entry = classification.current_entry
        if entry is None:
            return None

        reference_names = {entry.drug_name.lower(), entry.generic_name.lower()}
        for option in reference.list_formulary_by_class(assessment.plan_id, entry.drug_class, PREFERRED_MAX_TIER):
            if not option.biosimilar_of or option.biosimilar_of.lower() not in reference_names:
                continue
            if option.drug_name.lower() == entry.drug_name.lower():
                continue
            if assessment.has_failed(option.drug_name, option.generic_name):
                logger.info(f"   Skipping biosimilar {option.drug_name}: previously failed")
                continue
            return _switch_candidate(option, CandidateType.BIOSIMILAR_SWITCH, assessment)
        return None

    @staticmethod
    def tier_switches(
        assessment: AssessmentInput,
        classification: Classification,
        reference: ReferenceData,
        exclude: Set[str],
        limit: int,
    ) -> List[Candidate]:
        if classification.formulary_status != FormularyStatus.NON_FORMULARY or limit <= 0:
            return []

        entry = classification.current_entry
        results = []
        # list_formulary_by_class orders by tier, WAC, name
        for option in reference.list_formulary_by_class(assessment.plan_id, entry.drug_class, PREFERRED_MAX_TIER):
            name = option.drug_name.lower()
            if name == entry.drug_name.lower() or name in exclude:
                continue
            if not option.is_indicated_for(assessment.diagnosis):
                continue
            if assessment.has_failed(option.drug_name, option.generic_name):
                logger.info(f"   Skipping {option.drug_name}: previously failed")
                continue
            results.append(_switch_candidate(option, CandidateType.TIER_SWITCH, assessment))
            if len(results) >= limit:
                break
        return results

    @staticmethod
    def generate(
        assessment: AssessmentInput,
        classification: Classification,
        reference: ReferenceData,
    ) -> List[Candidate]:
        logger.info("🧪 Generating candidates")

        if assessment.diagnosis == Diagnosis.OTHER:
            logger.info("   Diagnosis OTHER: no candidates")
            return []
        if assessment.current_biologic is None:
            logger.info("   No current biologic: no candidates")
            return []

        candidates: List[Candidate] = []

        step = CandidateGenerator.same_drug_step(assessment, classification)
        if step:
            candidates.append(step)

        if classification.formulary_status != FormularyStatus.UNKNOWN:
            biosimilar = CandidateGenerator.biosimilar_switch(assessment, classification, reference)
            if biosimilar:
                candidates.append(biosimilar)

            chosen = {c.drug_name.lower() for c in candidates}
            candidates.extend(CandidateGenerator.tier_switches(
                assessment, classification, reference,
                exclude=chosen,
                limit=MAX_RAW_CANDIDATES - len(candidates),
            ))

        candidates = candidates[:MAX_RAW_CANDIDATES]
        logger.info(f"   {len(candidates)} raw candidate(s): {[c.type.value for c in candidates]}")
        return candidates

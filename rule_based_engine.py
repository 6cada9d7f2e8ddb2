"""
Biologic Optimization - Deterministic Rule-Based Engine

Runs the pipeline stages in strict sequence:

    Classifier -> Candidate Generator -> Contraindication Screener
               -> Cost Calculator -> Rationale Composer -> Ranker

This is the correctness backstop for the LLM path. It performs no I/O beyond
the in-memory reference lookups, holds no state between runs and, for the same
input and reference data, returns identical output every time. The worst case
is an empty recommendation list.
"""

from datetime import date
from typing import Dict, Iterable, List, Optional
import logging

from candidate_generator import CandidateGenerator
from classifier import Classification, StabilityFormularyClassifier
from config import EngineSettings
from contraindication_screener import ContraindicationScreener
from cost_calculator import CostCalculator
from models import AssessmentInput, AssessmentResult, Candidate
from ranker import Ranker
from rationale_composer import RationaleComposer
from reference_data import ReferenceData, label_needs_refresh

logger = logging.getLogger(__name__)


def label_ages(
    drug_names: Iterable[str],
    reference: ReferenceData,
    staleness_days: int = 90,
    today: Optional[date] = None,
) -> Dict[str, Optional[int]]:
    """Age in days of each drug's label facts; stale labels are logged, not enforced"""
    ages: Dict[str, Optional[int]] = {}
    for name in drug_names:
        if name in ages:
            continue
        label = reference.get_drug_label_facts(name)
        if label is None:
            continue
        ages[name] = label.age_days(today)
        if label_needs_refresh(label, staleness_days, today):
            logger.warning(f"⚠️  Label facts for {name} are stale ({ages[name]} days old)")
    return ages


def finalize_candidates(
    candidates: List[Candidate],
    assessment: AssessmentInput,
    classification: Classification,
    reference: ReferenceData,
) -> List[Candidate]:
    """Screen, price and cite; shared by both engine paths"""
    screened = ContraindicationScreener.screen(candidates, assessment, reference)
    priced = CostCalculator.price_all(screened, assessment, classification, reference)
    return RationaleComposer.compose_all(priced, assessment, reference)


class RuleBasedEngine:

    def __init__(self, reference: ReferenceData, settings: Optional[EngineSettings] = None):
        self.reference = reference
        self.settings = settings or EngineSettings()

    def run(self, assessment: AssessmentInput, classification: Optional[Classification] = None) -> AssessmentResult:
        logger.info("=" * 60)
        logger.info("📏 RULE-BASED ENGINE")
        logger.info("=" * 60)

        if classification is None:
            classification = StabilityFormularyClassifier.classify(assessment, self.reference)

        candidates = CandidateGenerator.generate(assessment, classification, self.reference)
        candidates = finalize_candidates(candidates, assessment, classification, self.reference)
        recommendations = Ranker.rank(candidates)

        return AssessmentResult(
            recommendations=recommendations,
            source="rule_based",
            quadrant=classification.quadrant,
            formulary_status=classification.formulary_status,
            is_stable=classification.is_stable,
            label_age_days=label_ages(
                [r.drug_name for r in recommendations], self.reference, self.settings.label_staleness_days
            ),
        )

"""
Cost Calculator.

    currentAnnualCost      current entry WAC
    recommendedAnnualCost  candidate entry WAC, or for a same-drug change the
                           current cost scaled by the fills-per-year ratio
    annualSavings          current - recommended, never clamped
    savingsPercent         round(savings / current * 100, 1), null when current is 0/null
    monthly OOP            member copay for the applicable tier / 12

Every monetary field is nullable. Missing cost data is a normal condition.
"""

from dataclasses import replace
from typing import List, Optional
import logging
import math

from classifier import Classification
from models import AssessmentInput, Candidate, FormularyEntry, FormularyStatus
from reference_data import ReferenceData

logger = logging.getLogger(__name__)


def _money(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return round(value, 2)


def savings_percent(annual_savings: Optional[float], current_annual_cost: Optional[float]) -> Optional[float]:
    if annual_savings is None or not current_annual_cost:
        return None
    pct = annual_savings / current_annual_cost * 100
    return round(pct, 1) if math.isfinite(pct) else None


def monthly_oop(entry: Optional[FormularyEntry], fallback: Optional[FormularyEntry] = None) -> Optional[float]:
    """Annual member cost share for the entry's tier, per month"""
    if entry is None:
        return None
    annual = entry.member_copay_by_tier.get(entry.tier)
    if annual is None and fallback is not None:
        # Copay schedules are plan-wide; borrow the current entry's table
        annual = fallback.member_copay_by_tier.get(entry.tier)
    return _money(annual / 12) if annual is not None else None


class CostCalculator:

    @staticmethod
    def price(
        candidate: Candidate,
        assessment: AssessmentInput,
        classification: Classification,
        reference: ReferenceData,
    ) -> Candidate:
        current_entry = classification.current_entry
        if current_entry is None or classification.formulary_status == FormularyStatus.UNKNOWN:
            return replace(
                candidate,
                current_annual_cost=None, recommended_annual_cost=None,
                annual_savings=None, savings_percent=None,
                current_monthly_oop=None, recommended_monthly_oop=None,
            )

        current_cost = current_entry.annual_cost_wac
        current_oop = monthly_oop(current_entry)

        if candidate.is_same_drug:
            ratio = candidate.regimen_ratio if candidate.regimen_ratio is not None else 1.0
            recommended_cost = current_cost * ratio if current_cost is not None else None
            recommended_oop = current_oop * ratio if current_oop is not None else None
        else:
            candidate_entry = reference.get_formulary_entry(assessment.plan_id, candidate.drug_name)
            recommended_cost = candidate_entry.annual_cost_wac if candidate_entry else None
            recommended_oop = monthly_oop(candidate_entry, fallback=current_entry)

        savings = None
        if current_cost is not None and recommended_cost is not None:
            savings = current_cost - recommended_cost

        return replace(
            candidate,
            current_annual_cost=_money(current_cost),
            recommended_annual_cost=_money(recommended_cost),
            annual_savings=_money(savings),
            savings_percent=savings_percent(savings, current_cost),
            current_monthly_oop=_money(current_oop),
            recommended_monthly_oop=_money(recommended_oop),
        )

    @staticmethod
    def price_all(
        candidates: List[Candidate],
        assessment: AssessmentInput,
        classification: Classification,
        reference: ReferenceData,
    ) -> List[Candidate]:
        logger.info(f"💰 Pricing {len(candidates)} candidate(s)")
        priced = [CostCalculator.price(c, assessment, classification, reference) for c in candidates]
        for c in priced:
            logger.info(f"   {c.type.value} {c.drug_name}: savings={c.annual_savings} ({c.savings_percent}%)")
        return priced

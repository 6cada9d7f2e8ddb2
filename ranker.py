"""
Ranker.

Total order, ascending:

    (contraindicated, -annualSavings (null as 0), typePriority, drugName)

Same-drug changes outrank switches at equal savings. Contraindicated
candidates only surface when nothing else survives, and then only the top
one, still flagged.
"""

from typing import List
import logging

from models import (
    Candidate, CandidateType, Recommendation, recommendation_from_candidate,
)

logger = logging.getLogger(__name__)


MAX_RECOMMENDATIONS = 3

TYPE_PRIORITY = {
    CandidateType.DOSE_REDUCTION: 0,
    CandidateType.INTERVAL_EXTENSION: 0,
    CandidateType.BIOSIMILAR_SWITCH: 1,
    CandidateType.TIER_SWITCH: 1,
}


def sort_key(candidate: Candidate):
    return (
        candidate.contraindicated,
        -(candidate.annual_savings or 0),
        TYPE_PRIORITY[candidate.type],
        candidate.drug_name.lower(),
    )


class Ranker:

    @staticmethod
    def rank(candidates: List[Candidate]) -> List[Recommendation]:
        if not candidates:
            logger.info("🏁 No viable candidates: empty recommendation set")
            return []

        ordered = sorted(candidates, key=sort_key)
        safe = [c for c in ordered if not c.contraindicated]
        selected = safe if safe else ordered[:1]

        recommendations = [
            recommendation_from_candidate(c, rank)
            for rank, c in enumerate(selected[:MAX_RECOMMENDATIONS], start=1)
        ]
        for r in recommendations:
            flag = " ⚠️ contraindicated" if r.contraindicated else ""
            logger.info(f"   #{r.rank} {r.type.value} {r.drug_name} (savings {r.annual_savings}){flag}")
        return recommendations

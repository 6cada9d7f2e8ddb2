"""
FastAPI Endpoint for Biologic Therapy Assessments

Thin HTTP adapter over the RecommendationOrchestrator. Request validation
errors become 422; every other internal fault has already been absorbed by
the engine's fallback path.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException

from exceptions import InputValidationError
from orchestrator import RecommendationOrchestrator

logger = logging.getLogger(__name__)

assessment_router = APIRouter(prefix="/assessment", tags=["assessment"])

_orchestrator: Optional[RecommendationOrchestrator] = None


def configure(orchestrator: RecommendationOrchestrator) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> RecommendationOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Recommendation engine not initialised")
    return _orchestrator


ASSESSMENT_EXAMPLE = {
    "planId": "PLAN-001",
    "medicationType": "BIOLOGIC",
    "diagnosis": "PSORIASIS",
    "currentBiologic": {"drugName": "Humira", "dose": "40 mg", "frequency": "Every 2 weeks"},
    "hasPsoriaticArthritis": False,
    "contraindications": [],
    "failedTherapies": [],
    "dlqiScore": 2,
    "monthsStable": 12,
}


# ==================== ENDPOINTS ====================

@assessment_router.post("/recommendations")
async def create_recommendations(
    payload: Dict[str, Any] = Body(..., examples=[ASSESSMENT_EXAMPLE]),
    orchestrator: RecommendationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, List[Dict[str, Any]]]:
    """Run the decision engine for one assessment; returns {"recommendations": [...]}"""
    logger.info(f"📥 Assessment request at {datetime.now().isoformat()}")
    try:
        return orchestrator.run(payload)
    except InputValidationError as e:
        logger.warning(f"❌ Invalid assessment input: {e.fields}")
        raise HTTPException(status_code=422, detail={"message": str(e), "fields": e.fields})


@assessment_router.get("/pipeline-info")
async def pipeline_info(orchestrator: RecommendationOrchestrator = Depends(get_orchestrator)):
    return {
        "stages": [
            "stability_formulary_classifier",
            "candidate_generator",
            "contraindication_screener",
            "cost_calculator",
            "rationale_composer",
            "ranker",
        ],
        "llm_enabled": orchestrator.llm_engine is not None,
        "llm_provider": orchestrator.settings.llm_provider if orchestrator.llm_engine else None,
        "max_recommendations": 3,
    }

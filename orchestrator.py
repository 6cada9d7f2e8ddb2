"""
Dual-Path Orchestrator.

    START -> LLM_ATTEMPT -> SUCCESS
                  |
              LLM_FAILED -> RULE_BASED_ATTEMPT -> SUCCESS

START goes straight to RULE_BASED_ATTEMPT when no LLM client was injected.
An LLM failure of any kind is logged and never surfaced. The rule-based path
cannot block the response; its worst case is an empty list. Both paths return
the same AssessmentResult shape, provenance is internal metadata only.

Configuration arrives at construction time; nothing here reads the
environment.
"""

from enum import Enum
from typing import Any, Dict, Optional
import logging

from pydantic import ValidationError

from classifier import StabilityFormularyClassifier, dlqi_from_stability_flag
from config import EngineSettings
from exceptions import InputValidationError, LLMFailure
from llm_client import build_llm_client
from llm_engine import LLMEngine
from models import AssessmentInput, AssessmentResult
from reference_data import ReferenceData
from rule_based_engine import RuleBasedEngine, label_ages

logger = logging.getLogger(__name__)


class EngineState(Enum):
    START = "start"
    LLM_ATTEMPT = "llm_attempt"
    LLM_FAILED = "llm_failed"
    RULE_BASED_ATTEMPT = "rule_based_attempt"
    SUCCESS = "success"


def parse_assessment_input(payload: Dict[str, Any]) -> AssessmentInput:
    """Validate a raw request payload; the only error the caller can see"""
    if isinstance(payload, AssessmentInput):
        return payload
    if not isinstance(payload, dict):
        raise InputValidationError("Assessment payload must be an object", fields=["__root__"])

    data = dict(payload)
    # Form entry point sends "stable"/"unstable" instead of a DLQI score
    flag = data.pop("stability", None)
    if flag is not None and data.get("dlqiScore") is None and data.get("dlqi_score") is None:
        data["dlqiScore"] = dlqi_from_stability_flag(str(flag))

    try:
        return AssessmentInput.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise InputValidationError(f"Invalid assessment input: {', '.join(fields)}", fields=fields) from e


class RecommendationOrchestrator:

    def __init__(self, reference: ReferenceData, settings: Optional[EngineSettings] = None, llm_client=None):
        self.reference = reference
        self.settings = settings or EngineSettings()
        if llm_client is None:
            llm_client = build_llm_client(self.settings)
        self.llm_client = llm_client
        self.rule_engine = RuleBasedEngine(reference, self.settings)
        self.llm_engine = LLMEngine(llm_client, reference, self.settings.llm_timeout_ms) if llm_client else None

    def assess(self, assessment: AssessmentInput) -> AssessmentResult:
        state = EngineState.START
        classification = StabilityFormularyClassifier.classify(assessment, self.reference)

        state = EngineState.LLM_ATTEMPT if self.llm_engine else EngineState.RULE_BASED_ATTEMPT
        logger.info(f"🚦 {EngineState.START.value} -> {state.value}")

        if state == EngineState.LLM_ATTEMPT:
            try:
                result = self.llm_engine.run(assessment, classification)
                result.label_age_days = label_ages(
                    [r.drug_name for r in result.recommendations], self.reference,
                    self.settings.label_staleness_days,
                )
                logger.info(f"🚦 {state.value} -> {EngineState.SUCCESS.value} (llm)")
                return result
            except LLMFailure as e:
                logger.warning(f"⚠️  LLM path failed ({type(e).__name__}): {e}")
            except Exception:
                logger.exception("❌ Unexpected error in LLM path")
            state = EngineState.LLM_FAILED
            logger.info(f"🚦 {state.value} -> {EngineState.RULE_BASED_ATTEMPT.value}")

        result = self.rule_engine.run(assessment, classification)
        logger.info(f"🚦 {EngineState.RULE_BASED_ATTEMPT.value} -> {EngineState.SUCCESS.value} (rule_based)")
        return result

    def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, assess and return exactly {"recommendations": [...]}"""
        return self.assess(parse_assessment_input(payload)).to_output()

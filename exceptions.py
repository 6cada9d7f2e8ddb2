"""
Engine error taxonomy.

Only InputValidationError ever reaches the caller. LLMFailure and its
subclasses are raised by the LLM path and recovered by the orchestrator.
Reference-data misses and empty candidate sets are not exceptions at all.
"""

from typing import List, Optional


class InputValidationError(ValueError):
    """AssessmentInput is missing a required field or carries a wrong type"""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class LLMFailure(RuntimeError):
    """Base class for anything that makes the LLM path unusable for this run"""


class LLMTimeoutError(LLMFailure):
    pass


class LLMProviderError(LLMFailure):
    """Network error, non-2xx status or SDK exception from the provider"""


class LLMResponseError(LLMFailure):
    """Model output was not parseable JSON or did not match the response schema"""

"""Shared fixtures for the decision engine test suite"""

from pathlib import Path
import copy

import pytest

from reference_data import load_reference_data

REFERENCE_PATH = Path(__file__).resolve().parent / "data" / "reference_data.json"

BASE_PAYLOAD = {
    "planId": "PLAN-001",
    "patientId": "PT-1001",
    "medicationType": "BIOLOGIC",
    "diagnosis": "PSORIASIS",
    "currentBiologic": {"drugName": "Humira", "dose": "40 mg", "frequency": "Every 2 weeks"},
    "hasPsoriaticArthritis": False,
    "contraindications": [],
    "failedTherapies": [],
    "dlqiScore": 2,
    "monthsStable": 12,
}


class FakeLLMClient:
    """Returns a canned payload, or raises, and records every call"""

    def __init__(self, response=None, error: Exception = None):
        self.response = response
        self.error = error
        self.calls = []

    def complete(self, prompt, response_schema, timeout_ms):
        self.calls.append({"prompt": prompt, "schema": response_schema, "timeout_ms": timeout_ms})
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.response)


@pytest.fixture(scope="session")
def reference():
    return load_reference_data(REFERENCE_PATH)


@pytest.fixture
def make_payload():
    def _make(**overrides):
        payload = copy.deepcopy(BASE_PAYLOAD)
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def fake_llm():
    def _make(response=None, error: Exception = None):
        return FakeLLMClient(response=response, error=error)
    return _make

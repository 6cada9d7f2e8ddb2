"""
LLM completion clients.

Every client implements one call:

    complete(prompt, response_schema, timeout_ms) -> parsed JSON dict

and raises an LLMFailure subclass on anything else. Exactly one attempt is
made per call; retrying is the orchestrator's fallback, not the client's job.

Providers:
- Groq        groq SDK, JSON mode
- HuggingFace OpenAI-compatible router over requests
- Ollama      local /api/generate over requests
"""

from typing import Any, Dict, Optional
import json
import logging
import re
import time

import requests
from groq import APIError, APITimeoutError, Groq

from config import EngineSettings, HF_API_URL, OLLAMA_URL
from exceptions import LLMFailure, LLMProviderError, LLMResponseError, LLMTimeoutError

logger = logging.getLogger(__name__)


MAX_TOKENS = 2000
SYSTEM_PROMPT = (
    "You are a clinical pharmacist specialising in biologic therapy cost optimisation. "
    "Respond only with a single JSON object matching this schema:\n{schema}"
)


def extract_json(raw_response: Optional[str]) -> Dict[str, Any]:
    """Strip markdown fences and surrounding chatter, then parse the JSON object"""
    if not raw_response or not raw_response.strip():
        raise LLMResponseError("Empty response from model")

    text = raw_response.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    json_match = re.search(r"\{.*\}", text, re.DOTALL)
    if json_match:
        text = json_match.group()

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        raise LLMResponseError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(result, dict):
        raise LLMResponseError("Model output is not a JSON object")
    return result


def _system_message(response_schema: Dict[str, Any]) -> Dict[str, str]:
    return {"role": "system", "content": SYSTEM_PROMPT.format(schema=json.dumps(response_schema))}


# ==================== GROQ ====================

class GroqLLMClient:

    def __init__(self, api_key: str, model: str, temperature: float = 0.3, client: Optional[Groq] = None):
        self.model = model
        self.temperature = temperature
        self.client = client or Groq(api_key=api_key, max_retries=0)

    def complete(self, prompt: str, response_schema: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        start_time = time.time()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[_system_message(response_schema), {"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=MAX_TOKENS,
                response_format={"type": "json_object"},
                timeout=timeout_ms / 1000,
            )
        except APITimeoutError as e:
            raise LLMTimeoutError(f"Groq request timed out after {timeout_ms}ms") from e
        except APIError as e:
            raise LLMProviderError(f"Groq API error: {e}") from e

        logger.info(f"✅ Groq response in {time.time() - start_time:.2f}s")
        return extract_json(response.choices[0].message.content)


# ==================== HUGGINGFACE ROUTER ====================

class HuggingFaceLLMClient:

    def __init__(self, token: str, model: str, api_url: str = HF_API_URL, temperature: float = 0.3):
        self.token = token
        self.model = model
        self.api_url = api_url
        self.temperature = temperature

    def complete(self, prompt: str, response_schema: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        start_time = time.time()
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        payload = {
            "model": self.model,
            "messages": [_system_message(response_schema), {"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": MAX_TOKENS,
            "stream": False,
        }

        try:
            response = requests.post(self.api_url, headers=headers, json=payload, timeout=timeout_ms / 1000)
        except requests.exceptions.Timeout as e:
            raise LLMTimeoutError(f"HuggingFace request timed out after {timeout_ms}ms") from e
        except requests.exceptions.RequestException as e:
            raise LLMProviderError(f"HuggingFace request failed: {e}") from e

        if response.status_code != 200:
            raise LLMProviderError(f"HuggingFace API error {response.status_code}: {response.text[:200]}")

        try:
            text = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMResponseError(f"Unexpected HuggingFace response shape: {e}") from e

        logger.info(f"✅ HuggingFace response in {time.time() - start_time:.2f}s")
        return extract_json(text)


# ==================== OLLAMA ====================

class OllamaLLMClient:

    def __init__(self, model: str, url: str = OLLAMA_URL, temperature: float = 0.3):
        self.model = model
        self.url = url
        self.temperature = temperature

    def complete(self, prompt: str, response_schema: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "system": SYSTEM_PROMPT.format(schema=json.dumps(response_schema)),
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.temperature},
        }
        try:
            response = requests.post(self.url, json=payload, timeout=timeout_ms / 1000)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise LLMTimeoutError(f"Ollama request timed out after {timeout_ms}ms") from e
        except requests.exceptions.RequestException as e:
            raise LLMProviderError(f"Ollama request failed: {e}") from e

        try:
            text = response.json()["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise LLMResponseError(f"Unexpected Ollama response shape: {e}") from e
        return extract_json(text)


def build_llm_client(settings: EngineSettings):
    """Client for the configured provider, or None when the LLM path is disabled"""
    if not settings.llm_enabled:
        return None
    if settings.llm_provider == "groq":
        return GroqLLMClient(settings.llm_api_key, settings.model_name, settings.llm_temperature)
    if settings.llm_provider == "huggingface":
        return HuggingFaceLLMClient(
            settings.llm_api_key, settings.model_name,
            api_url=settings.llm_base_url or HF_API_URL,
            temperature=settings.llm_temperature,
        )
    if settings.llm_provider == "ollama":
        return OllamaLLMClient(settings.model_name, url=settings.llm_base_url or OLLAMA_URL,
                               temperature=settings.llm_temperature)
    raise LLMFailure(f"Unsupported LLM provider: {settings.llm_provider}")

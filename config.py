"""
Engine configuration.

Settings are read from the process environment (and a .env file, via
python-dotenv) exactly once at start-up and injected into the orchestrator.
Nothing in the request path reads os.environ.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


DEFAULT_MODELS = {
    "groq": "llama-3.1-8b-instant",
    "huggingface": "meta-llama/Llama-3.2-3B-Instruct",
    "ollama": "llama3",
}

HF_API_URL = "https://router.huggingface.co/v1/chat/completions"
OLLAMA_URL = "http://localhost:11434/api/generate"

DEFAULT_REFERENCE_DATA = Path(__file__).resolve().parent / "data" / "reference_data.json"


@dataclass(frozen=True)
class EngineSettings:
    llm_provider: Optional[str] = None   # "groq" | "huggingface" | "ollama"
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    llm_base_url: Optional[str] = None
    llm_timeout_ms: int = 30000
    llm_temperature: float = 0.3
    reference_data_path: Path = DEFAULT_REFERENCE_DATA
    label_staleness_days: int = 90

    @property
    def llm_enabled(self) -> bool:
        """True only when a provider is selected and its credential/endpoint is present"""
        if self.llm_provider in ("groq", "huggingface"):
            return bool(self.llm_api_key)
        if self.llm_provider == "ollama":
            return bool(self.llm_base_url)
        return False

    @property
    def model_name(self) -> Optional[str]:
        return self.llm_model or DEFAULT_MODELS.get(self.llm_provider or "")

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        if dotenv:
            load_dotenv()

        provider = (os.getenv("LLM_PROVIDER") or "").strip().lower() or None
        if provider is None:
            # Infer from whichever credential is present
            if os.getenv("GROQ_API_KEY"):
                provider = "groq"
            elif os.getenv("HF_TOKEN"):
                provider = "huggingface"
            elif os.getenv("OLLAMA_URL"):
                provider = "ollama"
        elif provider not in DEFAULT_MODELS:
            logger.warning(f"⚠️  Unknown LLM_PROVIDER '{provider}', LLM path disabled")
            provider = None

        api_key = None
        base_url = None
        if provider == "groq":
            api_key = os.getenv("GROQ_API_KEY")
        elif provider == "huggingface":
            api_key = os.getenv("HF_TOKEN")
            base_url = HF_API_URL
        elif provider == "ollama":
            base_url = os.getenv("OLLAMA_URL", OLLAMA_URL)

        timeout_raw = os.getenv("LLM_TIMEOUT_MS", "30000")
        try:
            timeout_ms = int(timeout_raw)
        except ValueError:
            logger.warning(f"⚠️  Invalid LLM_TIMEOUT_MS '{timeout_raw}', using 30000")
            timeout_ms = 30000

        data_path = os.getenv("REFERENCE_DATA_PATH")

        settings = cls(
            llm_provider=provider,
            llm_api_key=api_key,
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_base_url=base_url,
            llm_timeout_ms=timeout_ms,
            reference_data_path=Path(data_path) if data_path else DEFAULT_REFERENCE_DATA,
        )

        if settings.llm_enabled:
            logger.info(f"🤖 LLM path enabled: {provider} ({settings.model_name})")
        else:
            logger.info("📏 No LLM configured, rule-based path only")
        return settings

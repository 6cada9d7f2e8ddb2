"""
Biologic Therapy Optimization API

Setup:
1. pip install -e .
2. Optional .env: LLM_PROVIDER=groq and GROQ_API_KEY=... (or HF_TOKEN / OLLAMA_URL)
3. Run: python main.py

Without LLM configuration every assessment runs on the rule-based engine.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from assessment_endpoint import assessment_router, configure
from config import EngineSettings
from orchestrator import RecommendationOrchestrator
from reference_data import load_reference_data

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(settings: EngineSettings = None) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    reference = load_reference_data(settings.reference_data_path)
    configure(RecommendationOrchestrator(reference, settings))

    app = FastAPI(title="Biologic Therapy Optimization Engine")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(assessment_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "llm_enabled": settings.llm_enabled}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

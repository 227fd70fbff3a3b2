"""Centralized configuration for the case QA engine."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

OUTPUTS_DIR = PROJECT_ROOT / "outputs"


def bootstrap_runtime_dirs() -> None:
    OUTPUTS_DIR.mkdir(parents=True, exist_ok=True)

# LLM provider configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "grok")
OFFLINE_MODE = os.getenv("OFFLINE_MODE", "0").strip().lower() in {"1", "true", "yes"}

GROK_API_KEY = os.getenv("GROK_API_KEY", "")
GROK_ENDPOINT = os.getenv(
    "GROK_ENDPOINT",
    "https://cmu-llm-api-resource.services.ai.azure.com/openai/v1/",
)
GROK_MODEL = os.getenv("GROK_MODEL", "grok-3")

AZURE_ENDPOINT = os.getenv("AZURE_ENDPOINT", "")
AZURE_API_KEY = os.getenv("AZURE_API_KEY", "")
AZURE_API_VERSION = os.getenv("AZURE_API_VERSION", "2024-12-01-preview")
AZURE_MODEL = os.getenv("AZURE_MODEL", "o4-mini")

# Generation and reliability
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.2"))
ANALYSIS_MAX_TOKENS = int(os.getenv("ANALYSIS_MAX_TOKENS", "8000"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "4"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))
LLM_MIN_CALL_INTERVAL_S = float(os.getenv("LLM_MIN_CALL_INTERVAL_S", "0.5"))

# Chunked analysis
MAX_BYTES_PER_CALL = int(os.getenv("MAX_BYTES_PER_CALL", "60000"))
MAX_PARALLEL_CALLS = int(os.getenv("MAX_PARALLEL_CALLS", "3"))
CHUNK_PROMPT_OVERHEAD_BYTES = int(os.getenv("CHUNK_PROMPT_OVERHEAD_BYTES", "1000"))
MIN_CHUNK_BYTES = int(os.getenv("MIN_CHUNK_BYTES", "5000"))
TEMPORAL_LEDGER_LIMIT = int(os.getenv("TEMPORAL_LEDGER_LIMIT", "50"))

# Analysis cache
CACHE_MAX_AGE_S = float(os.getenv("CACHE_MAX_AGE_S", "3600"))

# Case bundle layout
DOCUMENTS_KEY = "documents"
DOCUMENT_ID_FIELD = "docId"
DOCUMENT_TIMESTAMP_FIELDS = ("createdAt", "modifiedAt")
MEDIA_KEY = "media"
MEDIA_ID_FIELD = "evidenceId"
MEDIA_TIMESTAMP_FIELDS = ("collectedAt",)
CONTENT_FIELD = "content"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_DIFFICULTY = "Rookie"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

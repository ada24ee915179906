"""Centralized configuration for the manuscript structure checker."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

TEMP_DIR = Path(
    os.getenv("TEMP_FILE_PATH", str(Path(tempfile.gettempdir()) / "papercheck"))
).expanduser()
RULES_DIR = Path(os.getenv("RULES_DIR", str(PACKAGE_DIR / "data"))).expanduser()


def bootstrap_runtime_dirs() -> None:
    TEMP_DIR.mkdir(parents=True, exist_ok=True)


# LLM provider configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
OFFLINE_MODE = os.getenv("OFFLINE_MODE", "0").strip().lower() in {"1", "true", "yes"}

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "") or None
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")

AZURE_ENDPOINT = os.getenv("AZURE_ENDPOINT", "")
AZURE_API_KEY = os.getenv("AZURE_API_KEY", "")
AZURE_API_VERSION = os.getenv("AZURE_API_VERSION", "2024-12-01-preview")
AZURE_MODEL = os.getenv("AZURE_MODEL", "gpt-4o")

# Generation and reliability
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.2"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))
LLM_MIN_CALL_INTERVAL_S = float(os.getenv("LLM_MIN_CALL_INTERVAL_S", "0.0"))
LLM_REQUEST_TIMEOUT_S = float(os.getenv("LLM_REQUEST_TIMEOUT_S", "90"))

# Analysis pipeline
ANALYSIS_TIMEOUT_S = float(os.getenv("ANALYSIS_TIMEOUT_S", "180"))
PARAGRAPH_BATCH_SIZE = int(os.getenv("PARAGRAPH_BATCH_SIZE", "5"))
BATCH_MAX_CHARS = int(os.getenv("BATCH_MAX_CHARS", "12000"))
EVAL_CONCURRENCY = int(os.getenv("EVAL_CONCURRENCY", "3"))
DIGEST_MAX_CHARS = int(os.getenv("DIGEST_MAX_CHARS", "16000"))
MIN_EVALUATED_PARAGRAPHS = int(os.getenv("MIN_EVALUATED_PARAGRAPHS", "5"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "2"))

# Intake policy
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "15"))
MAX_CHAR_COUNT = int(os.getenv("MAX_CHAR_COUNT", "100000"))

# Artifacts and HTTP surface
ARTIFACT_TTL_S = float(os.getenv("ARTIFACT_TTL_S", str(24 * 60 * 60)))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
CORS_ALLOW_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()
]
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


def configure_logging(level: str | int | None = None) -> None:
    """Root logging for entry points; library modules only create loggers."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level or os.getenv("LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    # Keep HTTP client chatter at WARNING and above.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

import json
import os

from dotenv import load_dotenv

load_dotenv(os.getenv("ENV_FILE"), override=True)

# General
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

# Model invocation
LLM_MODEL = os.getenv("LLM_MODEL", "claude-sonnet-4-20250514")
EXPANSION_MODEL = os.getenv("EXPANSION_MODEL", "gpt-5")
AUDIT_MODEL = os.getenv("AUDIT_MODEL", LLM_MODEL)
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
# Creative generation is slow, keep the per-call timeout generous
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "1.0"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "8192"))
OUTLINE_MAX_TOKENS = int(os.getenv("OUTLINE_MAX_TOKENS", "16384"))
EXPANSION_MAX_TOKENS = int(os.getenv("EXPANSION_MAX_TOKENS", "16384"))

# Retry schedule (seconds)
RETRY_DELAYS = json.loads(os.getenv("RETRY_DELAYS", "[2, 4, 8]"))
RATE_LIMIT_DELAY = float(os.getenv("RATE_LIMIT_DELAY", "60"))

# Chapter sub-pipeline
CHAPTER_COUNTS = {
    "novella": 12,
    "novel": 35,
}
CHAPTER_DETAIL_MAX_ATTEMPTS = int(os.getenv("CHAPTER_DETAIL_MAX_ATTEMPTS", "2"))

# Concept expansion
CONCEPT_DETAILED_WORD_COUNT = 20

# Diagnostics
RAW_EXCERPT_LENGTH = 500

ENABLE_LANGFUSE = os.getenv("ENABLE_LANGFUSE", "false").lower() in ("1", "true", "yes")

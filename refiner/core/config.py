"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    MAX_REFINEMENT_ATTEMPTS     - Circuit breaker attempt ceiling (default: 3)
    SAME_ERROR_THRESHOLD        - Repeats of one fingerprint that open the breaker (default: 2)
    OSCILLATION_WINDOW          - Fingerprint window inspected for A/B alternation (default: 4)
    REFINEMENT_TIMEOUT_SECONDS  - Wall-clock ceiling for one session (default: 300)
    REFINEMENT_DELAY_SECONDS    - Fixed pause between attempts (default: 1.0)
    MAX_TOKEN_BUDGET            - Breaker token budget per session (default: 50000)
    SESSION_TOKEN_LIMIT         - Cost tracker session ceiling (default: 100000)
    TOTAL_TOKEN_LIMIT           - Cost tracker process-wide ceiling (default: 1000000)
    LESSON_STORE_PATH           - JSON file backing the LessonStore
    ARTIFACTS_DIR               - Root for persisted samples and session reports
    PLAYWRIGHT_DOCKER_IMAGE     - Image used by the sandboxed test runner
    PLAYWRIGHT_TIMEOUT_SECONDS  - Max seconds for one test run inside the container
    GROQ_API_KEY / GEMINI_API_KEY / OPENROUTER_API_KEY - LLM fix oracle providers
    CORS_ORIGINS                - Comma-separated origins allowed by the API (default: local dev UIs)

Budget Philosophy:
    The breaker budget (MAX_TOKEN_BUDGET) bounds one repair session. The cost
    tracker limits bound spend across sessions and are checked before every
    oracle call, so a session can stop on COST_LIMIT before the breaker trips.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Circuit breaker
MAX_REFINEMENT_ATTEMPTS = int(os.getenv("MAX_REFINEMENT_ATTEMPTS", 3))
SAME_ERROR_THRESHOLD = int(os.getenv("SAME_ERROR_THRESHOLD", 2))
OSCILLATION_WINDOW = int(os.getenv("OSCILLATION_WINDOW", 4))
REFINEMENT_TIMEOUT_SECONDS = float(os.getenv("REFINEMENT_TIMEOUT_SECONDS", 300))
MAX_TOKEN_BUDGET = int(os.getenv("MAX_TOKEN_BUDGET", 50000))

# Loop pacing
REFINEMENT_DELAY_SECONDS = float(os.getenv("REFINEMENT_DELAY_SECONDS", 1.0))

# Cost tracking
SESSION_TOKEN_LIMIT = int(os.getenv("SESSION_TOKEN_LIMIT", 100000))
TOTAL_TOKEN_LIMIT = int(os.getenv("TOTAL_TOKEN_LIMIT", 1000000))

# Persistence
LESSON_STORE_PATH = os.getenv("LESSON_STORE_PATH", os.path.join(".refiner", "refinement-lessons.json"))
ARTIFACTS_DIR = os.getenv("ARTIFACTS_DIR", os.path.join(".refiner", "artifacts"))

# Test runner sandbox
PLAYWRIGHT_DOCKER_IMAGE = os.getenv("PLAYWRIGHT_DOCKER_IMAGE", "mcr.microsoft.com/playwright:v1.48.0-jammy")
PLAYWRIGHT_TIMEOUT_SECONDS = int(os.getenv("PLAYWRIGHT_TIMEOUT_SECONDS", 120))

# LLM providers
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")

# Provider health cooldown
PROVIDER_COOLDOWN_THRESHOLD = int(os.getenv("PROVIDER_COOLDOWN_THRESHOLD", 4))
PROVIDER_COOLDOWN_SKIP_COUNT = int(os.getenv("PROVIDER_COOLDOWN_SKIP_COUNT", 5))

# HTTP API
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8000"
    ).split(",")
    if origin.strip()
]

import time
import logging

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from refiner.api.lessons import router as lessons_router
from refiner.api.scoring import router as scoring_router
from refiner.core.config import CORS_ORIGINS, LESSON_STORE_PATH, MAX_REFINEMENT_ATTEMPTS
from refiner.llm.router import LLMRouter
from refiner.utils.logging_config import setup_logging

setup_logging(level=logging.INFO)
logger = logging.getLogger("main")

app = FastAPI(
    title="Playwright Test Refinement API",
    description="Confidence scoring, failure classification and lesson store maintenance",
    version="0.1.0",
)


# ---------------------------------------------------------------------------
# Request Timing Middleware
# ---------------------------------------------------------------------------
class RequestTimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("%s %s failed: %s", request.method, request.url.path, e)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
        logger.info("%s %s -> %d (%.2fms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response


app.add_middleware(RequestTimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "llm_providers": [p.name for p in LLMRouter().providers],
        "lesson_store": LESSON_STORE_PATH,
        "max_refinement_attempts": MAX_REFINEMENT_ATTEMPTS,
    }


app.include_router(scoring_router)
app.include_router(lessons_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)

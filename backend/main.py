import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from api.dependencies import get_orchestrator
from api.routes import ai, intent, models, privacy

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting FloatPaste API")

    if settings.default_provider.value == "cloud" and not settings.openai_api_key:
        logger.warning(
            "Default provider is cloud but OPENAI_API_KEY is not set. "
            "Requests without an explicit config will fail."
        )

    yield
    await get_orchestrator().aclose()
    logger.info("Shutting down FloatPaste API")


app = FastAPI(
    title="FloatPaste",
    description="Clipboard AI assistant with a local PII privacy shield",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)

app.include_router(privacy.router, prefix="/api/privacy", tags=["privacy"])
app.include_router(ai.router, prefix="/api/ai", tags=["ai"])
app.include_router(models.router, prefix="/api/models", tags=["models"])
app.include_router(intent.router, prefix="/api/intent", tags=["intent"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}

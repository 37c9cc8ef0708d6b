import logging
import os
from pathlib import Path
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import get_settings
from backend.database import init_db, set_db_path
from backend.responses import register_exception_handlers
from backend.routers import health, conversations, chat, prompts
from backend.services.conversation_service import ConversationService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    # Ensure data directory exists
    db_path = Path(settings.database_url)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    set_db_path(settings.database_url)
    await init_db()
    removed = await ConversationService().sweep_orphans()
    logger.info("Promptly backend started (orphan sweep: %s)", removed)

    yield

    logger.info("Promptly backend shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Promptly API",
        description="Conversation lifecycle, usage analytics and prompt generation",
        version="0.1.0",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(conversations.router)
    app.include_router(prompts.router)
    app.include_router(chat.router)

    origins = [
        "http://localhost:8501",
        "http://127.0.0.1:8501",
    ]
    extra_origins = get_settings().allowed_origins or os.environ.get("ALLOWED_ORIGINS", "")
    if extra_origins:
        origins.extend(
            o.strip()
            for o in extra_origins.split(",")
            if o.strip()
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()


@app.get("/")
async def read_root():
    return {
        "status": "ok",
        "message": "Promptly backend is running",
        "docs": "/docs",
    }

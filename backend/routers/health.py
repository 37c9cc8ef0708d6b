import logging

import aiosqlite
from fastapi import APIRouter

from backend.models.schemas import HealthResponse
from backend.database import get_db
from backend.responses import success_response

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Return service health.  If the DB isn't ready yet (before the
    lifespan has created the schema) report status="starting" with a 200."""
    try:
        async with get_db() as db:
            convos = await db.execute("SELECT COUNT(*) FROM conversations")
            conv_count = (await convos.fetchone())[0]
            msgs = await db.execute("SELECT COUNT(*) FROM messages")
            msg_count = (await msgs.fetchone())[0]
        health = HealthResponse(
            status="healthy",
            conversation_count=conv_count,
            message_count=msg_count,
        )
    except aiosqlite.Error as exc:
        logger.warning("Health check: DB not ready yet (%s)", exc)
        health = HealthResponse(status="starting")
    return success_response(health.model_dump())

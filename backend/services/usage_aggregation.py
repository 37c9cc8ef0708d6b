import logging

from backend.database import get_db
from backend.errors import NotFoundError
from backend.models.database_models import load_json
from backend.models.schemas import (
    ConversationAnalytics,
    CostPoint,
    TagCount,
    TokenPoint,
    UserStats,
)

logger = logging.getLogger(__name__)

DEFAULT_TAG_LIMIT = 20


def _average(total: float, count: int) -> float:
    return total / count if count else 0.0


def rank_tags(tag_lists, limit: int | None = DEFAULT_TAG_LIMIT) -> list[TagCount]:
    """Count tags across conversations, most used first, ties in first-seen order."""
    counts: dict[str, int] = {}
    for tags in tag_lists:
        for tag in tags or []:
            counts[tag] = counts.get(tag, 0) + 1
    # sorted() is stable, and dict order is first-seen order
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    if limit is not None:
        ranked = ranked[:limit]
    return [TagCount(tag=tag, count=count) for tag, count in ranked]


class UsageAggregator:
    """Read-only rollups recomputed from message rows on every call."""

    async def per_conversation(self, conversation_id: str, user_id: str) -> ConversationAnalytics:
        async with get_db() as db:
            cursor = await db.execute(
                "SELECT id FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            if not await cursor.fetchone():
                raise NotFoundError("Conversation not found", details={"id": conversation_id})
            cursor = await db.execute(
                """SELECT role, tokens_used, cost, created_at FROM messages
                   WHERE conversation_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (conversation_id,),
            )
            rows = await cursor.fetchall()

        total_tokens = sum(row["tokens_used"] or 0 for row in rows)
        total_cost = sum(row["cost"] or 0.0 for row in rows)
        count = len(rows)
        return ConversationAnalytics(
            total_tokens=total_tokens,
            total_cost=round(total_cost, 8),
            message_count=count,
            user_messages=sum(1 for row in rows if row["role"] == "user"),
            assistant_messages=sum(1 for row in rows if row["role"] == "assistant"),
            average_tokens_per_message=_average(total_tokens, count),
            average_cost_per_message=round(_average(total_cost, count), 8),
            tokens_over_time=[
                TokenPoint(date=row["created_at"], role=row["role"], tokens=row["tokens_used"] or 0)
                for row in rows
            ],
            cost_over_time=[
                CostPoint(date=row["created_at"], role=row["role"], cost=row["cost"] or 0.0)
                for row in rows
            ],
        )

    async def per_user(self, user_id: str) -> UserStats:
        async with get_db() as db:
            cursor = await db.execute(
                """SELECT is_starred, is_archived, tags FROM conversations
                   WHERE user_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (user_id,),
            )
            conversations = await cursor.fetchall()
            cursor = await db.execute(
                """SELECT
                       COUNT(m.id) AS total_messages,
                       COALESCE(SUM(m.tokens_used), 0) AS total_tokens,
                       COALESCE(SUM(m.cost), 0.0) AS total_cost,
                       COALESCE(SUM(CASE WHEN m.role = 'user' THEN 1 ELSE 0 END), 0)
                           AS user_messages,
                       COALESCE(SUM(CASE WHEN m.role = 'assistant' THEN 1 ELSE 0 END), 0)
                           AS assistant_messages
                   FROM messages m
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE c.user_id = ?""",
                (user_id,),
            )
            totals = await cursor.fetchone()

        total_conversations = len(conversations)
        total_messages = totals["total_messages"]
        total_tokens = totals["total_tokens"]
        total_cost = totals["total_cost"]
        return UserStats(
            total_conversations=total_conversations,
            total_messages=total_messages,
            total_tokens=total_tokens,
            total_cost=round(total_cost, 8),
            starred_conversations=sum(1 for row in conversations if row["is_starred"]),
            archived_conversations=sum(1 for row in conversations if row["is_archived"]),
            user_messages=totals["user_messages"],
            assistant_messages=totals["assistant_messages"],
            average_messages_per_conversation=_average(total_messages, total_conversations),
            average_tokens_per_conversation=_average(total_tokens, total_conversations),
            average_cost_per_conversation=round(_average(total_cost, total_conversations), 8),
            most_used_tags=rank_tags(load_json(row["tags"], []) for row in conversations),
        )

    async def popular_tags(self, user_id: str, limit: int = DEFAULT_TAG_LIMIT) -> list[TagCount]:
        async with get_db() as db:
            cursor = await db.execute(
                """SELECT tags FROM conversations WHERE user_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return rank_tags((load_json(row["tags"], []) for row in rows), limit=limit)

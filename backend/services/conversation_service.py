import json
import logging
import uuid
from dataclasses import asdict
from typing import Any, Iterable, Optional

import aiosqlite

from backend.database import get_db, utc_now
from backend.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from backend.models.database_models import Conversation, Message, PromptResult

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
MAX_TITLE_LENGTH = 255
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
MAX_CONTENT_LENGTH = 50_000
MESSAGE_ROLES = ("user", "assistant")
AUTO_TITLE_LENGTH = 50

_JSON_COLUMNS = {"tags", "metadata"}
_BOOL_COLUMNS = {"is_starred", "is_archived"}


# --- Validation ---

def validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required", details={"field": "title"})
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title must be {MAX_TITLE_LENGTH} characters or less",
            details={"field": "title", "length": len(title)},
        )
    return title


def _check_tag(tag: Any):
    if not isinstance(tag, str) or not tag.strip() or len(tag) > MAX_TAG_LENGTH:
        raise ValidationError(
            f"All tags must be non-empty strings with maximum {MAX_TAG_LENGTH} characters",
            details={"tag": tag},
        )


def _as_tag_list(tags: Any) -> list:
    if isinstance(tags, (set, frozenset)):
        return sorted(tags, key=str)
    if isinstance(tags, (list, tuple)):
        return list(tags)
    raise ValidationError("tags must be an array of strings")


def dedupe_tags(tags: Iterable[str]) -> list[str]:
    """Order-preserving, case-sensitive de-duplication."""
    return list(dict.fromkeys(tags))


def validate_tags(tags: Any) -> list[str]:
    tag_list = _as_tag_list(tags)
    for tag in tag_list:
        _check_tag(tag)
    unique = dedupe_tags(tag_list)
    if len(unique) > MAX_TAGS:
        raise ValidationError(
            f"Maximum {MAX_TAGS} tags allowed per conversation",
            details={"count": len(unique)},
        )
    return unique


def validate_message(role: Any, content: Any, tokens_used: Any = 0, cost: Any = 0.0):
    if role not in MESSAGE_ROLES:
        raise ValidationError(
            'role must be either "user" or "assistant"', details={"field": "role"}
        )
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required", details={"field": "content"})
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            "Content must be 50,000 characters or less",
            details={"field": "content", "length": len(content)},
        )
    if isinstance(tokens_used, bool) or not isinstance(tokens_used, int) or tokens_used < 0:
        raise ValidationError(
            "tokensUsed must be a non-negative integer", details={"field": "tokensUsed"}
        )
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0:
        raise ValidationError(
            "cost must be a non-negative number", details={"field": "cost"}
        )


def _check_flag(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean value", details={"field": name})
    return value


def generate_conversation_title(messages: Iterable) -> Optional[str]:
    """Title from the first user message: 50 chars, trimmed, '...' if cut."""
    for msg in messages:
        role = msg["role"] if isinstance(msg, dict) else msg.role
        if role != "user":
            continue
        content = msg["content"] if isinstance(msg, dict) else msg.content
        title = content[:AUTO_TITLE_LENGTH].strip()
        if not title:
            return None
        if len(content) > AUTO_TITLE_LENGTH:
            title = f"{title}..."
        return title
    return None


class ConversationService:
    """Conversation lifecycle. Every query on a conversation filters by (id, owner)."""

    # --- Conversations ---

    async def create_conversation(
        self,
        user_id: str,
        title: str = DEFAULT_TITLE,
        category: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        if not user_id:
            raise ValidationError("userId is required", details={"field": "userId"})
        validate_title(title)
        conv_id = str(uuid.uuid4())
        now = utc_now()
        async with get_db() as db:
            await db.execute(
                """INSERT INTO conversations
                   (id, user_id, title, category, metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conv_id, user_id, title, category, json.dumps(metadata or {}), now, now),
            )
            await db.commit()
            conversation = await self._fetch_conversation(db, conv_id, user_id)
        logger.info("Created conversation %s for user %s", conv_id, user_id)
        return conversation

    async def list_conversations(self, user_id: str) -> list[dict]:
        async with get_db() as db:
            cursor = await db.execute(
                """SELECT c.*,
                          COUNT(m.id) AS message_count,
                          (SELECT lm.content FROM messages lm
                            WHERE lm.conversation_id = c.id
                            ORDER BY lm.created_at DESC, lm.rowid DESC LIMIT 1)
                            AS last_message_content,
                          (SELECT lm.role FROM messages lm
                            WHERE lm.conversation_id = c.id
                            ORDER BY lm.created_at DESC, lm.rowid DESC LIMIT 1)
                            AS last_message_role
                   FROM conversations c
                   LEFT JOIN messages m ON m.conversation_id = c.id
                   WHERE c.user_id = ?
                   GROUP BY c.id
                   ORDER BY c.updated_at DESC, c.id ASC""",
                (user_id,),
            )
            rows = await cursor.fetchall()
        conversations = []
        for row in rows:
            conv = asdict(Conversation.from_row(row))
            conv["message_count"] = row["message_count"]
            conv["last_message_content"] = row["last_message_content"]
            conv["last_message_role"] = row["last_message_role"]
            conversations.append(conv)
        return conversations

    async def get_conversation(self, conversation_id: str, user_id: str) -> dict | None:
        async with get_db() as db:
            return await self._fetch_conversation(db, conversation_id, user_id)

    async def get_conversation_with_messages(self, conversation_id: str, user_id: str) -> dict:
        async with get_db() as db:
            conversation = await self._require_conversation(db, conversation_id, user_id)
            conversation["messages"] = await self._fetch_messages(db, conversation_id)
        return conversation

    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        title: Optional[str] = None,
        is_starred: Optional[bool] = None,
        is_archived: Optional[bool] = None,
    ) -> dict:
        fields = {}
        if title is not None:
            fields["title"] = validate_title(title)
        if is_starred is not None:
            fields["is_starred"] = _check_flag("is_starred", is_starred)
        if is_archived is not None:
            fields["is_archived"] = _check_flag("is_archived", is_archived)
        return await self._update_fields(conversation_id, user_id, fields)

    async def rename_conversation(self, conversation_id: str, user_id: str, title: str) -> dict:
        return await self._update_fields(
            conversation_id, user_id, {"title": validate_title(title)}
        )

    async def set_starred(self, conversation_id: str, user_id: str, value: bool) -> dict:
        return await self._update_fields(
            conversation_id, user_id, {"is_starred": _check_flag("isStarred", value)}
        )

    async def set_archived(self, conversation_id: str, user_id: str, value: bool) -> dict:
        return await self._update_fields(
            conversation_id, user_id, {"is_archived": _check_flag("isArchived", value)}
        )

    async def update_metadata(self, conversation_id: str, user_id: str, metadata: dict) -> dict:
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", details={"field": "metadata"})
        return await self._update_fields(conversation_id, user_id, {"metadata": metadata})

    async def set_tags(self, conversation_id: str, user_id: str, tags) -> dict:
        tags = validate_tags(tags)
        conversation = await self._update_fields(conversation_id, user_id, {"tags": tags})
        logger.info("Replaced tags on conversation %s (%d tags)", conversation_id, len(tags))
        return conversation

    async def add_tags(self, conversation_id: str, user_id: str, new_tags) -> dict:
        """Union with the current tags, then check the cap against the merged set."""
        tag_list = _as_tag_list(new_tags)
        if not tag_list:
            raise ValidationError("tags must be a non-empty array of strings")
        for tag in tag_list:
            _check_tag(tag)

        async with get_db() as db:
            current = await self._require_conversation(db, conversation_id, user_id)

        merged = dedupe_tags([*current["tags"], *tag_list])
        if len(merged) > MAX_TAGS:
            raise ConflictError(
                f"Maximum {MAX_TAGS} tags allowed per conversation",
                code="TAG_LIMIT_EXCEEDED",
                details={"current": len(current["tags"]), "merged": len(merged)},
            )
        return await self.set_tags(conversation_id, user_id, merged)

    async def delete_conversation(self, conversation_id: str, user_id: str):
        """Remove messages, then prompt results, then the row, in one transaction."""
        async with get_db() as db:
            await self._require_conversation(db, conversation_id, user_id)
            try:
                await db.execute(
                    "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
                )
                await db.execute(
                    "DELETE FROM prompt_results WHERE conversation_id = ?", (conversation_id,)
                )
                cursor = await db.execute(
                    "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                    (conversation_id, user_id),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    raise NotFoundError("Conversation not found")
                await db.commit()
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.exception("Cascading delete failed for %s", conversation_id)
                raise DependencyError(
                    "Failed to delete conversation", details=str(exc)
                ) from exc
        logger.info("Deleted conversation %s", conversation_id)

    # --- Messages ---

    async def get_conversation_messages(
        self, conversation_id: str, user_id: Optional[str] = None
    ) -> list[dict]:
        async with get_db() as db:
            if user_id is None:
                return await self._fetch_messages(db, conversation_id)
            cursor = await db.execute(
                """SELECT m.* FROM messages m
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE m.conversation_id = ? AND c.user_id = ?
                   ORDER BY m.created_at ASC, m.rowid ASC""",
                (conversation_id, user_id),
            )
            rows = await cursor.fetchall()
            return [asdict(Message.from_row(row)) for row in rows]

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: float = 0.0,
        user_id: Optional[str] = None,
    ) -> dict:
        validate_message(role, content, tokens_used, cost)
        async with get_db() as db:
            conversation = await self._conversation_for_append(db, conversation_id, user_id)
            try:
                message = await self._insert_message(
                    db, conversation_id, role, content, tokens_used, cost
                )
                if role == "user":
                    await self._auto_title(db, conversation)
                await db.commit()
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.exception("Failed to append message to %s", conversation_id)
                raise DependencyError("Failed to save message", details=str(exc)) from exc
        return message

    async def append_exchange(
        self,
        conversation_id: str,
        user_id: str,
        user_content: str,
        assistant_content: str,
        tokens_used: int = 0,
        cost: float = 0.0,
    ) -> tuple[dict, dict, dict]:
        """Persist a user turn and its assistant reply atomically."""
        validate_message("user", user_content)
        validate_message("assistant", assistant_content, tokens_used, cost)
        async with get_db() as db:
            conversation = await self._conversation_for_append(db, conversation_id, user_id)
            try:
                user_message = await self._insert_message(
                    db, conversation_id, "user", user_content, 0, 0.0
                )
                assistant_message = await self._insert_message(
                    db, conversation_id, "assistant", assistant_content, tokens_used, cost
                )
                await self._auto_title(db, conversation)
                await db.commit()
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.exception("Failed to persist exchange for %s", conversation_id)
                raise DependencyError("Failed to save messages", details=str(exc)) from exc
            updated = await self._fetch_conversation(db, conversation_id, user_id)
        return user_message, assistant_message, updated

    async def update_message(
        self,
        conversation_id: str,
        message_id: str,
        user_id: str,
        content: Optional[str] = None,
        is_starred: Optional[bool] = None,
    ) -> dict:
        """Content edits and the star flag are the only mutable message fields."""
        fields = {}
        if content is not None:
            if not isinstance(content, str) or not content.strip():
                raise ValidationError("content is required", details={"field": "content"})
            if len(content) > MAX_CONTENT_LENGTH:
                raise ValidationError("Content must be 50,000 characters or less")
            fields["content"] = content
        if is_starred is not None:
            fields["is_starred"] = int(_check_flag("isStarred", is_starred))

        async with get_db() as db:
            if fields:
                assignments = ", ".join(f"{col} = ?" for col in fields)
                cursor = await db.execute(
                    f"""UPDATE messages SET {assignments}
                        WHERE id = ? AND conversation_id = ?
                          AND conversation_id IN
                              (SELECT id FROM conversations WHERE id = ? AND user_id = ?)""",
                    (*fields.values(), message_id, conversation_id, conversation_id, user_id),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    raise NotFoundError("Message not found")
            cursor = await db.execute(
                """SELECT m.* FROM messages m
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE m.id = ? AND m.conversation_id = ? AND c.user_id = ?""",
                (message_id, conversation_id, user_id),
            )
            row = await cursor.fetchone()
        if not row:
            raise NotFoundError("Message not found")
        return asdict(Message.from_row(row))

    # --- Prompt results ---

    async def save_prompt_result(
        self,
        conversation_id: str,
        user_id: str,
        generated_prompt: str,
        metadata: Optional[dict] = None,
    ) -> dict:
        result_id = str(uuid.uuid4())
        async with get_db() as db:
            await self._require_conversation(db, conversation_id, user_id)
            await db.execute(
                """INSERT INTO prompt_results
                   (id, conversation_id, generated_prompt, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (result_id, conversation_id, generated_prompt,
                 json.dumps(metadata or {}), utc_now()),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM prompt_results WHERE id = ?", (result_id,)
            )
            row = await cursor.fetchone()
        return asdict(PromptResult.from_row(row))

    async def list_prompt_results(self, conversation_id: str, user_id: str) -> list[dict]:
        async with get_db() as db:
            await self._require_conversation(db, conversation_id, user_id)
            cursor = await db.execute(
                """SELECT * FROM prompt_results WHERE conversation_id = ?
                   ORDER BY created_at DESC, rowid DESC""",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [asdict(PromptResult.from_row(row)) for row in rows]

    # --- Maintenance ---

    async def sweep_orphans(self) -> dict:
        """Delete children whose parent conversation no longer exists."""
        async with get_db() as db:
            messages = await db.execute(
                "DELETE FROM messages WHERE conversation_id NOT IN (SELECT id FROM conversations)"
            )
            prompts = await db.execute(
                "DELETE FROM prompt_results WHERE conversation_id NOT IN (SELECT id FROM conversations)"
            )
            await db.commit()
        removed = {"messages": messages.rowcount, "prompt_results": prompts.rowcount}
        if removed["messages"] or removed["prompt_results"]:
            logger.warning("Removed orphaned rows: %s", removed)
        return removed

    # --- Internals ---

    async def _fetch_conversation(self, db, conversation_id: str, user_id: str) -> dict | None:
        cursor = await db.execute(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        row = await cursor.fetchone()
        return asdict(Conversation.from_row(row)) if row else None

    async def _require_conversation(self, db, conversation_id: str, user_id: str) -> dict:
        conversation = await self._fetch_conversation(db, conversation_id, user_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", details={"id": conversation_id})
        return conversation

    async def _conversation_for_append(
        self, db, conversation_id: str, user_id: Optional[str]
    ) -> dict:
        if user_id is not None:
            return await self._require_conversation(db, conversation_id, user_id)
        cursor = await db.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        if not row:
            raise NotFoundError("Conversation not found", details={"id": conversation_id})
        return asdict(Conversation.from_row(row))

    async def _fetch_messages(self, db, conversation_id: str) -> list[dict]:
        cursor = await db.execute(
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY created_at ASC, rowid ASC""",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [asdict(Message.from_row(row)) for row in rows]

    async def _insert_message(
        self, db, conversation_id: str, role: str, content: str,
        tokens_used: int, cost: float,
    ) -> dict:
        msg_id = str(uuid.uuid4())
        now = utc_now()
        await db.execute(
            """INSERT INTO messages
               (id, conversation_id, role, content, tokens_used, cost, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (msg_id, conversation_id, role, content, tokens_used, cost, now),
        )
        await db.execute(
            "UPDATE conversations SET updated_at = ?, last_message_at = ? WHERE id = ?",
            (now, now, conversation_id),
        )
        return asdict(Message(
            id=msg_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            tokens_used=tokens_used,
            cost=cost,
            created_at=now,
        ))

    async def _auto_title(self, db, conversation: dict):
        if conversation["title"] and conversation["title"] != DEFAULT_TITLE:
            return
        messages = await self._fetch_messages(db, conversation["id"])
        title = generate_conversation_title(messages)
        if not title:
            return
        # The title guard keeps a rename that landed meanwhile.
        await db.execute(
            "UPDATE conversations SET title = ? WHERE id = ? AND title = ?",
            (title, conversation["id"], conversation["title"]),
        )
        conversation["title"] = title

    async def _update_fields(self, conversation_id: str, user_id: str, fields: dict) -> dict:
        async with get_db() as db:
            if not fields:
                return await self._require_conversation(db, conversation_id, user_id)
            values = dict(fields, updated_at=utc_now())
            assignments = ", ".join(f"{col} = ?" for col in values)
            params = [self._encode(col, value) for col, value in values.items()]
            cursor = await db.execute(
                f"UPDATE conversations SET {assignments} WHERE id = ? AND user_id = ?",
                (*params, conversation_id, user_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Conversation not found", details={"id": conversation_id})
            return await self._fetch_conversation(db, conversation_id, user_id)

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS:
            return json.dumps(value)
        if column in _BOOL_COLUMNS:
            return int(value)
        return value

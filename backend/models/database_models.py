import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


def load_json(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str
    category: Optional[str] = None
    is_starred: bool = False
    is_archived: bool = False
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_message_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping) -> "Conversation":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            category=row["category"],
            is_starred=bool(row["is_starred"]),
            is_archived=bool(row["is_archived"]),
            tags=load_json(row["tags"], []),
            metadata=load_json(row["metadata"], {}),
            last_message_at=row["last_message_at"],
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    tokens_used: int = 0
    cost: float = 0.0
    is_starred: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping) -> "Message":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            tokens_used=row["tokens_used"] or 0,
            cost=row["cost"] or 0.0,
            is_starred=bool(row["is_starred"]),
            created_at=row["created_at"],
        )


@dataclass
class PromptResult:
    id: str
    conversation_id: str
    generated_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping) -> "PromptResult":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            generated_prompt=row["generated_prompt"],
            metadata=load_json(row["metadata"], {}),
            created_at=row["created_at"],
        )

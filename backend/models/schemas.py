from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    """Bodies accept both the camelCase wire names and snake_case."""

    model_config = ConfigDict(populate_by_name=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Conversations ---
class ConversationCreate(RequestModel):
    title: str = "New Conversation"
    user_id: Optional[str] = Field(default=None, alias="userId")
    category: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ConversationUpdate(RequestModel):
    title: Optional[str] = None
    is_starred: Optional[StrictBool] = Field(default=None, alias="isStarred")
    is_archived: Optional[StrictBool] = Field(default=None, alias="isArchived")


class StarRequest(RequestModel):
    is_starred: StrictBool = Field(..., alias="isStarred")


class ArchiveRequest(RequestModel):
    is_archived: StrictBool = Field(..., alias="isArchived")


class TagsRequest(RequestModel):
    tags: list[Any]


class MetadataRequest(RequestModel):
    metadata: dict[str, Any]


# --- Messages ---
class MessageCreate(RequestModel):
    role: str
    content: str
    tokens_used: int = Field(default=0, alias="tokensUsed")
    cost: float = 0.0


class MessageUpdate(RequestModel):
    content: Optional[str] = None
    is_starred: Optional[StrictBool] = Field(default=None, alias="isStarred")


# --- Generation ---
class ChatRequest(RequestModel):
    conversation_id: str = Field(..., alias="conversationId")
    content: str
    model_id: Optional[str] = Field(default=None, alias="modelId")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class PromptGenerateRequest(RequestModel):
    model_id: Optional[str] = Field(default=None, alias="modelId")


# --- Usage ---
class UsagePoint(CamelModel):
    date: str
    role: str


class TokenPoint(UsagePoint):
    tokens: int = 0


class CostPoint(UsagePoint):
    cost: float = 0.0


class ConversationAnalytics(CamelModel):
    total_tokens: int = 0
    total_cost: float = 0.0
    message_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    average_tokens_per_message: float = 0.0
    average_cost_per_message: float = 0.0
    tokens_over_time: list[TokenPoint] = []
    cost_over_time: list[CostPoint] = []


class TagCount(CamelModel):
    tag: str
    count: int


class UserStats(CamelModel):
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    starred_conversations: int = 0
    archived_conversations: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    average_messages_per_conversation: float = 0.0
    average_tokens_per_conversation: float = 0.0
    average_cost_per_conversation: float = 0.0
    most_used_tags: list[TagCount] = []


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str = "0.1.0"
    conversation_count: int = 0
    message_count: int = 0

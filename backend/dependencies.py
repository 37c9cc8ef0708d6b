from typing import Optional

from fastapi import Header, Query

from backend.config import get_settings
from backend.errors import AuthError, ValidationError
from backend.services.conversation_service import ConversationService
from backend.services.usage_aggregation import UsageAggregator


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
    user_id: Optional[str] = Query(default=None, alias="userId"),
) -> str:
    """Resolve the caller: X-User-Id header first, then the userId query param."""
    resolved = (x_user_id or user_id or "").strip()
    if not resolved:
        raise AuthError("Authentication required")
    return resolved


def require_user_param(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    resolved = (user_id or x_user_id or "").strip()
    if not resolved:
        raise ValidationError("userId is required", details={"field": "userId"})
    return resolved


def get_conversation_service() -> ConversationService:
    return ConversationService()


def get_usage_aggregator() -> UsageAggregator:
    return UsageAggregator()


def get_generation_service():
    from backend.services.generation_service import GenerationService
    return GenerationService(get_settings())

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from backend.dependencies import (
    get_conversation_service,
    get_current_user_id,
    get_usage_aggregator,
    require_user_param,
)
from backend.errors import ValidationError
from backend.models.schemas import (
    ArchiveRequest,
    ConversationCreate,
    ConversationUpdate,
    MessageCreate,
    MessageUpdate,
    MetadataRequest,
    StarRequest,
    TagsRequest,
)
from backend.responses import success_response
from backend.services.conversation_service import ConversationService
from backend.services.usage_aggregation import DEFAULT_TAG_LIMIT, UsageAggregator

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(
    user_id: str = Depends(require_user_param),
    service: ConversationService = Depends(get_conversation_service),
):
    convos = await service.list_conversations(user_id)
    return success_response(convos, meta={"count": len(convos)})


@router.post("", status_code=201)
async def create_conversation(
    body: ConversationCreate,
    x_user_id: Optional[str] = Header(default=None),
    service: ConversationService = Depends(get_conversation_service),
):
    user_id = (body.user_id or x_user_id or "").strip()
    if not user_id:
        raise ValidationError("userId is required", details={"field": "userId"})
    result = await service.create_conversation(
        user_id,
        title=body.title,
        category=body.category,
        metadata=body.metadata,
    )
    return success_response(result, status_code=201)


# Static paths must be declared before /{conversation_id}
@router.get("/stats")
async def get_user_stats(
    user_id: str = Depends(require_user_param),
    aggregator: UsageAggregator = Depends(get_usage_aggregator),
):
    stats = await aggregator.per_user(user_id)
    return success_response(stats.model_dump(by_alias=True))


@router.get("/tags")
async def get_popular_tags(
    limit: int = Query(default=DEFAULT_TAG_LIMIT, ge=1, le=100),
    user_id: str = Depends(require_user_param),
    aggregator: UsageAggregator = Depends(get_usage_aggregator),
):
    tags = await aggregator.popular_tags(user_id, limit=limit)
    return success_response([t.model_dump(by_alias=True) for t in tags])


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.get_conversation_with_messages(conversation_id, user_id)
    return success_response(conv)


@router.put("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.update_conversation(
        conversation_id,
        user_id,
        title=body.title,
        is_starred=body.is_starred,
        is_archived=body.is_archived,
    )
    return success_response(conv)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    await service.delete_conversation(conversation_id, user_id)
    return success_response({"id": conversation_id, "deleted": True})


@router.post("/{conversation_id}/star")
async def star_conversation(
    conversation_id: str,
    body: StarRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.set_starred(conversation_id, user_id, body.is_starred)
    return success_response(conv)


@router.post("/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: str,
    body: ArchiveRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.set_archived(conversation_id, user_id, body.is_archived)
    return success_response(conv)


@router.put("/{conversation_id}/tags")
async def set_tags(
    conversation_id: str,
    body: TagsRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.set_tags(conversation_id, user_id, body.tags)
    return success_response(conv)


@router.post("/{conversation_id}/tags")
async def add_tags(
    conversation_id: str,
    body: TagsRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.add_tags(conversation_id, user_id, body.tags)
    return success_response(conv)


@router.put("/{conversation_id}/metadata")
async def update_metadata(
    conversation_id: str,
    body: MetadataRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    conv = await service.update_metadata(conversation_id, user_id, body.metadata)
    return success_response(conv)


@router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    messages = await service.get_conversation_messages(conversation_id, user_id)
    return success_response(messages, meta={"count": len(messages)})


@router.post("/{conversation_id}/messages", status_code=201)
async def add_message(
    conversation_id: str,
    body: MessageCreate,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    message = await service.append_message(
        conversation_id,
        body.role,
        body.content,
        tokens_used=body.tokens_used,
        cost=body.cost,
        user_id=user_id,
    )
    return success_response(message, status_code=201)


@router.put("/{conversation_id}/messages/{message_id}")
async def update_message(
    conversation_id: str,
    message_id: str,
    body: MessageUpdate,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
):
    message = await service.update_message(
        conversation_id,
        message_id,
        user_id,
        content=body.content,
        is_starred=body.is_starred,
    )
    return success_response(message)


@router.get("/{conversation_id}/analytics")
async def get_conversation_analytics(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    aggregator: UsageAggregator = Depends(get_usage_aggregator),
):
    analytics = await aggregator.per_conversation(conversation_id, user_id)
    return success_response(analytics.model_dump(by_alias=True))

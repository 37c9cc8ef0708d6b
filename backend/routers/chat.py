import logging

from fastapi import APIRouter, Depends

from backend.dependencies import (
    get_conversation_service,
    get_current_user_id,
    get_generation_service,
)
from backend.models.schemas import ChatRequest
from backend.responses import success_response
from backend.services.conversation_service import ConversationService, validate_message
from backend.services.generation_service import GenerationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/models")
async def list_models(generation: GenerationService = Depends(get_generation_service)):
    return success_response(generation.get_available_models())


@router.post("/completions", status_code=201)
async def chat_completions(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    conv_service: ConversationService = Depends(get_conversation_service),
    generation: GenerationService = Depends(get_generation_service),
):
    """Generate the assistant turn, then persist both turns together.

    Nothing is written when generation fails.
    """
    validate_message("user", request.content)
    conversation = await conv_service.get_conversation_with_messages(
        request.conversation_id, user_id
    )
    history = [*conversation["messages"], {"role": "user", "content": request.content}]

    result = await generation.generate(
        history, model_id=request.model_id, temperature=request.temperature
    )
    user_message, assistant_message, updated = await conv_service.append_exchange(
        request.conversation_id,
        user_id,
        request.content,
        result.content,
        tokens_used=result.tokens_used,
        cost=result.cost,
    )
    logger.info(
        "Chat turn on %s: model=%s tokens=%d cost=%.6f",
        request.conversation_id, result.model_id, result.tokens_used, result.cost,
    )
    return success_response(
        {
            "userMessage": user_message,
            "assistantMessage": assistant_message,
            "conversation": updated,
        },
        status_code=201,
        meta={"model": result.model_id},
    )

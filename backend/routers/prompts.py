from fastapi import APIRouter, Depends

from backend.dependencies import (
    get_conversation_service,
    get_current_user_id,
    get_generation_service,
)
from backend.errors import ValidationError
from backend.models.schemas import PromptGenerateRequest
from backend.responses import success_response
from backend.services.conversation_service import ConversationService
from backend.services.generation_service import GenerationService

router = APIRouter(prefix="/conversations", tags=["prompts"])


@router.post("/{conversation_id}/prompts", status_code=201)
async def generate_prompt(
    conversation_id: str,
    body: PromptGenerateRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    conv_service: ConversationService = Depends(get_conversation_service),
    generation: GenerationService = Depends(get_generation_service),
):
    conversation = await conv_service.get_conversation_with_messages(conversation_id, user_id)
    if not any(m["role"] == "user" for m in conversation["messages"]):
        raise ValidationError("Conversation has no user messages to build a prompt from")

    model_id = body.model_id if body else None
    result = await generation.generate_prompt(conversation["messages"], model_id=model_id)
    saved = await conv_service.save_prompt_result(
        conversation_id,
        user_id,
        result.content,
        metadata={
            "model": result.model_id,
            "tokens_used": result.tokens_used,
            "cost": result.cost,
            "source_message_count": len(conversation["messages"]),
        },
    )
    return success_response(saved, status_code=201)


@router.get("/{conversation_id}/prompts")
async def list_prompts(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    conv_service: ConversationService = Depends(get_conversation_service),
):
    results = await conv_service.list_prompt_results(conversation_id, user_id)
    return success_response(results, meta={"count": len(results)})

from fastapi import APIRouter, Depends

from app.dependencies import get_dialogue
from app.models.schemas import ChatRequest, ChatResponse
from app.services.dialogue import ProductDialogue

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def chat(body: ChatRequest, dialogue: ProductDialogue = Depends(get_dialogue)):
    reply = await dialogue.handle_turn(body.to_inbound())
    return ChatResponse(
        session_id=body.session_id,
        reply=reply.reply_text,
        suggested_actions=reply.suggested_actions,
        phase=reply.phase,
        last_error=reply.last_error,
        image_failures=reply.image_failures,
    )

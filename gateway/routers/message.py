from fastapi import APIRouter, Depends

from gateway.dependencies import get_container
from gateway.schemas.message import MessageRequest, MessageResponse
from gateway.services.container import ResilienceContainer
from gateway.services.pipeline import InboundMessage

router = APIRouter()


@router.post("/message", response_model=MessageResponse)
async def handle_message(request: MessageRequest, container: ResilienceContainer = Depends(get_container)):
    """Run an inbound chat message through the resilience pipeline."""
    reply = await container.pipeline.handle(
        InboundMessage(
            user_id=request.user_id,
            message=request.message,
            message_id=request.message_id,
            conversation_id=request.conversation_id,
            channel=request.channel,
            timestamp=request.timestamp,
        )
    )
    return MessageResponse(**reply.to_dict())


@router.post("/message/{conversation_id}/cancel")
async def cancel_batch(conversation_id: str, container: ResilienceContainer = Depends(get_container)):
    """Drop a pending batch (operator takeover)."""
    return {"success": container.pipeline.cancel(conversation_id)}

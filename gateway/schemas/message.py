from typing import Optional

from pydantic import BaseModel, Field


class MessageRequest(BaseModel):
    user_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    channel: str = "whatsapp"
    timestamp: Optional[float] = None


class MessageResponse(BaseModel):
    status: str
    reply: Optional[str] = None
    reason: Optional[str] = None
    suppress_reply: bool = False
    cached: bool = False
    batch_size: int = 1
    message_id: Optional[str] = None
    retry_after: Optional[int] = None

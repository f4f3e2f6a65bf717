from typing import Optional

from pydantic import BaseModel, Field


class FailedMessagesResponse(BaseModel):
    success: bool = True
    status: dict
    messages: list[dict]


class RetryResponse(BaseModel):
    success: bool
    message_id: str
    status: Optional[str] = None
    attempts: Optional[int] = None
    error: Optional[str] = None


class RetryAllResponse(BaseModel):
    success: bool = True
    total: int
    succeeded: int
    failed: int
    results: list[dict]


class ClearResponse(BaseModel):
    success: bool = True
    cleared: int


class BlacklistRequest(BaseModel):
    user_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    ttl_seconds: Optional[float] = Field(default=None, gt=0)


class BlacklistEntryResponse(BaseModel):
    user_id: str
    reason: str
    added_by: str
    added_at: Optional[str] = None
    expires_at: Optional[str] = None


class CacheEnabledRequest(BaseModel):
    enabled: bool


class ActionResponse(BaseModel):
    success: bool
    message: str

"""Operator endpoints for the resilience services."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from gateway.dependencies import get_container, require_admin_token
from gateway.logging_config import get_logger
from gateway.schemas.admin import (
    ActionResponse,
    BlacklistEntryResponse,
    BlacklistRequest,
    CacheEnabledRequest,
    ClearResponse,
    FailedMessagesResponse,
    RetryAllResponse,
    RetryResponse,
)
from gateway.services.container import ResilienceContainer
from gateway.services.health_service import get_system_health

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# === FAILED MESSAGES ===


@router.get("/failed-messages", response_model=FailedMessagesResponse)
async def list_failed_messages(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    queue = container.retry_queue
    return FailedMessagesResponse(status=queue.status(), messages=queue.list())


@router.post("/failed-messages/retry-all", response_model=RetryAllResponse)
async def retry_all_failed_messages(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    results = await container.retry_queue.retry_all()
    succeeded = sum(1 for r in results if r.success)
    logger.info("Manual retry-all finished", extra={"context": {"total": len(results), "succeeded": succeeded}})
    return RetryAllResponse(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=[r.to_dict() for r in results],
    )


@router.post("/failed-messages/{message_id}/retry", response_model=RetryResponse)
async def retry_failed_message(
    message_id: str,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    result = await container.retry_queue.retry(message_id)
    if not result.ok and result.error_code == "not_found":
        raise HTTPException(status_code=404, detail=result.error)
    if not result.ok and result.error_code in ("in_progress", "already_resolved"):
        raise HTTPException(status_code=400, detail=result.error)

    record = container.retry_queue.get(message_id)
    return RetryResponse(
        success=result.ok,
        message_id=message_id,
        status=record.status.value if record else None,
        attempts=record.attempts if record else None,
        error=result.error,
    )


@router.delete("/failed-messages", response_model=ClearResponse)
async def clear_failed_messages(
    all: bool = Query(default=False),
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return ClearResponse(cleared=container.retry_queue.clear(all=all))


# === RATE LIMIT ===


@router.get("/rate-limit")
async def rate_limit_stats(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return container.rate_limiter.stats()


@router.get("/rate-limit/blacklist", response_model=list[BlacklistEntryResponse])
async def list_blacklist(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return [entry.to_dict() for entry in container.rate_limiter.list_blacklist()]


@router.post("/rate-limit/blacklist", response_model=BlacklistEntryResponse)
async def add_to_blacklist(
    request: BlacklistRequest,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    try:
        entry = container.rate_limiter.blacklist(
            request.user_id, request.reason, added_by="admin", ttl=request.ttl_seconds
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return entry.to_dict()


@router.delete("/rate-limit/blacklist/{user_id}", response_model=ActionResponse)
async def remove_from_blacklist(
    user_id: str,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    if not container.rate_limiter.unblacklist(user_id):
        raise HTTPException(status_code=404, detail=f"{user_id} is not blacklisted")
    return ActionResponse(success=True, message=f"{user_id} removed from blacklist")


@router.get("/rate-limit/{user_id}")
async def rate_limit_user(
    user_id: str,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    record = container.rate_limiter.get_user_info(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No rate limit record for {user_id}")
    entry = container.rate_limiter.get_blacklist_entry(user_id)
    return {**record.to_dict(), "blacklist": entry.to_dict() if entry else None}


@router.post("/rate-limit/{user_id}/reset-violations", response_model=ActionResponse)
async def reset_violations(
    user_id: str,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    if not container.rate_limiter.reset_violations(user_id):
        raise HTTPException(status_code=404, detail=f"No rate limit record for {user_id}")
    return ActionResponse(success=True, message=f"Violations reset for {user_id}")


# === CACHE ===


@router.get("/cache")
async def cache_stats(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return {
        **container.cache.stats(),
        "top_entries": [entry.to_dict() for entry in container.cache.top_entries(10)],
    }


@router.delete("/cache", response_model=ClearResponse)
async def clear_cache(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return ClearResponse(cleared=container.cache.invalidate_all())


@router.post("/cache/enabled", response_model=ActionResponse)
async def set_cache_enabled(
    request: CacheEnabledRequest,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    container.cache.set_enabled(request.enabled)
    return ActionResponse(success=True, message=f"Cache {'enabled' if request.enabled else 'disabled'}")


# === CIRCUIT BREAKERS ===


@router.get("/circuit")
async def circuit_states(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return container.breakers.states()


@router.post("/circuit/{name}/reset", response_model=ActionResponse)
async def reset_circuit(
    name: str,
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    breaker = container.breakers.find(name)
    if breaker is None:
        raise HTTPException(status_code=404, detail=f"Unknown circuit breaker: {name}")
    breaker.reset()
    return ActionResponse(success=True, message=f"Circuit breaker {name} reset")


# === CONVERSATIONS & MODELS ===


@router.get("/conversations")
async def list_conversations(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    tracker = container.tracker
    return {
        **tracker.stats(),
        "contexts": [context.to_dict() for context in tracker.list_active()],
        "pending_batches": container.batcher.list_batches(),
    }


@router.get("/models")
async def model_stats(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return container.model_stats.get_all_stats()


# === HEALTH ===


@router.get("/health")
async def system_health(
    container: ResilienceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Aggregated state of every resilience component."""
    require_admin_token(x_admin_token)
    return get_system_health(container)

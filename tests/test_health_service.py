import asyncio

import pytest

from gateway.config import Settings
from gateway.models import InboundEvent
from gateway.services.container import ResilienceContainer
from gateway.services.health_service import get_system_health
from gateway.services.pipeline import MessageHandler, ProcessedReply
from gateway.services.result import Ok


class EchoHandler(MessageHandler):
    async def call_downstream(self, event, context):
        return Ok(event.message)

    def build_reply(self, event, context, value):
        return ProcessedReply(text=value)


@pytest.fixture
def container(clock, alert_func):
    container = ResilienceContainer.from_settings(
        Settings(_env_file=None, retry_worker_enabled=False, retry_max_attempts=1),
        clock=clock,
        handler=EchoHandler(),
    )
    container.retry_queue._alert = alert_func
    return container


def test_healthy(container):
    health = get_system_health(container)

    assert health["status"] == "healthy"
    assert health["issues"] == []
    assert set(health) >= {
        "rate_limit",
        "circuit_breakers",
        "retry_queue",
        "cache",
        "batcher",
        "conversations",
        "background_tasks",
    }


def test_open_breaker_degrades(container):
    breaker = container.breakers.get("llm")

    async def boom():
        raise ConnectionError("refused")

    async def trip():
        for _ in range(breaker.config.volume_threshold):
            await breaker.execute(boom)

    asyncio.run(trip())
    health = get_system_health(container)

    assert health["status"] == "degraded"
    assert health["issues"] == ["circuit llm is open"]


def test_failed_permanent_degrades(container):
    event = InboundEvent(message_id="m1", user_id="628111", message="halo")
    container.retry_queue.enqueue(event, RuntimeError("boom"))

    health = get_system_health(container)

    assert health["status"] == "degraded"
    assert health["issues"] == ["1 message(s) failed permanently"]

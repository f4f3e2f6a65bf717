import asyncio
from unittest.mock import AsyncMock, Mock

from gateway.config import Settings
from gateway.services.channel_client import ChannelClient
from gateway.services.container import CHANNEL_BREAKER, ResilienceContainer
from gateway.services.llm import OpenAIProvider
from gateway.services.pipeline import LLMReplyHandler, MessageHandler, ProcessedReply
from gateway.services.result import Ok


class EchoHandler(MessageHandler):
    async def call_downstream(self, event, context):
        return Ok(event.message)

    def build_reply(self, event, context, value):
        return ProcessedReply(text=value)


def _settings(**overrides):
    overrides.setdefault("retry_worker_enabled", False)
    return Settings(_env_file=None, **overrides)


def test_injected_handler_skips_llm(clock):
    container = ResilienceContainer.from_settings(_settings(), clock=clock, handler=EchoHandler())

    assert container.llm is None
    assert container.channel is None
    assert container.pipeline.reply_sink is None
    assert container.breakers.states() == []


def test_default_handler_uses_llm(clock):
    container = ResilienceContainer.from_settings(_settings(llm_models="a, b"), clock=clock)

    assert isinstance(container.llm, OpenAIProvider)
    assert isinstance(container.pipeline.handler, LLMReplyHandler)
    assert container.llm.models == ["a", "b"]
    assert container.breakers.find("llm") is not None
    asyncio.run(container.llm.aclose())


def test_channel_client_wired_as_reply_sink(clock):
    container = ResilienceContainer.from_settings(
        _settings(channel_service_url="http://channel:3002"),
        clock=clock,
        handler=EchoHandler(),
    )

    assert isinstance(container.channel, ChannelClient)
    assert container.pipeline.reply_sink == container.channel.send_message
    assert container.breakers.find(CHANNEL_BREAKER) is not None
    asyncio.run(container.channel.aclose())


def test_retry_queue_processor_bound(clock):
    container = ResilienceContainer.from_settings(_settings(), clock=clock, handler=EchoHandler())

    assert container.retry_queue._processor == container.pipeline.reprocess


def test_background_tasks(clock):
    without_worker = ResilienceContainer.from_settings(_settings(), clock=clock, handler=EchoHandler())
    with_worker = ResilienceContainer.from_settings(
        _settings(retry_worker_enabled=True), clock=clock, handler=EchoHandler()
    )

    assert [t.name for t in without_worker.tasks] == ["rate_limit_sweep", "context_sweep", "cache_purge"]
    assert with_worker.tasks[-1].name == "retry_worker"


def test_start_and_shutdown(clock):
    hook = Mock()
    container = ResilienceContainer.from_settings(
        _settings(), clock=clock, handler=EchoHandler(), snapshot_hook=hook
    )
    container.channel = Mock(aclose=AsyncMock())

    async def run():
        container.start()
        assert all(task.running for task in container.tasks)
        await container.shutdown()

    asyncio.run(run())

    assert not any(task.running for task in container.tasks)
    assert [call.args[0] for call in hook.call_args_list] == ["rate_limit", "retry_queue"]
    container.channel.aclose.assert_awaited_once()


def test_snapshot_hook_failure_does_not_stop_shutdown(clock):
    hook = Mock(side_effect=OSError("disk full"))
    container = ResilienceContainer.from_settings(
        _settings(), clock=clock, handler=EchoHandler(), snapshot_hook=hook
    )

    asyncio.run(container.shutdown())

    assert hook.call_count == 2

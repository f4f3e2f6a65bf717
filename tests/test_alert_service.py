import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx

from gateway.services.alert_service import (
    alert_circuit_open,
    alert_critical,
    alert_error,
    alert_warning,
    dispatch_alert,
    flush_alerts,
    format_alert,
    send_alert,
    send_alert_async,
)
from gateway.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from gateway.services.container import _alert_on_open


class TestSendAlert:
    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "")
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        result = send_alert("ERROR", "Test error message")

        assert result is True
        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert "api.telegram.org/bottest-token" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.httpx.Client")
    def test_returns_false_on_http_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("unreachable")

        assert send_alert("ERROR", "Test message") is False

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.httpx.Client")
    def test_returns_false_on_non_200(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=429)

        assert send_alert("ERROR", "Test message") is False


class TestFormatAlert:
    def test_includes_context(self):
        text = format_alert("ERROR", "Message failed permanently", {"message_id": "msg-1", "attempts": 10})
        assert "*ERROR*" in text
        assert "message_id: msg-1" in text
        assert "attempts: 10" in text


class TestShortcuts:
    @patch("gateway.services.alert_service.send_alert")
    def test_levels(self, mock_send):
        alert_error("e")
        alert_critical("c")
        alert_warning("w", {"k": "v"})
        assert [c.args[0] for c in mock_send.call_args_list] == ["ERROR", "CRITICAL", "WARNING"]

    @patch("gateway.services.alert_service.send_alert")
    def test_circuit_open(self, mock_send):
        alert_circuit_open({"name": "llm", "counters": {"failures": 3}, "error_percentage": 50.0})
        level, message, context = mock_send.call_args.args
        assert level == "CRITICAL"
        assert "llm" in message
        assert context["error_percentage"] == 50.0


class TestSendAlertAsync:
    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.httpx.AsyncClient")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client.post = AsyncMock(return_value=Mock(status_code=200))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        assert asyncio.run(send_alert_async("CRITICAL", "Circuit breaker opened: llm")) is True
        url = mock_client.post.call_args[0][0]
        assert "api.telegram.org/bottest-token" in url

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.httpx.AsyncClient")
    def test_returns_false_on_http_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client.post = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        assert asyncio.run(send_alert_async("ERROR", "Test message")) is False


class TestDispatchAlert:
    @patch("gateway.services.alert_service.send_alert")
    def test_outside_event_loop_sends_directly(self, mock_send):
        mock_send.return_value = True
        assert dispatch_alert("ERROR", "e") is True
        mock_send.assert_called_once_with("ERROR", "e", None)

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "")
    @patch("gateway.services.alert_service.send_alert_async")
    def test_not_configured_schedules_nothing(self, mock_send):
        async def run():
            return dispatch_alert("ERROR", "e")

        assert asyncio.run(run()) is False
        mock_send.assert_not_called()

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.send_alert_async")
    def test_inside_event_loop_schedules_task(self, mock_send):
        release = None

        async def slow_send(level, message, context=None):
            await release.wait()
            return True

        mock_send.side_effect = slow_send

        async def run():
            nonlocal release
            release = asyncio.Event()
            scheduled = alert_error("Message failed permanently", {"message_id": "m1"})
            await asyncio.sleep(0)
            still_running = not release.is_set()
            release.set()
            await flush_alerts()
            return scheduled, still_running

        assert asyncio.run(run()) == (True, True)
        mock_send.assert_called_once_with("ERROR", "Message failed permanently", {"message_id": "m1"})

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.send_alert_async")
    def test_failing_alert_is_logged_not_raised(self, mock_send):
        mock_send.side_effect = RuntimeError("boom")

        async def run():
            dispatch_alert("ERROR", "e")
            await flush_alerts()

        asyncio.run(run())
        mock_send.assert_called_once()

    @patch("gateway.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("gateway.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("gateway.services.alert_service.send_alert_async")
    def test_breaker_open_alert_does_not_stall_other_users(self, mock_send):
        async def slow_send(level, message, context=None):
            await asyncio.sleep(0.3)
            return True

        mock_send.side_effect = slow_send
        breaker = CircuitBreaker("llm", CircuitBreakerConfig(volume_threshold=1), on_open=_alert_on_open)
        ticks = []

        async def other_user():
            for _ in range(10):
                ticks.append(time.monotonic())
                await asyncio.sleep(0.02)

        async def boom():
            raise ConnectionError("refused")

        async def run():
            ticker = asyncio.create_task(other_user())
            await asyncio.sleep(0)
            started = time.monotonic()
            await breaker.execute(boom)
            elapsed = time.monotonic() - started
            await ticker
            await flush_alerts()
            return elapsed

        elapsed = asyncio.run(run())

        assert elapsed < 0.1
        assert max(b - a for a, b in zip(ticks, ticks[1:])) < 0.2
        assert mock_send.call_args.args[0] == "CRITICAL"

import pytest

from gateway.services.conversation_tracker import ConversationTracker
from gateway.services.state_machine import ConversationState


@pytest.fixture
def tracker(clock):
    return ConversationTracker(context_ttl_seconds=1800, clock=clock)


class TestUpdate:
    def test_get_creates_idle_context(self, tracker):
        context = tracker.get("628111")
        assert context.state == ConversationState.IDLE
        assert context.message_count == 0
        assert context.created_at == context.updated_at

    def test_full_flow(self, tracker):
        context = tracker.update("628111", "CREATE_COMPLAINT", {"address", "description"})
        assert context.state == ConversationState.COLLECTING

        context = tracker.update("628111", "CREATE_COMPLAINT", {"address"})
        assert context.state == ConversationState.COLLECTING
        assert context.resolved_fields == {"description"}

        context = tracker.update("628111", "CREATE_COMPLAINT", set())
        assert context.state == ConversationState.AWAITING_CONFIRMATION
        assert context.previous_state == ConversationState.COLLECTING
        assert context.resolved_fields == {"address", "description"}

        context = tracker.update("628111", "CONFIRM", set(), confirmed=True)
        assert context.state == ConversationState.COMPLETED

        context = tracker.update("628111", "GREETING", set())
        assert context.state == ConversationState.IDLE
        assert context.message_count == 5
        assert context.last_intent == "GREETING"

    def test_field_reappearing_is_no_longer_resolved(self, tracker):
        tracker.update("u", "X", {"address"})
        tracker.update("u", "X", set())
        context = tracker.update("u", "X", {"address"})
        assert context.state == ConversationState.COLLECTING
        assert "address" not in context.resolved_fields

    def test_updated_at_moves_forward(self, tracker, clock):
        tracker.update("u", "X", set())
        clock.advance(10)
        context = tracker.update("u", "X", set())
        assert context.updated_at == clock.now
        assert context.updated_at >= context.created_at

    def test_state_of_does_not_create(self, tracker):
        assert tracker.state_of("ghost") == ConversationState.IDLE
        assert tracker.list_active() == []


class TestExpiry:
    def test_sweep_evicts_idle_contexts(self, tracker, clock):
        tracker.update("old", "X", {"address"})
        clock.advance(1000)
        tracker.update("recent", "X", set())
        clock.advance(1000)

        assert tracker.sweep() == 1
        assert [ctx.user_id for ctx in tracker.list_active()] == ["recent"]

    def test_stale_context_restarts_on_get(self, tracker, clock):
        tracker.update("u", "X", {"address"})
        clock.advance(1801)
        context = tracker.get("u")
        assert context.state == ConversationState.IDLE
        assert context.message_count == 0

    def test_reset(self, tracker):
        tracker.update("u", "X", set())
        assert tracker.reset("u") is True
        assert tracker.reset("u") is False


class TestStats:
    def test_stats(self, tracker):
        tracker.update("a", "X", {"address"})
        tracker.update("a", "X", {"address"})
        tracker.update("b", "Y", set())

        stats = tracker.stats()
        assert stats["active_contexts"] == 2
        assert stats["avg_message_count"] == 1.5
        assert stats["by_state"] == {"collecting": 1, "idle": 1}

    def test_empty_stats(self, tracker):
        assert tracker.stats() == {"active_contexts": 0, "avg_message_count": 0.0, "by_state": {}}

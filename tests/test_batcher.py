import asyncio

import pytest

from gateway.services.batcher import MessageBatcher


def _batcher(**kwargs):
    kwargs.setdefault("batch_delay_seconds", 0.05)
    return MessageBatcher(**kwargs)


class TestAddToBatch:
    def test_single_message(self):
        batcher = _batcher()
        result = asyncio.run(batcher.add_to_batch("conv-1", "halo"))
        assert result.is_primary is True
        assert result.is_batched is False
        assert result.combined_message == "halo"
        assert result.message_count == 1
        assert result.suppress_reply is False

    def test_three_messages_one_primary(self):
        batcher = _batcher()

        async def scenario():
            primary = asyncio.create_task(batcher.add_to_batch("conv-1", "jalan rusak", "m1"))
            await asyncio.sleep(0)
            second = await batcher.add_to_batch("conv-1", "di RT 02", "m2")
            third = await batcher.add_to_batch("conv-1", "tolong segera", "m3")
            return await primary, second, third

        primary, second, third = asyncio.run(scenario())

        assert primary.is_primary is True
        assert primary.is_batched is True
        assert primary.combined_message == "jalan rusak\ndi RT 02\ntolong segera"
        assert primary.message_count == 3
        assert primary.message_ids == ("m1", "m2", "m3")
        for secondary in (second, third):
            assert secondary.is_primary is False
            assert secondary.suppress_reply is True
            assert secondary.combined_message is None

    def test_conversations_are_independent(self):
        batcher = _batcher()

        async def scenario():
            return await asyncio.gather(
                batcher.add_to_batch("conv-1", "a"),
                batcher.add_to_batch("conv-2", "b"),
            )

        first, second = asyncio.run(scenario())
        assert first.is_primary and second.is_primary
        assert first.combined_message == "a"
        assert second.combined_message == "b"

    def test_max_batch_size_closes_early(self):
        batcher = _batcher(batch_delay_seconds=5, max_batch_size=2)

        async def scenario():
            primary = asyncio.create_task(batcher.add_to_batch("conv-1", "a"))
            await asyncio.sleep(0)
            await batcher.add_to_batch("conv-1", "b")
            return await asyncio.wait_for(primary, timeout=1)

        result = asyncio.run(scenario())
        assert result.combined_message == "a\nb"

    def test_new_window_after_close(self):
        batcher = _batcher()

        async def scenario():
            first = await batcher.add_to_batch("conv-1", "a")
            second = await batcher.add_to_batch("conv-1", "b")
            return first, second

        first, second = asyncio.run(scenario())
        assert first.is_primary and second.is_primary
        assert second.combined_message == "b"

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            MessageBatcher(max_batch_size=0)


class TestCancelBatch:
    def test_cancel_wakes_primary(self):
        batcher = _batcher(batch_delay_seconds=5)

        async def scenario():
            primary = asyncio.create_task(batcher.add_to_batch("conv-1", "a"))
            await asyncio.sleep(0)
            cancelled = batcher.cancel_batch("conv-1")
            return cancelled, await asyncio.wait_for(primary, timeout=1)

        cancelled, result = asyncio.run(scenario())
        assert cancelled is True
        assert result.cancelled is True
        assert result.combined_message is None
        assert batcher.has_pending_batch("conv-1") is False

    def test_cancel_is_idempotent(self):
        batcher = _batcher(batch_delay_seconds=5)

        async def scenario():
            primary = asyncio.create_task(batcher.add_to_batch("conv-1", "a"))
            await asyncio.sleep(0)
            results = [batcher.cancel_batch("conv-1"), batcher.cancel_batch("conv-1")]
            await primary
            return results

        assert asyncio.run(scenario()) == [True, False]

    def test_cancel_after_deadline_is_noop(self):
        batcher = _batcher()
        result = asyncio.run(batcher.add_to_batch("conv-1", "a"))
        assert batcher.cancel_batch("conv-1") is False
        assert result.cancelled is False


class TestStatus:
    def test_pending_batch_visible(self):
        batcher = _batcher(batch_delay_seconds=5)

        async def scenario():
            primary = asyncio.create_task(batcher.add_to_batch("conv-1", "a"))
            await asyncio.sleep(0)
            await batcher.add_to_batch("conv-1", "b")
            snapshot = (
                batcher.has_pending_batch("conv-1"),
                batcher.get_batch_status("conv-1"),
                batcher.list_batches(),
                batcher.stats(),
            )
            batcher.cancel_batch("conv-1")
            await primary
            return snapshot

        pending, status, batches, stats = asyncio.run(scenario())
        assert pending is True
        assert status["message_count"] == 2
        assert 0 < status["remaining_seconds"] <= 5
        assert len(batches) == 1
        assert stats["pending_messages"] == 2
        assert batcher.get_batch_status("conv-1") is None

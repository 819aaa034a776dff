"""
Tests for ConversationService - in-memory conversation history.
Focuses on interface contracts so the storage can change underneath.
"""

import asyncio

import pytest

from codek.services.conversation_service import ConversationService


# ============================================================================
# INTERFACE CONTRACT TESTS
# ============================================================================

@pytest.mark.unit
class TestConversationServiceInterface:
    """Public interface contract"""

    @pytest.mark.asyncio
    async def test_create_conversation_returns_string_id(self, conversation_service):
        context_id = await conversation_service.create_conversation()

        assert isinstance(context_id, str)
        assert len(context_id) > 0

    @pytest.mark.asyncio
    async def test_create_with_explicit_id(self, conversation_service):
        context_id = await conversation_service.create_conversation("editor-tab-1")

        assert context_id == "editor-tab-1"
        assert await conversation_service.conversation_exists("editor-tab-1") is True

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, conversation_service):
        await conversation_service.create_conversation("tab")

        with pytest.raises(ValueError, match="already exists"):
            await conversation_service.create_conversation("tab")

    @pytest.mark.asyncio
    async def test_conversation_exists_returns_boolean(self, conversation_service):
        assert await conversation_service.conversation_exists("nonexistent") is False


# ============================================================================
# CORE FUNCTIONALITY TESTS
# ============================================================================

@pytest.mark.unit
class TestConversationServiceCore:
    """History storage"""

    @pytest.mark.asyncio
    async def test_lifecycle(self, conversation_service):
        """create -> exists -> delete -> gone"""
        context_id = await conversation_service.create_conversation()
        assert await conversation_service.conversation_exists(context_id) is True

        await conversation_service.delete_conversation(context_id)

        assert await conversation_service.conversation_exists(context_id) is False

    @pytest.mark.asyncio
    async def test_messages_keep_order(self, conversation_service):
        context_id = await conversation_service.create_conversation()
        messages = [
            ("user", "What does this regex match?"),
            ("assistant", "Dates in ISO format."),
            ("user", "Make it accept times too"),
        ]

        for role, content in messages:
            await conversation_service.add_message(context_id, role, content)

        history = await conversation_service.get_history(context_id)
        assert [(m["role"], m["content"]) for m in history] == messages
        assert all("timestamp" in m for m in history)

    @pytest.mark.asyncio
    async def test_history_is_a_copy(self, conversation_service):
        context_id = await conversation_service.create_conversation()
        await conversation_service.add_message(context_id, "user", "hi")

        history = await conversation_service.get_history(context_id)
        history.clear()

        assert len(await conversation_service.get_history(context_id)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, conversation_service):
        context_id = await conversation_service.create_conversation()
        await conversation_service.add_message(context_id, "user", "hi")

        stats = await conversation_service.get_stats()

        assert stats["total_conversations"] == 1
        assert stats["conversations"][0]["id"] == context_id
        assert stats["conversations"][0]["message_count"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_clears_everything(self):
        service = ConversationService()
        await service.create_conversation()
        await service.create_conversation()

        await service.cleanup()

        assert (await service.get_stats())["total_conversations"] == 0


# ============================================================================
# ERROR HANDLING TESTS
# ============================================================================

@pytest.mark.unit
class TestConversationServiceErrors:
    """Unknown conversations fail with a meaningful ValueError"""

    @pytest.mark.asyncio
    async def test_delete_unknown(self, conversation_service):
        with pytest.raises(ValueError, match="not found"):
            await conversation_service.delete_conversation("missing")

    @pytest.mark.asyncio
    async def test_add_message_unknown(self, conversation_service):
        with pytest.raises(ValueError, match="not found"):
            await conversation_service.add_message("missing", "user", "hi")

    @pytest.mark.asyncio
    async def test_history_unknown(self, conversation_service):
        with pytest.raises(ValueError, match="not found"):
            await conversation_service.get_history("missing")


# ============================================================================
# CONCURRENCY TESTS
# ============================================================================

@pytest.mark.unit
class TestConversationServiceConcurrency:
    """Concurrent access"""

    @pytest.mark.asyncio
    async def test_concurrent_creation(self, conversation_service):
        ids = await asyncio.gather(*[conversation_service.create_conversation() for _ in range(5)])

        assert len(set(ids)) == 5

    @pytest.mark.asyncio
    async def test_concurrent_message_addition(self, conversation_service):
        context_id = await conversation_service.create_conversation()

        await asyncio.gather(*[
            conversation_service.add_message(context_id, "user", f"Message {i}")
            for i in range(5)
        ])

        assert len(await conversation_service.get_history(context_id)) == 5

"""Unit tests for conversations and request-scoped logging context."""

import logging

import pytest

from src.errors import ForbiddenError, NotFoundError, ValidationError
from src.logging_utils import CorrelationIdContext, CorrelationIdFilter, get_correlation_id


@pytest.mark.unit
class TestConversations:
    @pytest.mark.asyncio
    async def test_reopening_returns_same_conversation(self, service, conversation):
        again = await service.open_conversation(conversation.delivery_id, "user-traveler")

        assert again.id == conversation.id
        assert again.owner_id == "user-sender"

    @pytest.mark.asyncio
    async def test_cannot_chat_with_yourself(self, service, conversation):
        with pytest.raises(ValidationError):
            await service.open_conversation(conversation.delivery_id, "user-sender")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, service):
        with pytest.raises(NotFoundError):
            await service.get_deal_status("conv-missing", "user-sender")

    @pytest.mark.asyncio
    async def test_outsider_cannot_read(self, service, conversation):
        with pytest.raises(ForbiddenError):
            await service.list_messages(conversation.id, "user-stranger")

    @pytest.mark.asyncio
    async def test_code_attempts_require_payment(self, service, conversation):
        with pytest.raises(NotFoundError):
            await service.code_attempt_status(conversation.id, "user-traveler")


@pytest.mark.unit
class TestCorrelationContext:
    def test_context_sets_and_restores(self):
        assert get_correlation_id() is None
        with CorrelationIdContext("corr-abc", "conv-1") as correlation_id:
            assert correlation_id == "corr-abc"
            record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)
            CorrelationIdFilter().filter(record)
            assert record.correlation_id == "corr-abc"
            assert record.conversation_id == "conv-1"
        assert get_correlation_id() is None

    def test_generated_id(self):
        with CorrelationIdContext() as correlation_id:
            assert correlation_id.startswith("corr-")

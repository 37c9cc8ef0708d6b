import math

import pytest

from backend.errors import NotFoundError
from backend.services.conversation_service import ConversationService
from backend.services.usage_aggregation import UsageAggregator, rank_tags

USER = "user-1"


class TestPerConversation:
    @pytest.mark.asyncio
    async def test_empty_conversation_is_zeroed(self, initialized_db):
        conv = await ConversationService().create_conversation(USER, "Empty")
        analytics = await UsageAggregator().per_conversation(conv["id"], USER)

        assert analytics.total_tokens == 0
        assert analytics.total_cost == 0
        assert analytics.message_count == 0
        assert analytics.average_tokens_per_message == 0
        assert analytics.average_cost_per_message == 0
        assert not math.isnan(analytics.average_tokens_per_message)
        assert analytics.tokens_over_time == []

    @pytest.mark.asyncio
    async def test_sums_and_role_counts(self, initialized_db):
        service = ConversationService()
        conv = await service.create_conversation(USER, "Demo")
        await service.append_message(conv["id"], "user", "Hello", tokens_used=5, cost=0.001)
        await service.append_message(conv["id"], "assistant", "Hi there", tokens_used=8, cost=0.002)

        analytics = await UsageAggregator().per_conversation(conv["id"], USER)
        assert analytics.total_tokens == 13
        assert analytics.total_cost == pytest.approx(0.003)
        assert analytics.message_count == 2
        assert analytics.user_messages == 1
        assert analytics.assistant_messages == 1
        assert analytics.average_tokens_per_message == pytest.approx(6.5)
        assert analytics.average_cost_per_message == pytest.approx(0.0015)
        assert [p.tokens for p in analytics.tokens_over_time] == [5, 8]
        assert [p.role for p in analytics.cost_over_time] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_camel_case_dump(self, initialized_db):
        conv = await ConversationService().create_conversation(USER, "Demo")
        data = (await UsageAggregator().per_conversation(conv["id"], USER)).model_dump(by_alias=True)
        assert set(data) >= {
            "totalTokens", "totalCost", "messageCount", "userMessages",
            "assistantMessages", "averageTokensPerMessage", "averageCostPerMessage",
            "tokensOverTime", "costOverTime",
        }

    @pytest.mark.asyncio
    async def test_not_found_for_other_owner_and_after_delete(self, initialized_db):
        service = ConversationService()
        conv = await service.create_conversation(USER, "Demo")
        aggregator = UsageAggregator()
        with pytest.raises(NotFoundError):
            await aggregator.per_conversation(conv["id"], "someone-else")

        await service.delete_conversation(conv["id"], USER)
        with pytest.raises(NotFoundError):
            await aggregator.per_conversation(conv["id"], USER)


class TestPerUser:
    @pytest.mark.asyncio
    async def test_owner_without_conversations(self, initialized_db):
        stats = await UsageAggregator().per_user("nobody")
        assert stats.total_conversations == 0
        assert stats.total_messages == 0
        assert stats.total_tokens == 0
        assert stats.total_cost == 0
        assert stats.average_messages_per_conversation == 0
        assert stats.most_used_tags == []

    @pytest.mark.asyncio
    async def test_rollup_across_conversations(self, initialized_db):
        service = ConversationService()
        a = await service.create_conversation(USER, "A")
        b = await service.create_conversation(USER, "B")
        await service.create_conversation("someone-else", "Not mine")
        await service.append_message(a["id"], "user", "one", tokens_used=10, cost=0.01)
        await service.append_message(a["id"], "assistant", "two", tokens_used=20, cost=0.02)
        await service.append_message(b["id"], "user", "three", tokens_used=30, cost=0.03)
        await service.set_starred(a["id"], USER, True)
        await service.set_archived(b["id"], USER, True)

        stats = await UsageAggregator().per_user(USER)
        assert stats.total_conversations == 2
        assert stats.total_messages == 3
        assert stats.total_tokens == 60
        assert stats.total_cost == pytest.approx(0.06)
        assert stats.user_messages == 2
        assert stats.assistant_messages == 1
        assert stats.starred_conversations == 1
        assert stats.archived_conversations == 1
        assert stats.average_messages_per_conversation == pytest.approx(1.5)
        assert stats.average_tokens_per_conversation == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_tag_ranking(self, initialized_db):
        service = ConversationService()
        first = await service.create_conversation(USER, "1")
        second = await service.create_conversation(USER, "2")
        third = await service.create_conversation(USER, "3")
        await service.set_tags(first["id"], USER, ["beta", "alpha"])
        await service.set_tags(second["id"], USER, ["alpha", "gamma"])
        await service.set_tags(third["id"], USER, ["gamma", "delta"])

        stats = await UsageAggregator().per_user(USER)
        ranked = [(t.tag, t.count) for t in stats.most_used_tags]
        assert ranked == [("alpha", 2), ("gamma", 2), ("beta", 1), ("delta", 1)]

        top = await UsageAggregator().popular_tags(USER, limit=1)
        assert [(t.tag, t.count) for t in top] == [("alpha", 2)]


class TestRankTags:
    def test_ties_keep_first_seen_order(self):
        ranked = rank_tags([["b", "a"], ["c"], ["a"]])
        assert [(t.tag, t.count) for t in ranked] == [("a", 2), ("b", 1), ("c", 1)]

    def test_limit(self):
        assert len(rank_tags([[f"t{i}"] for i in range(30)])) == 20
        assert len(rank_tags([[f"t{i}"] for i in range(30)], limit=None)) == 30

    def test_tolerates_missing_tags(self):
        assert rank_tags([None, []]) == []

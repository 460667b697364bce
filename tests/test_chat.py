"""Tests for card chat and the Anthropic client wrapper."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest
from tenacity import wait_none

from backend.chat import HISTORY_LIMIT, ask_about_card, get_history
from backend.errors import InvalidArgument, NotFound, TransientIO
from backend.llm_client import LLMClient
from backend.models import ChatMessage
from backend.srs.repository import ReviewRepository


def fake_response(*texts: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
    )


class TestLLMClient:
    def test_chat_joins_text_and_counts_tokens(self) -> None:
        api = MagicMock()
        api.messages.create.return_value = fake_response("Hola ", "means hello.")
        client = LLMClient(client=api)

        reply = client.chat([{"role": "user", "content": "hola?"}], system="Be brief")

        assert reply == "Hola means hello."
        kwargs = api.messages.create.call_args.kwargs
        assert kwargs["system"] == "Be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "hola?"}]
        assert client.total_input_tokens == 120
        assert client.get_cost_estimate()["output_tokens"] == 30

    def test_empty_conversation_rejected(self) -> None:
        with pytest.raises(InvalidArgument):
            LLMClient(client=MagicMock()).chat([])

    def test_connection_errors_become_transient(self, monkeypatch) -> None:
        monkeypatch.setattr(LLMClient._send.retry, "wait", wait_none())
        api = MagicMock()
        api.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )

        with pytest.raises(TransientIO):
            LLMClient(client=api).chat([{"role": "user", "content": "hi"}])
        assert api.messages.create.call_count >= 2


async def make_card(db, user_id: int) -> int:
    repo = ReviewRepository(db)
    deck = await repo.create_deck("Chat deck", user_id)
    await repo.create_card(deck.id, user_id, "<i>el gato</i>", "the cat")
    [user_card_id] = await repo.new_card_ids(deck.id, user_id)
    return user_card_id


class TestAskAboutCard:
    @pytest.mark.asyncio
    async def test_stores_both_turns(self, db, user_id) -> None:
        user_card_id = await make_card(db, user_id)
        llm = MagicMock()
        llm.chat.return_value = "It is masculine."

        answer = await ask_about_card(db, llm, user_id, user_card_id, "  Gender?  ")

        assert answer.role == "assistant"
        history = await get_history(db, user_card_id)
        assert [(m.role, m.content) for m in history] == [("user", "Gender?"), ("assistant", "It is masculine.")]
        _, system = llm.chat.call_args.args
        assert "el gato" in system
        assert "the cat" in system

    @pytest.mark.asyncio
    async def test_history_is_sent_and_capped(self, db, user_id) -> None:
        user_card_id = await make_card(db, user_id)
        for i in range(HISTORY_LIMIT + 4):
            db.add(ChatMessage(user_card_id=user_card_id, role="user" if i % 2 == 0 else "assistant", content=f"m{i}"))
        await db.commit()
        llm = MagicMock()
        llm.chat.return_value = "ok"

        await ask_about_card(db, llm, user_id, user_card_id, "next")

        messages, _ = llm.chat.call_args.args
        assert len(messages) == HISTORY_LIMIT + 1
        assert messages[0]["content"] == "m4"
        assert messages[-1] == {"role": "user", "content": "next"}

    @pytest.mark.asyncio
    async def test_blank_question(self, db, user_id) -> None:
        user_card_id = await make_card(db, user_id)
        with pytest.raises(InvalidArgument):
            await ask_about_card(db, MagicMock(), user_id, user_card_id, "   ")

    @pytest.mark.asyncio
    async def test_other_users_card(self, db, user_id) -> None:
        user_card_id = await make_card(db, user_id)
        llm = MagicMock()
        with pytest.raises(NotFound):
            await ask_about_card(db, llm, user_id + 1, user_card_id, "Hi?")
        llm.chat.assert_not_called()

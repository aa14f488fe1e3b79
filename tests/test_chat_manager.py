from typing import Optional

import pytest

from conftest import notes

from promptlayers.domain.chat.chat_manager import ChatManager
from promptlayers.domain.models import ChainKind, ChatMessage, MessageContext, PromptLayerId, WebTabContext


class MutableTabProvider:
    def __init__(self, url: Optional[str] = None):
        self.url = url

    def get_active_web_tab(self) -> Optional[WebTabContext]:
        return WebTabContext(url=self.url) if self.url else None


@pytest.fixture
def tab_provider():
    return MutableTabProvider("https://first.example")


@pytest.fixture
def chat(context_manager, tab_provider):
    return ChatManager(context_manager, active_web_tab_provider=tab_provider)


@pytest.mark.asyncio
async def test_send_message_stores_both_views(chat):
    message_id = await chat.send_message("Summarize", notes("A.md"), ChainKind.LLM)

    assert chat.get_message(message_id).message == "Summarize"
    assert chat.get_llm_message(message_id).message.startswith("Summarize\n\n<note_context>")
    assert chat.store.get_context_envelope(message_id).message_id == message_id


@pytest.mark.asyncio
async def test_caller_context_is_not_mutated(chat):
    context = MessageContext(web_tabs=[WebTabContext(url=" https://a.example ")])

    message_id = await chat.send_message("Hi", context, ChainKind.LLM, include_active_web_tab=True)

    assert context.web_tabs[0].url == " https://a.example "
    stored = chat.get_message(message_id).context.web_tabs
    assert [t.url for t in stored] == ["https://a.example", "https://first.example"]


@pytest.mark.asyncio
async def test_active_tab_frozen_across_edits(chat, tab_provider):
    message_id = await chat.send_message("Hi", MessageContext(), ChainKind.LLM, include_active_web_tab=True)

    tab_provider.url = "https://second.example"
    assert await chat.edit_message(message_id, "Hi again", ChainKind.LLM) is True

    tabs = chat.get_message(message_id).context.web_tabs
    assert [t.url for t in tabs] == ["https://first.example"]
    assert "https://second.example" not in chat.get_llm_message(message_id).message
    assert chat.get_llm_message(message_id).message.startswith("Hi again")


@pytest.mark.asyncio
async def test_edit_unknown_message(chat):
    assert await chat.edit_message("missing", "text", ChainKind.LLM) is False


@pytest.mark.asyncio
async def test_edit_returns_false_when_reprocessing_fails(chat, context_manager, monkeypatch):
    message_id = await chat.send_message("Hi", MessageContext(), ChainKind.LLM)

    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(context_manager, "reprocess_message_context", broken)

    assert await chat.edit_message(message_id, "Changed", ChainKind.LLM) is False


@pytest.mark.asyncio
async def test_prepare_regeneration(chat):
    user_id = await chat.send_message("Question", notes("A.md"), ChainKind.LLM)
    ai_id = chat.add_ai_message("Answer")
    await chat.send_message("Follow-up", MessageContext(), ChainKind.LLM)

    llm_message = chat.prepare_regeneration(ai_id)

    assert llm_message.id == user_id
    assert llm_message.message.startswith("Question\n\n<note_context>")
    assert [m.id for m in chat.get_display_messages()] == [user_id]


@pytest.mark.asyncio
async def test_prepare_regeneration_rejects_invalid_targets(chat):
    first_ai = chat.add_ai_message("Welcome")
    second_ai = chat.add_ai_message("Another")

    assert chat.prepare_regeneration(first_ai) is None
    assert chat.prepare_regeneration(second_ai) is None
    assert chat.prepare_regeneration("missing") is None
    assert len(chat.get_display_messages()) == 2


@pytest.mark.asyncio
async def test_conversations_do_not_share_previous_turns(chat, renderer):
    await chat.send_message("In default", notes("A.md"), ChainKind.LLM)

    chat.switch_conversation("project-x")
    assert chat.get_display_messages() == []
    await chat.send_message("In project", notes("A.md"), ChainKind.PROJECT)

    assert renderer.note_calls == [["A.md"], ["A.md"]]

    chat.switch_conversation(None)
    assert [m.message for m in chat.get_display_messages()] == ["In default"]
    assert chat.get_debug_info()["total_conversations"] == 2


@pytest.mark.asyncio
async def test_build_prompt_messages(chat):
    await chat.send_message("First", MessageContext(), ChainKind.LLM)
    chat.add_ai_message("Reply")
    second = await chat.send_message("Second", notes("A.md"), ChainKind.LLM, system_prompt="Be brief.")

    messages = chat.build_prompt_messages(second)

    assert [m.type for m in messages] == ["system", "human", "ai", "human"]
    assert messages[0].content == "Be brief."
    assert messages[-1].content.endswith("Second")
    assert "<path>A.md</path>" in messages[-1].content
    assert chat.build_prompt_messages("missing") == []


@pytest.mark.asyncio
async def test_llm_history_uses_processed_text(chat):
    message_id = await chat.send_message("Hi", notes("A.md"), ChainKind.LLM)
    chat.add_ai_message("Hello")

    history = chat.build_llm_history()

    assert [m.type for m in history] == ["human", "ai"]
    assert history[0].content == chat.get_llm_message(message_id).message


def test_load_clear_and_truncate(chat):
    chat.load_messages([
        ChatMessage(id="u1", message="Q1", sender="user"),
        ChatMessage(id="a1", message="A1", sender="ai"),
        ChatMessage(id="u2", message="Q2", sender="user"),
    ])

    chat.truncate_after_message_id("a1")
    assert [m.id for m in chat.get_display_messages()] == ["u1", "a1"]

    assert chat.delete_message("a1") is True
    assert chat.get_debug_info()["total_messages"] == 1
    assert chat.get_debug_info()["current_conversation"] == "default"

    chat.clear_messages()
    assert chat.get_llm_messages() == []


@pytest.mark.asyncio
async def test_layers_recorded_for_each_turn(chat):
    message_id = await chat.send_message("Hi", notes("A.md"), ChainKind.LLM)

    envelope = chat.store.get_context_envelope(message_id)
    assert [layer.id for layer in envelope.layers] == [
        PromptLayerId.L1_SYSTEM,
        PromptLayerId.L2_PREVIOUS,
        PromptLayerId.L3_TURN,
        PromptLayerId.L5_USER,
    ]


@pytest.mark.asyncio
async def test_prompt_messages_send_prior_sources_once(chat):
    await chat.send_message("First", notes("A.md"), ChainKind.LLM)
    chat.add_ai_message("Answer")
    second = await chat.send_message("Second", MessageContext(), ChainKind.LLM)

    messages = chat.build_prompt_messages(second)
    payload = "\n".join(m.content for m in messages)

    assert payload.count("<path>A.md</path>") == 1
    assert messages[0].content == "First"
    assert "<path>A.md</path>" in messages[-1].content


@pytest.mark.asyncio
async def test_loaded_history_keeps_processed_text(chat):
    chat.load_messages([
        ChatMessage(id="u1", message="Q1", original_message="Q1 with context", sender="user"),
        ChatMessage(id="a1", message="A1", sender="ai"),
    ])
    second = await chat.send_message("Q2", MessageContext(), ChainKind.LLM)

    messages = chat.build_prompt_messages(second)

    assert messages[0].content == "Q1 with context"

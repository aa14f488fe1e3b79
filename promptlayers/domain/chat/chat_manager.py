from typing import Dict, List, Any, Iterable, Optional

import structlog
from langchain_core.messages import BaseMessage, HumanMessage

from promptlayers.domain.context.collaborators import ActiveWebTabProvider
from promptlayers.domain.context.context_manager import ContextManager
from promptlayers.domain.context.layer_converter import LayerToMessagesConverter
from promptlayers.domain.context.memory.message_store import MessageStore
from promptlayers.domain.context.state.conversation_registry import (
    DEFAULT_CONVERSATION_KEY,
    ConversationRegistry,
)
from promptlayers.domain.context.web_tabs import build_web_tabs_with_active_snapshot
from promptlayers.domain.models.message import (
    AI_SENDER,
    USER_SENDER,
    ChainKind,
    ChatMessage,
    MessageContext,
    NoteRef,
    is_user_sender,
)

logger = structlog.get_logger(__name__)


class ChatManager:
    """Coordinates message storage and context processing for a chat session.

    One instance per session. Each conversation id gets its own message
    store from the registry; only the current conversation is touched by
    the methods below.
    """

    def __init__(
        self,
        context_manager: ContextManager,
        registry: Optional[ConversationRegistry] = None,
        active_web_tab_provider: Optional[ActiveWebTabProvider] = None,
        converter: Optional[LayerToMessagesConverter] = None,
    ):
        self.context_manager = context_manager
        self.registry = registry or ConversationRegistry()
        self.active_web_tab_provider = active_web_tab_provider
        self.converter = converter or LayerToMessagesConverter()
        self._current_conversation_id = DEFAULT_CONVERSATION_KEY

    @property
    def current_conversation_id(self) -> str:
        return self._current_conversation_id

    @property
    def store(self) -> MessageStore:
        return self.registry.get(self._current_conversation_id)

    def switch_conversation(self, conversation_id: Optional[str]) -> MessageStore:
        """Make another conversation current, creating its store if needed"""

        key = conversation_id or DEFAULT_CONVERSATION_KEY
        if key != self._current_conversation_id:
            logger.info("Switching conversation", previous=self._current_conversation_id, current=key)
            self._current_conversation_id = key

        store = self.store
        logger.debug("Conversation ready", conversation_id=key, messages=len(store))
        return store

    async def send_message(
        self,
        display_text: str,
        context: Optional[MessageContext],
        chain_kind: ChainKind,
        include_active_note: bool = False,
        include_active_web_tab: bool = False,
        active_note: Optional[NoteRef] = None,
        system_prompt: str = "",
        system_prompt_covered_paths: Optional[Iterable[str]] = None,
        content: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Store a user message, build its context and return its id"""

        logger.info("Sending message", conversation_id=self._current_conversation_id, chain_kind=chain_kind.value)

        # snapshot the active tab now so edits and regeneration reuse it
        message_context = context.model_copy(deep=True) if context else MessageContext()
        message_context.web_tabs = build_web_tabs_with_active_snapshot(
            display_text,
            message_context,
            include_active_web_tab,
            self.active_web_tab_provider,
        )

        store = self.store
        message_id = store.add_message(display_text, display_text, USER_SENDER, message_context, content)

        message = store.get_message(message_id)
        if message is None:
            raise RuntimeError(f"Failed to retrieve message {message_id}")

        result = await self.context_manager.process_message_context(
            message,
            chain_kind,
            include_active_note,
            active_note,
            store,
            system_prompt=system_prompt,
            system_prompt_covered_paths=system_prompt_covered_paths,
        )
        store.update_processed_text(message_id, result.processed_content, result.context_envelope)

        logger.info("Message sent", message_id=message_id, image_urls=len(result.image_urls))
        return message_id

    def add_ai_message(self, text: str, message_id: Optional[str] = None) -> str:
        """Record a model response in the current conversation"""
        return self.store.add_display_only_message(text, AI_SENDER, message_id)

    async def edit_message(
        self,
        message_id: str,
        new_text: str,
        chain_kind: ChainKind,
        include_active_note: bool = False,
        active_note: Optional[NoteRef] = None,
        system_prompt: str = "",
        system_prompt_covered_paths: Optional[Iterable[str]] = None,
    ) -> bool:
        """Edit a message's text and rebuild its context.

        The attachments stay those of the original turn, including the
        frozen web-tab snapshot; only their content is re-rendered.
        """

        try:
            store = self.store
            if not store.edit_message(message_id, new_text):
                return False

            await self.context_manager.reprocess_message_context(
                message_id,
                store,
                chain_kind,
                include_active_note=include_active_note,
                active_note=active_note,
                system_prompt=system_prompt,
                system_prompt_covered_paths=system_prompt_covered_paths,
            )

            logger.info("Edited message", message_id=message_id)
            return True

        except Exception as e:
            logger.error("Failed to edit message", message_id=message_id, error=str(e), exc_info=True)
            return False

    def prepare_regeneration(self, ai_message_id: str) -> Optional[ChatMessage]:
        """Drop everything after the user turn that produced an AI message.

        Returns the LLM view of that user turn, ready to be sent again, or
        None when the message cannot be regenerated.
        """

        store = self.store
        display = store.get_display_messages()
        index = next((i for i, m in enumerate(display) if m.id == ai_message_id), -1)

        if index <= 0:
            logger.info("Cannot regenerate message", message_id=ai_message_id, reason="no preceding turn")
            return None

        user_message = display[index - 1]
        if not is_user_sender(user_message.sender) or not user_message.id:
            logger.info("Cannot regenerate message", message_id=ai_message_id, reason="previous message not from user")
            return None

        store.truncate_after_message_id(user_message.id)
        logger.info("Prepared regeneration", message_id=ai_message_id, user_message_id=user_message.id)
        return store.get_llm_message(user_message.id)

    def delete_message(self, message_id: str) -> bool:
        return self.store.delete_message(message_id)

    def truncate_after_message_id(self, message_id: str) -> None:
        self.store.truncate_after_message_id(message_id)

    def clear_messages(self) -> None:
        self.store.clear()

    def load_messages(self, messages: List[ChatMessage]) -> None:
        """Restore a saved chat into the current conversation.

        Context is not reprocessed; loaded turns keep the text they were
        sent with.
        """
        self.store.load_messages(messages)

    def get_display_messages(self) -> List[ChatMessage]:
        return self.store.get_display_messages()

    def get_llm_messages(self) -> List[ChatMessage]:
        return self.store.get_llm_messages()

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return self.store.get_message(message_id)

    def get_llm_message(self, message_id: str) -> Optional[ChatMessage]:
        return self.store.get_llm_message(message_id)

    def build_llm_history(self) -> List[BaseMessage]:
        """Current conversation as langchain messages, LLM view"""
        return self.converter.history_to_messages(self.store.get_llm_messages())

    def build_prompt_messages(self, message_id: str, include_system_message: bool = True) -> List[BaseMessage]:
        """Messages for answering a user turn: prior history, then the layered turn"""

        store = self.store
        llm_messages = store.get_llm_messages()
        index = next((i for i, m in enumerate(llm_messages) if m.id == message_id), -1)
        if index == -1:
            return []

        envelope = store.get_context_envelope(message_id)
        if envelope is None:
            messages = self.converter.history_to_messages(llm_messages[:index])
            return messages + [HumanMessage(content=llm_messages[index].message)]

        history = self.converter.history_to_messages(
            [self._history_view(store, m) for m in llm_messages[:index]]
        )
        turn = self.converter.convert(envelope, include_system_message=include_system_message)
        # system message leads the conversation
        system = [m for m in turn if m.type == "system"]
        rest = [m for m in turn if m.type != "system"]
        return system + history + rest

    def _history_view(self, store: MessageStore, message: ChatMessage) -> ChatMessage:
        # layered turns carry their context forward through L2; send only what was typed
        if not is_user_sender(message.sender) or message.id is None:
            return message
        if store.get_context_envelope(message.id) is None:
            return message
        return message.model_copy(update={"message": message.original_message or message.message})

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            **self.store.get_debug_info(),
            "current_conversation": self._current_conversation_id,
            "total_conversations": len(self.registry),
        }

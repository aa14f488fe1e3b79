from typing import Dict, List, Any, Optional
import time
import uuid

import structlog

from promptlayers.domain.models.envelope import PromptContextEnvelope
from promptlayers.domain.models.message import (
    ChatMessage,
    MessageContext,
    StoredMessage,
    is_ai_sender,
    is_user_sender,
    utc_now,
)

logger = structlog.get_logger(__name__)


class MessageStore:
    """Single source of truth for one conversation's messages.

    Each message is stored once with both its display text and the text
    actually sent to the model; the display and LLM views are computed
    projections, never parallel lists.
    """

    def __init__(self, conversation_id: Optional[str] = None):
        self.conversation_id = conversation_id
        self.messages: List[StoredMessage] = []

    def _generate_id(self) -> str:
        return f"msg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

    def _find(self, message_id: str) -> Optional[StoredMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def _put(self, message: StoredMessage) -> None:
        # one record per id; a repeated id replaces the record in place
        index = self._index_of(message.id)
        if index == -1:
            self.messages.append(message)
        else:
            self.messages[index] = message

    def add_message(
        self,
        display_text: str,
        processed_text: str,
        sender: str,
        context: Optional[MessageContext] = None,
        content: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Add a new message and return its id"""

        message_id = self._generate_id()
        self.messages.append(StoredMessage(
            id=message_id,
            display_text=display_text,
            processed_text=processed_text,
            sender=sender,
            context=context,
            content=content,
        ))

        logger.debug("Added message", message_id=message_id, sender=sender)
        return message_id

    def add_display_only_message(self, text: str, sender: str, message_id: Optional[str] = None) -> str:
        """Add a message whose display and processed text are the same"""

        if message_id is None:
            return self.add_message(text, text, sender)

        self._put(StoredMessage(
            id=message_id,
            display_text=text,
            processed_text=text,
            sender=sender,
        ))
        logger.debug("Added display-only message", message_id=message_id, sender=sender)
        return message_id

    def add_full_message(self, message: ChatMessage) -> str:
        """Add a fully-formed message, e.g. one reloaded from persistence"""

        message_id = message.id or self._generate_id()
        self._put(self._from_chat_message(message, message_id))

        logger.debug("Added full message", message_id=message_id)
        return message_id

    def _from_chat_message(self, message: ChatMessage, message_id: str) -> StoredMessage:
        return StoredMessage(
            id=message_id,
            display_text=message.message,
            processed_text=message.original_message or message.message,
            sender=message.sender,
            timestamp=message.timestamp or utc_now(),
            context=message.context,
            is_visible=message.is_visible is not False,
            is_error_message=message.is_error_message,
            sources=message.sources,
            content=message.content,
        )

    def edit_message(self, message_id: str, new_display_text: str) -> bool:
        """Edit a message's display text"""

        message = self._find(message_id)
        if message is None:
            logger.debug("Message not found for edit", message_id=message_id)
            return False

        if message.display_text == new_display_text:
            return True

        message.display_text = new_display_text

        if is_user_sender(message.sender):
            # processed text is rebuilt by the layering engine
            logger.info("Edited user message, needs context reprocessing", message_id=message_id)
        else:
            message.processed_text = new_display_text
            logger.info("Edited AI message", message_id=message_id)

        return True

    def update_processed_text(
        self,
        message_id: str,
        processed_text: str,
        envelope: Optional[PromptContextEnvelope] = None,
    ) -> bool:
        """Set the model-facing text and, optionally, the context envelope"""

        message = self._find(message_id)
        if message is None:
            logger.debug("Message not found for processed text update", message_id=message_id)
            return False

        message.processed_text = processed_text
        if envelope is not None:
            message.context_envelope = envelope

        logger.debug("Updated processed text", message_id=message_id, has_envelope=envelope is not None)
        return True

    def delete_message(self, message_id: str) -> bool:
        """Delete a message"""

        index = self._index_of(message_id)
        if index == -1:
            logger.debug("Message not found for deletion", message_id=message_id)
            return False

        del self.messages[index]
        logger.info("Deleted message", message_id=message_id)
        return True

    def clear(self) -> None:
        """Remove all messages"""

        self.messages = []
        logger.info("Cleared all messages", conversation_id=self.conversation_id)

    def truncate_after(self, index: int) -> None:
        """Keep messages up to and including index"""

        self.messages = self.messages[:max(index + 1, 0)]
        logger.info("Truncated messages", after_index=index)

    def truncate_after_message_id(self, message_id: str) -> None:
        """Keep messages up to and including the given message"""

        index = self._index_of(message_id)
        if index != -1:
            self.truncate_after(index)

    def load_messages(self, messages: List[ChatMessage]) -> None:
        """Replace the conversation with persisted messages"""

        self.messages = []
        for message in messages:
            self._put(self._from_chat_message(message, message.id or self._generate_id()))
        logger.info("Loaded messages", count=len(self.messages), conversation_id=self.conversation_id)

    def _display_view(self, message: StoredMessage, is_visible: bool) -> ChatMessage:
        return ChatMessage(
            id=message.id,
            message=message.display_text,
            original_message=message.display_text,
            sender=message.sender,
            timestamp=message.timestamp,
            is_visible=is_visible,
            context=message.context,
            is_error_message=message.is_error_message,
            sources=message.sources,
            content=message.content,
        )

    def _llm_view(self, message: StoredMessage) -> ChatMessage:
        return ChatMessage(
            id=message.id,
            message=message.processed_text,
            original_message=message.display_text,
            sender=message.sender,
            timestamp=message.timestamp,
            is_visible=False,
            context=message.context,
            is_error_message=message.is_error_message,
            sources=message.sources,
            content=message.content,
        )

    def get_display_messages(self) -> List[ChatMessage]:
        """Visible messages with their display text"""
        return [self._display_view(m, True) for m in self.messages if m.is_visible]

    def get_llm_messages(self) -> List[ChatMessage]:
        """All messages with their processed text, for conversation history"""
        return [self._llm_view(m) for m in self.messages]

    def get_llm_message(self, message_id: str) -> Optional[ChatMessage]:
        message = self._find(message_id)
        return self._llm_view(message) if message else None

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        message = self._find(message_id)
        return self._display_view(message, message.is_visible) if message else None

    def get_context_envelope(self, message_id: str) -> Optional[PromptContextEnvelope]:
        message = self._find(message_id)
        return message.context_envelope if message else None

    def get_prior_user_messages(self, message_id: str) -> List[StoredMessage]:
        """Visible user messages that precede the given message.

        Returns an empty list when the message is unknown.
        """

        visible = [m for m in self.messages if m.is_visible]
        for index, message in enumerate(visible):
            if message.id == message_id:
                return [m for m in visible[:index] if is_user_sender(m.sender)]
        return []

    def get_debug_info(self) -> Dict[str, int]:
        return {
            "total_messages": len(self.messages),
            "visible_messages": sum(1 for m in self.messages if m.is_visible),
            "user_messages": sum(1 for m in self.messages if is_user_sender(m.sender)),
            "ai_messages": sum(1 for m in self.messages if is_ai_sender(m.sender)),
        }

    def __len__(self) -> int:
        return len(self.messages)

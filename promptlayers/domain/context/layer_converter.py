from typing import Dict, List, Optional

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from promptlayers.domain.models.envelope import PromptContextEnvelope, PromptLayerId
from promptlayers.domain.models.message import ChatMessage, is_ai_sender

logger = structlog.get_logger(__name__)

# layers that make up the user turn, in order
USER_CONTENT_LAYERS = [PromptLayerId.L2_PREVIOUS, PromptLayerId.L3_TURN, PromptLayerId.L5_USER]


class LayerToMessagesConverter:
    """Turns an envelope into langchain-core chat messages.

    L1 becomes the system message; L2, L3 and L5 form the user turn, either
    merged into one message or one message per layer.
    """

    def convert(
        self,
        envelope: PromptContextEnvelope,
        include_system_message: bool = True,
        merge_user_content: bool = True,
    ) -> List[BaseMessage]:
        messages: List[BaseMessage] = []

        system_text = self.extract_system_message(envelope)
        if include_system_message and system_text:
            messages.append(SystemMessage(content=system_text))

        parts = self._user_parts(envelope)
        if merge_user_content:
            if parts:
                messages.append(HumanMessage(content="\n\n".join(parts)))
        else:
            messages.extend(HumanMessage(content=part) for part in parts)

        logger.debug(
            "Converted envelope to messages",
            message_id=envelope.message_id,
            message_count=len(messages),
        )
        return messages

    def extract_user_content(self, envelope: PromptContextEnvelope) -> str:
        """L2, L3 and L5 merged, without the system layer"""
        return "\n\n".join(self._user_parts(envelope))

    def extract_system_message(self, envelope: PromptContextEnvelope) -> str:
        layer = envelope.get_layer(PromptLayerId.L1_SYSTEM)
        return layer.text if layer else ""

    def get_layer_hashes(self, envelope: PromptContextEnvelope) -> Dict[str, str]:
        return dict(envelope.layer_hashes)

    def history_to_messages(self, history: List[ChatMessage]) -> List[BaseMessage]:
        """LLM-view chat history as alternating human/AI messages.

        Error messages are left out of the history sent back to the model.
        """

        messages: List[BaseMessage] = []
        for message in history:
            if message.is_error_message:
                continue
            if is_ai_sender(message.sender):
                messages.append(AIMessage(content=message.message))
            else:
                messages.append(HumanMessage(content=message.message))
        return messages

    def _user_parts(self, envelope: PromptContextEnvelope) -> List[str]:
        parts: List[str] = []
        for layer_id in USER_CONTENT_LAYERS:
            layer = envelope.get_layer(layer_id)
            if layer and layer.text:
                parts.append(layer.text)
        return parts

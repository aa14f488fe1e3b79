from typing import Dict, List, Optional

import structlog

from promptlayers.domain.context.memory.message_store import MessageStore

logger = structlog.get_logger(__name__)

DEFAULT_CONVERSATION_KEY = "default"


class ConversationRegistry:
    """Maps conversation ids (e.g. one per project) to their message stores"""

    def __init__(self):
        self.stores: Dict[str, MessageStore] = {}

    def get(self, conversation_id: Optional[str] = None) -> MessageStore:
        """Get the store for a conversation, creating it on first use"""

        key = conversation_id or DEFAULT_CONVERSATION_KEY
        store = self.stores.get(key)
        if store is None:
            logger.info("Creating message store", conversation_id=key)
            store = MessageStore(conversation_id=key)
            self.stores[key] = store
        return store

    def has(self, conversation_id: Optional[str]) -> bool:
        return (conversation_id or DEFAULT_CONVERSATION_KEY) in self.stores

    def remove(self, conversation_id: Optional[str]) -> bool:
        """Drop a conversation and its messages"""

        removed = self.stores.pop(conversation_id or DEFAULT_CONVERSATION_KEY, None)
        return removed is not None

    def conversation_ids(self) -> List[str]:
        return list(self.stores.keys())

    def __len__(self) -> int:
        return len(self.stores)

from .envelope import (
    PROMPT_LAYER_LABELS,
    PROMPT_LAYER_ORDER,
    CompactionResult,
    ContextProcessingResult,
    PromptContextEnvelope,
    PromptContextLayer,
    PromptLayerId,
    PromptLayerSegment,
)
from .message import (
    AI_SENDER,
    USER_SENDER,
    ChainKind,
    ChatMessage,
    MessageContext,
    NoteRef,
    SelectedTextContext,
    StoredMessage,
    WebTabContext,
    is_ai_sender,
    is_user_sender,
)

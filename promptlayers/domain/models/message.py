from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from .envelope import PromptContextEnvelope


USER_SENDER = "user"
AI_SENDER = "ai"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_user_sender(sender: Optional[str]) -> bool:
    """Whether the sender tag marks a user-authored message"""
    return (sender or "").lower() == USER_SENDER


def is_ai_sender(sender: Optional[str]) -> bool:
    """Whether the sender tag marks an AI-authored message"""
    return (sender or "").lower() in (AI_SENDER, "assistant")


class ChainKind(str, Enum):
    """Chain the turn is processed by"""
    LLM = "llm_chain"
    VAULT_QA = "vault_qa"
    COPILOT_PLUS = "copilot_plus"
    PROJECT = "project"


class NoteRef(BaseModel):
    """Reference to a note or file attached to a turn"""
    path: str = Field(description="Vault-relative file path")

    @property
    def basename(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[0] if "." in name else name

    @property
    def extension(self) -> str:
        """Lower-cased extension without the dot, empty when there is none"""
        name = self.path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[1].lower() if "." in name else ""


class SelectedTextContext(BaseModel):
    """Text selected in a note or a web page"""
    id: str
    source_type: Literal["note", "web"] = "note"
    content: str
    # note selections
    note_title: Optional[str] = None
    note_path: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    # web selections
    title: Optional[str] = None
    url: Optional[str] = None


class WebTabContext(BaseModel):
    """Browser tab attached to a turn"""
    url: str
    title: Optional[str] = None
    favicon_url: Optional[str] = None
    is_loaded: Optional[bool] = None
    is_active: Optional[bool] = None


class MessageContext(BaseModel):
    """Per-turn attachments"""
    notes: List[NoteRef] = Field(default_factory=list)
    urls: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    folders: List[str] = Field(default_factory=list)
    selected_text_contexts: List[SelectedTextContext] = Field(default_factory=list)
    web_tabs: List[WebTabContext] = Field(default_factory=list)


class StoredMessage(BaseModel):
    """A message as held by the store: one record, two views"""
    id: str = Field(description="Unique message identifier")
    display_text: str = Field(description="Text the user typed or the AI answered")
    processed_text: str = Field(description="Text actually sent to the model")
    sender: str
    timestamp: datetime = Field(default_factory=utc_now)
    context: Optional[MessageContext] = None
    context_envelope: Optional[PromptContextEnvelope] = None
    is_visible: bool = True
    is_error_message: bool = False
    sources: Optional[List[Dict[str, Any]]] = None
    content: Optional[List[Dict[str, Any]]] = None


class ChatMessage(BaseModel):
    """Projection of a stored message handed to callers"""
    id: Optional[str] = None
    message: str
    original_message: Optional[str] = None
    sender: str
    timestamp: Optional[datetime] = None
    is_visible: bool = True
    context: Optional[MessageContext] = None
    is_error_message: bool = False
    sources: Optional[List[Dict[str, Any]]] = None
    content: Optional[List[Dict[str, Any]]] = None

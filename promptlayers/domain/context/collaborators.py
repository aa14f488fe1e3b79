"""Interfaces of the collaborators the layering engine calls but does not own.

Rendering notes to text, resolving template tokens, fetching URLs and
summarizing oversized context all live outside this package; the engine
only depends on these shapes.
"""

from typing import List, Optional, Protocol, Set

from pydantic import BaseModel, Field

from promptlayers.domain.models.envelope import CompactionResult
from promptlayers.domain.models.message import (
    ChainKind,
    NoteRef,
    SelectedTextContext,
    WebTabContext,
)


class ProcessedPrompt(BaseModel):
    """Output of the custom-prompt template pass"""
    processed_prompt: str
    included_files: List[NoteRef] = Field(default_factory=list)


class UrlContext(BaseModel):
    """Rendered URL context plus images found while fetching"""
    url_context: str = ""
    image_urls: List[str] = Field(default_factory=list)


class ContextRenderer(Protocol):
    """Renders attachments into XML-like blocks.

    Must skip every path in exclude_paths and must not raise for a single
    unreadable item.
    """

    async def render_notes(
        self,
        exclude_paths: Set[str],
        notes: List[NoteRef],
        chain_kind: ChainKind,
        active_note: Optional[NoteRef] = None,
    ) -> str: ...

    async def render_selected_text(self, contexts: List[SelectedTextContext]) -> str: ...

    async def render_web_tabs(self, web_tabs: List[WebTabContext], chain_kind: ChainKind) -> str: ...


class Compactor(Protocol):
    """Summarizes an oversized context blob"""

    async def compact(self, text: str) -> CompactionResult: ...


class PromptTemplateProcessor(Protocol):
    """Resolves inline template references (note and tag embeds) in user text"""

    async def process_prompt(
        self,
        text: str,
        selected_text: str,
        active_note: Optional[NoteRef],
    ) -> ProcessedPrompt: ...


class UrlContentResolver(Protocol):
    async def process_url_list(self, urls: List[str]) -> UrlContext: ...


class FileResolver(Protocol):
    """Expands tags and folders into note references"""

    async def get_notes_from_tags(self, tags: List[str]) -> List[NoteRef]: ...

    async def get_notes_from_folder(self, folder: str) -> List[NoteRef]: ...


class ActiveWebTabProvider(Protocol):
    """Host feature exposing the currently active browser tab; may raise when unavailable"""

    def get_active_web_tab(self) -> Optional[WebTabContext]: ...

"""Shared fakes for the layering engine's collaborators"""

from typing import Dict, List, Optional, Set

import pytest

from promptlayers.config import ContextSettings
from promptlayers.domain.context.collaborators import ProcessedPrompt, UrlContext
from promptlayers.domain.context.context_manager import ContextManager
from promptlayers.domain.context.memory.message_store import MessageStore
from promptlayers.domain.models import (
    USER_SENDER,
    ChainKind,
    CompactionResult,
    MessageContext,
    NoteRef,
    SelectedTextContext,
    WebTabContext,
)


def render_note_block(path: str, content: str, tag: str = "note_context") -> str:
    title = NoteRef(path=path).basename
    return f"<{tag}>\n<title>{title}</title>\n<path>{path}</path>\n<content>{content}</content>\n</{tag}>"


class FakeRenderer:
    def __init__(self, contents: Optional[Dict[str, str]] = None):
        self.contents = contents or {}
        self.note_calls: List[List[str]] = []
        self.active_notes: List[Optional[str]] = []
        self.fail = False

    async def render_notes(self, exclude_paths: Set[str], notes: List[NoteRef], chain_kind: ChainKind,
                           active_note: Optional[NoteRef] = None) -> str:
        if self.fail:
            raise RuntimeError("renderer unavailable")

        self.note_calls.append([note.path for note in notes])
        self.active_notes.append(active_note.path if active_note else None)

        blocks = []
        for note in notes:
            if note.path in exclude_paths:
                continue
            tag = "active_note" if active_note and note.path == active_note.path else "note_context"
            content = self.contents.get(note.path, f"Content of {note.path}")
            blocks.append(render_note_block(note.path, content, tag))
        return "\n\n" + "\n\n".join(blocks) if blocks else ""

    async def render_selected_text(self, contexts: List[SelectedTextContext]) -> str:
        return "".join(context.content for context in contexts)

    async def render_web_tabs(self, web_tabs: List[WebTabContext], chain_kind: ChainKind) -> str:
        return "".join(f"\n\n<web_tab_context>\n<url>{tab.url}</url>\n</web_tab_context>" for tab in web_tabs)


class FakePromptProcessor:
    def __init__(self):
        self.included_files: List[NoteRef] = []
        self.fail = False

    async def process_prompt(self, text: str, selected_text: str, active_note: Optional[NoteRef]) -> ProcessedPrompt:
        if self.fail:
            raise RuntimeError("template engine failed")
        return ProcessedPrompt(processed_prompt=text, included_files=list(self.included_files))


class FakeUrlResolver:
    def __init__(self):
        self.calls: List[List[str]] = []

    async def process_url_list(self, urls: List[str]) -> UrlContext:
        self.calls.append(list(urls))
        blocks = [f"\n\n<url_content>\n<url>{url}</url>\n<content>Page {url}</content>\n</url_content>" for url in urls]
        return UrlContext(url_context="".join(blocks), image_urls=[f"{url}/image.png" for url in urls])


class FakeFileResolver:
    def __init__(self):
        self.tags: Dict[str, List[str]] = {}
        self.folders: Dict[str, List[str]] = {}

    async def get_notes_from_tags(self, tags: List[str]) -> List[NoteRef]:
        return [NoteRef(path=path) for tag in tags for path in self.tags.get(tag, [])]

    async def get_notes_from_folder(self, folder: str) -> List[NoteRef]:
        return [NoteRef(path=path) for path in self.folders.get(folder, [])]


SUMMARY_BLOCK = render_note_block("summary.md", "[SUMMARIZED]\nshort summary")


class FakeCompactor:
    def __init__(self, content: str = SUMMARY_BLOCK):
        self.content = content
        self.calls: List[str] = []

    async def compact(self, text: str) -> CompactionResult:
        self.calls.append(text)
        return CompactionResult(
            content=self.content,
            was_compacted=True,
            original_char_count=len(text),
            compacted_char_count=len(self.content),
            items_processed=1,
            items_summarized=1,
        )


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def prompt_processor():
    return FakePromptProcessor()


@pytest.fixture
def url_resolver():
    return FakeUrlResolver()


@pytest.fixture
def file_resolver():
    return FakeFileResolver()


@pytest.fixture
def compactor():
    return FakeCompactor()


@pytest.fixture
def settings():
    return ContextSettings()


@pytest.fixture
def context_manager(renderer, prompt_processor, url_resolver, file_resolver, compactor, settings):
    return ContextManager(
        renderer=renderer,
        prompt_processor=prompt_processor,
        url_resolver=url_resolver,
        file_resolver=file_resolver,
        compactor=compactor,
        settings=settings,
    )


@pytest.fixture
def store():
    return MessageStore(conversation_id="test")


async def send_turn(
    manager: ContextManager,
    store: MessageStore,
    text: str,
    context: Optional[MessageContext] = None,
    chain_kind: ChainKind = ChainKind.LLM,
    **kwargs,
):
    """Add a user message, process its context and store the result"""

    message_id = store.add_message(text, text, USER_SENDER, context or MessageContext())
    message = store.get_message(message_id)
    result = await manager.process_message_context(
        message,
        chain_kind,
        kwargs.pop("include_active_note", False),
        kwargs.pop("active_note", None),
        store,
        **kwargs,
    )
    store.update_processed_text(message_id, result.processed_content, result.context_envelope)
    return message_id, result


def notes(*paths: str) -> MessageContext:
    return MessageContext(notes=[NoteRef(path=path) for path in paths])
